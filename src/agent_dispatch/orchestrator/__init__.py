"""Job queue, scheduler and reconciliation."""
