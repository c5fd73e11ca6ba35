"""Job queue, scheduler, and agent execution loop for automated review/fix jobs."""

__version__ = "0.1.0"
