"""Agent loop: actions, history, reasoning engines and the action executor."""
