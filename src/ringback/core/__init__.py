"""Core infrastructure: state store, clock helpers, timers and logging."""
