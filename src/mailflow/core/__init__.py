"""Core utilities: clock, errors, logging."""
