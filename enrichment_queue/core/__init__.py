"""Core infrastructure: resilience, error tracking."""
