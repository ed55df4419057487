"""Execution state machine and self-healing verification."""
