"""Core configuration, logging and cancellation helpers."""
