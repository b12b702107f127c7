"""Session health aggregation for coding-assistant status lines."""

__version__ = "0.1.0"
