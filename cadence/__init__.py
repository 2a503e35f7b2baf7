"""Per-project job scheduler for long-running agent work."""

__version__ = "0.1.0"
