"""Task execution engine for worker prompts over interchangeable model backends."""

__version__ = "0.1.0"
