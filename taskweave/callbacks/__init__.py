"""Event observers for taskweave lifecycle events."""

from taskweave.callbacks.logging import LoggingCallback

__all__ = ["LoggingCallback"]
