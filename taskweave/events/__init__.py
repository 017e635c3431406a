"""In-process event plumbing for taskweave."""

from taskweave.events.event_bus import EventBus

__all__ = ["EventBus"]
