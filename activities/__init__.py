"""Activity definitions module."""

from activities.pipeline import (
    process_event,
    resume_event,
    EventActivityInput,
    EventActivityOutput,
)

__all__ = [
    "process_event",
    "resume_event",
    "EventActivityInput",
    "EventActivityOutput",
]
