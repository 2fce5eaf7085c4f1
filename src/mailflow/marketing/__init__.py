"""Marketing collaborators: contact directory and event tracking."""

from mailflow.marketing.contacts import (
    BrevoContactDirectory,
    BrevoEventSink,
    ContactDirectory,
    EventSink,
    NullContactDirectory,
    NullEventSink,
)

__all__ = [
    "BrevoContactDirectory",
    "BrevoEventSink",
    "ContactDirectory",
    "EventSink",
    "NullContactDirectory",
    "NullEventSink",
]
