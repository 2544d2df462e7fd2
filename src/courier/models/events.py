"""Closed catalog of domain events a subscription may listen to.

The catalog is versioned with the application. Adding an event is a
code change; subscriptions can never reference a name outside it.
"""

from __future__ import annotations

from typing import Literal, get_args

EventType = Literal[
    "contact.created",
    "contact.updated",
    "contact.deleted",
    "company.created",
    "company.updated",
    "company.deleted",
    "deal.created",
    "deal.updated",
    "deal.stage_changed",
    "deal.won",
    "deal.lost",
    "activity.created",
    "activity.completed",
    "message.received",
    "message.sent",
]

# Human-readable labels, in catalog order
EVENT_TYPES: dict[str, str] = {
    "contact.created": "Contact Created",
    "contact.updated": "Contact Updated",
    "contact.deleted": "Contact Deleted",
    "company.created": "Company Created",
    "company.updated": "Company Updated",
    "company.deleted": "Company Deleted",
    "deal.created": "Deal Created",
    "deal.updated": "Deal Updated",
    "deal.stage_changed": "Deal Stage Changed",
    "deal.won": "Deal Won",
    "deal.lost": "Deal Lost",
    "activity.created": "Activity Created",
    "activity.completed": "Activity Completed",
    "message.received": "Message Received",
    "message.sent": "Message Sent",
}

ALL_EVENT_TYPES: list[EventType] = list(get_args(EventType))

# Synthetic event sent by the manual test trigger. Not subscribable.
TEST_EVENT = "test"


def is_catalog_event(name: str) -> bool:
    """Return True if `name` is part of the event catalog."""
    return name in EVENT_TYPES


def get_event_types() -> dict[str, str]:
    """Return the event catalog as a name -> label mapping."""
    return dict(EVENT_TYPES)


__all__ = [
    "ALL_EVENT_TYPES",
    "EVENT_TYPES",
    "EventType",
    "TEST_EVENT",
    "get_event_types",
    "is_catalog_event",
]
