from __future__ import annotations

from typing import Literal

from src.domain.errors import UnsupportedEvent


EmailDeliveryStatus = Literal["SENT", "DELIVERED", "OPENED", "CLICKED", "BOUNCED", "COMPLAINED"]
EmailStatusPolicy = Literal["overwrite", "monotonic"]

# Engagement progression; failure states sit outside it.
_STATUS_SIGNIFICANCE: dict[str, int] = {
    "SENT": 0,
    "DELIVERED": 1,
    "OPENED": 2,
    "CLICKED": 3,
}
TERMINAL_STATUSES: frozenset[str] = frozenset({"BOUNCED", "COMPLAINED"})

_EMAIL_EVENT_SUFFIXES: dict[str, EmailDeliveryStatus] = {
    "delivered": "DELIVERED",
    "opened": "OPENED",
    "clicked": "CLICKED",
    "bounced": "BOUNCED",
    "complained": "COMPLAINED",
}


def normalize_email_event_status(event: str) -> EmailDeliveryStatus:
    """Map an ``email.<suffix>`` event name to a delivery status."""
    prefix, _, suffix = str(event or "").partition(".")
    if prefix != "email" or suffix not in _EMAIL_EVENT_SUFFIXES:
        raise UnsupportedEvent(f"Unsupported email event: {event}", event=event)
    return _EMAIL_EVENT_SUFFIXES[suffix]


def normalize_status_policy(value: str | None) -> EmailStatusPolicy:
    key = str(value or "").strip().lower()
    if key == "monotonic":
        return "monotonic"
    return "overwrite"


def should_apply_status(
    current: str | None,
    incoming: str,
    policy: EmailStatusPolicy = "overwrite",
) -> bool:
    if policy == "overwrite" or not current:
        return True
    current_key = str(current).upper()
    if current_key == incoming:
        return True
    if current_key in TERMINAL_STATUSES:
        return False
    if incoming in TERMINAL_STATUSES:
        return True
    return _STATUS_SIGNIFICANCE.get(incoming, -1) >= _STATUS_SIGNIFICANCE.get(current_key, -1)


def derive_engagement_tags(status: str, email_type: str | None) -> list[str]:
    priority = email_type == "priority"
    if status == "OPENED":
        tags = ["opened_email"]
        if priority:
            tags.append("opened_priority_email")
        return tags
    if status == "CLICKED":
        tags = ["clicked_email", "high_intent"]
        if priority:
            tags.append("clicked_priority_email")
        return tags
    return []
