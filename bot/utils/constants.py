from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class TicketCategory:
    key: str
    short_name: str
    label: str
    description: str
    emoji: str


TICKET_CATEGORIES: dict[str, TicketCategory] = {
    category.key: category
    for category in (
        TicketCategory("general_query", "general", "General Support", "General questions and support", "🔧"),
        TicketCategory("account_issues", "account", "Account Issues", "Problems with your account", "📧"),
        TicketCategory("business_ticket", "business", "Business Ticket", "Business-related inquiries", "💼"),
        TicketCategory(
            "membership_ticket", "membership", "Membership Ticket", "Membership support and questions", "👑"
        ),
        TicketCategory("staff_application", "staff", "Staff Application", "Apply to join our staff team", "📝"),
        TicketCategory("report", "report", "Report", "Report users or issues", "⚠️"),
        TicketCategory("billing", "billing", "Billing Support", "Payment and billing issues", "💳"),
    )
}

DEFAULT_CATEGORY_KEY = "general_query"


def find_category(value: str) -> TicketCategory | None:
    """Resolve a category by key, short name or label (case-insensitive)."""
    needle = value.strip().lower()
    for category in TICKET_CATEGORIES.values():
        if needle in {category.key, category.short_name, category.label.lower()}:
            return category
    return None


class InteractionKind(str, Enum):
    """Component custom ids handled by the persistent views."""

    CATEGORY_SELECT = "ticket:category"
    CLAIM = "ticket:claim"
    CLOSE = "ticket:close"
    FEEDBACK = "ticket:feedback"


class TicketEventType(str, Enum):
    CREATE = "create"
    CLAIM = "claim"
    TRANSFER = "transfer"
    CLOSE = "close"
    REOPEN = "reopen"
    REPOINT = "repoint"
    ADOPT = "adopt"
    ADD_PARTICIPANT = "add_participant"
    REMOVE_PARTICIPANT = "remove_participant"
    RENAME = "rename"
    NOTIFY_ADMIN = "notify_admin"
    FEEDBACK = "feedback"
