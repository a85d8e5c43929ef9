"""Ticket channel naming and topic conventions.

Channel names look like ``<prefix>-<requester>-<short>[-<n>]`` and only use
``[a-z0-9-]``. The reconciler relies on the literal ``<prefix>-`` to find
ticket channels, so every name produced here keeps it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from utils.constants import TICKET_CATEGORIES, TicketCategory, find_category

MAX_CHANNEL_NAME = 100
MAX_REQUESTER_FRAGMENT = 32

_TOPIC_PATTERN = re.compile(
    r"^Ticket for (?P<tag>.*?) \((?P<user_id>\d{5,25})\)(?: - Category: (?P<label>.+))?$"
)
_USER_ID_PATTERN = re.compile(r"\((\d{5,25})\)")


@dataclass(frozen=True, slots=True)
class ParsedChannelName:
    requester: str
    category: TicketCategory
    disambiguator: int | None


@dataclass(frozen=True, slots=True)
class ParsedTopic:
    requester_id: int
    requester_tag: str | None
    category: TicketCategory | None


def sanitize_channel_fragment(
    name: str, fallback: str = "user", max_length: int = MAX_REQUESTER_FRAGMENT
) -> str:
    name = name.strip().lower()
    name = re.sub(r"[^a-z0-9-]+", "-", name)
    name = re.sub(r"-{2,}", "-", name).strip("-")
    return name[:max_length].strip("-") or fallback


def is_ticket_channel_name(name: str, prefix: str) -> bool:
    return name.startswith(f"{prefix}-")


def build_channel_name(
    prefix: str, requester_name: str, category: TicketCategory, disambiguator: int | None = None
) -> str:
    requester = sanitize_channel_fragment(requester_name)
    suffix = f"-{category.short_name}" + (f"-{disambiguator}" if disambiguator else "")
    head = f"{prefix}-{requester}"[: MAX_CHANNEL_NAME - len(suffix)].rstrip("-")
    return f"{head}{suffix}"


def parse_channel_name(name: str, prefix: str) -> ParsedChannelName | None:
    if not is_ticket_channel_name(name, prefix):
        return None
    shorts = "|".join(re.escape(c.short_name) for c in TICKET_CATEGORIES.values())
    match = re.match(
        rf"^{re.escape(prefix)}-(?P<requester>[a-z0-9-]+?)-(?P<short>{shorts})(?:-(?P<n>\d+))?$",
        name,
    )
    if not match:
        return None
    category = find_category(match.group("short"))
    if category is None:
        return None
    n = match.group("n")
    return ParsedChannelName(
        requester=match.group("requester"),
        category=category,
        disambiguator=int(n) if n else None,
    )


def build_topic(requester_tag: str, requester_id: int, category: TicketCategory) -> str:
    return f"Ticket for {requester_tag} ({requester_id}) - Category: {category.label}"


def parse_topic(topic: str | None) -> ParsedTopic | None:
    """Recover the requester and category from a ticket channel topic.

    Returns None when no requester id can be found; a requester is never guessed.
    """
    if not topic:
        return None
    text = topic.strip()
    match = _TOPIC_PATTERN.match(text)
    if match:
        label = match.group("label")
        return ParsedTopic(
            requester_id=int(match.group("user_id")),
            requester_tag=match.group("tag") or None,
            category=find_category(label) if label else None,
        )
    # Topics edited by hand: fall back to the first parenthesised snowflake.
    loose = _USER_ID_PATTERN.search(text)
    if not loose:
        return None
    category = None
    if "Category:" in text:
        category = find_category(text.split("Category:", 1)[1])
    return ParsedTopic(requester_id=int(loose.group(1)), requester_tag=None, category=category)
