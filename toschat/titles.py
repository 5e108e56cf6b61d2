"""Conversation title helpers."""

import random
import re

_ADJECTIVES = ["New", "Quick", "Latest", "Recent", "Current"]
_NOUNS = ["Chat", "Conversation", "Discussion", "Session", "Workspace"]

_POLITE_PREFIX = re.compile(r"^(please|can you|could you|help me|i want to|i need to)\s+", re.I)
_VERB_PREFIX = re.compile(r"^(create|build|make|add|setup|configure)\s+", re.I)
_NO_ALNUM = re.compile(r"^[^a-zA-Z0-9]*$")

MAX_TITLE = 50


def generate_default_title() -> str:
    return f"{random.choice(_ADJECTIVES)} {random.choice(_NOUNS)}"


def generate_title_from_message(message: str) -> str:
    """
    Turn a first user message into a short title.

    "please create a users table with email auth" -> "A users table with email auth"
    Too short (<10 chars) or punctuation only falls back to a default title.
    """
    cleaned = _VERB_PREFIX.sub("", _POLITE_PREFIX.sub("", message.strip()))

    title = cleaned[: MAX_TITLE - 3] + "..." if len(cleaned) > MAX_TITLE else cleaned
    title = title[:1].upper() + title[1:]

    if len(title) < 10 or _NO_ALNUM.match(title):
        title = generate_default_title()
    return title
