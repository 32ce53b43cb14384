"""Slug and event-id generation for registration identity keys."""

import re
import unicodedata


def slugify(text: str) -> str:
    """Convert text to a slug (lowercase, hyphens, no special chars).

    Args:
        text: Text to slugify (e.g. "Fall Classic").

    Returns:
        Slugified text (e.g. "fall-classic").
    """
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[\s_]+", "-", text)
    text = re.sub(r"-+", "-", text)
    return text.strip("-")


def make_event_id(label: str, year: int) -> str:
    """Derive the deterministic event id for a (label, year) occurrence.

    The same label and year always map to the same id, so two registrations
    for one event can never end up under different identity keys.

    Args:
        label: Season or tournament label (e.g. "Fall", "Spring Shootout").
        year: Event year.

    Returns:
        Event id such as "fall-2025".
    """
    slug = slugify(label)
    if not slug:
        raise ValueError(f"Cannot derive an event id from label {label!r}")
    return f"{slug}-{int(year)}"
