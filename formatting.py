"""Text and timestamp helpers used when messages and presence events are serialized."""

import html as _html
import logging
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import bleach
import markdown

logger = logging.getLogger(__name__)

ALLOWED_TAGS = ["a", "em", "strong", "code", "pre", "br", "p", "ul", "ol", "li", "blockquote"]
ALLOWED_ATTRS = {"a": ["href", "title", "rel", "target"]}
SNIPPET_CHARS = 140


def render_markdown(text: str) -> str:
    """Render markdown and sanitize HTML. Allow links and basic formatting only."""
    text = text or ""
    md_html = markdown.markdown(text, extensions=["extra", "sane_lists"])
    cleaned = bleach.clean(md_html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRS, strip=True)
    cleaned = cleaned.replace("<a ", '<a rel="noopener noreferrer" target="_blank" ')
    return bleach.linkify(cleaned)


def plain_text(text: str) -> str:
    stripped = bleach.clean(text or "", tags=[], attributes={}, strip=True)
    return _html.unescape(stripped).strip()


def snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    plain = re.sub(r"\s+", " ", plain_text(text))
    return plain[:limit]


def sanitize_username(u: str) -> str:
    # letters, numbers, underscore, hyphen and dot
    text = plain_text(u)
    return re.sub(r"[^A-Za-z0-9._\-]+", "", text)


def _zone(tz_name: str):
    if not tz_name or tz_name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown display timezone %r, falling back to UTC", tz_name)
        return timezone.utc


def parse_timestamp(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_last_seen(value, tz_name: str = "UTC") -> str | None:
    """Human readable form, e.g. 'Fri Oct 31 2025 7:12:23 PM'."""
    dt = parse_timestamp(value)
    if dt is None:
        return None
    d = dt.astimezone(_zone(tz_name))
    hour = d.strftime("%I").lstrip("0") or "0"
    return f"{d.strftime('%a %b')} {d.day} {d.year} {hour}:{d.strftime('%M:%S %p')}"
