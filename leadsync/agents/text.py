"""Shared helpers for building prompt excerpts and reading model output."""

import html
import json
import re
from datetime import date
from typing import Any, Dict, Optional

TRUNCATION_MARKER = "... [truncated]"

_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"[ \t]+")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")


def truncate(text: Optional[str], limit: int, marker: str = TRUNCATION_MARKER) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def strip_html(markup: Optional[str]) -> str:
    if not markup:
        return ""
    text = _SCRIPT_RE.sub(" ", markup)
    text = re.sub(r"<br\s*/?>|</p>|</div>", "\n", text, flags=re.IGNORECASE)
    text = html.unescape(_TAG_RE.sub(" ", text))
    lines = [_WS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def email_body(body_text: Optional[str], body_html: Optional[str]) -> str:
    """Plain-text body, falling back to stripped HTML."""
    if body_text and body_text.strip():
        return body_text
    return strip_html(body_html)


def parse_json_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from model output, tolerating markdown fences.

    Returns ``None`` for anything that is not a JSON object.
    """
    if not raw:
        return None
    cleaned = _FENCE_RE.sub("", raw.strip())
    if not cleaned:
        return None
    try:
        data = json.loads(cleaned)
    except ValueError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(cleaned[start : end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present value among ``keys`` (model output mixes camelCase and snake_case)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_iso_date(value: Any) -> Optional[date]:
    """A ``YYYY-MM-DD`` string as a real calendar date, else ``None``."""
    value = clean_str(value)
    if not value or not _DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_clock_time(value: Any) -> Optional[str]:
    """An ``HH:MM`` 24-hour time, else ``None``."""
    value = clean_str(value)
    if not value or not _TIME_RE.match(value):
        return None
    hours, minutes = (int(part) for part in value.split(":"))
    if hours > 23 or minutes > 59:
        return None
    return value
