"""Utility helpers for the chatarr service."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


WHITESPACE_RE = re.compile(r"\s+")
YEAR_RE = re.compile(r"(19|20|21)\d{2}")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching the database columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def title_slug(title: str, external_id: int) -> str:
    """Build the ``titleSlug`` Radarr and Sonarr expect when adding media."""

    return slugify(f"{title}-{external_id}") or str(external_id)


def normalize_query(query: str) -> str:
    """Lower-case, trim and collapse internal whitespace."""

    return WHITESPACE_RE.sub(" ", (query or "").strip().lower())


def hash_identity(address: str) -> str:
    """Derive the opaque requester identity from a chat address."""

    digits = re.sub(r"[^0-9]", "", address or "")
    material = digits or (address or "").strip().lower()
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def mask_address(address: str | None) -> str:
    """Return a log-safe representation of a chat address."""

    if not address:
        return "unknown"
    return f"****{address[-4:]}"


def same_address(left: str | None, right: str | None) -> bool:
    """Compare two chat addresses by their digits."""

    if not left or not right:
        return False
    left_digits = re.sub(r"[^0-9]", "", left)
    right_digits = re.sub(r"[^0-9]", "", right)
    if left_digits and right_digits:
        return left_digits == right_digits
    return left.strip().lower() == right.strip().lower()


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from an int or a date-like string."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1800 <= value <= 2200 else None
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))
