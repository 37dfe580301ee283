"""
Utility functions for fleet-remediate.

Tolerant coercion helpers shared by the payload codec, the fleet selector
parser and the configuration layer. None of them raise on junk input: they
return ``None`` (or the supplied fallback) and let the caller decide.
"""
import logging
import math
import re
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable, List, Mapping, Optional

from dateutil import parser as date_parser

from .constants import FALSY_STRINGS, TRUTHY_STRINGS
from .retry import ensure_utc

logger = logging.getLogger(__name__)

_TOKEN_INVALID = re.compile(r"[^a-z0-9._:-]")
_TOKEN_DASHES = re.compile(r"-+")


def as_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    """Return ``value`` if it is a mapping, otherwise None."""
    if isinstance(value, Mapping):
        return value
    return None


def pick(record: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key (camelCase or snake_case spellings)."""
    for key in keys:
        if key in record:
            return record[key]
    return default


def parse_int(value: Any) -> Optional[int]:
    """Parse ints from numbers or numeric strings; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None


def parse_bool(value: Any) -> Optional[bool]:
    """Parse booleans from bools or the usual yes/no strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUTHY_STRINGS:
            return True
        if text in FALSY_STRINGS:
            return False
    return None


def trim_text(value: Any, max_len: int) -> Optional[str]:
    """
    Trim a string and cap its length; None for blanks and non-strings.

    The truncation marker fits inside ``max_len`` so applying the function
    to its own output is a no-op.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if len(text) <= max_len:
        return text
    marker = f"...[truncated {len(text)} chars]"
    keep = max(0, max_len - len(marker))
    return f"{text[:keep]}{marker}"[:max_len]


def string_list(value: Any) -> Optional[List[str]]:
    """Trimmed, non-empty strings from a list; None when ``value`` is not a list."""
    if not isinstance(value, (list, tuple)):
        return None
    out = []
    for item in value:
        if not isinstance(item, str):
            continue
        text = item.strip()
        if text:
            out.append(text)
    return out


def normalize_token(value: Any, max_len: int = 64) -> Optional[str]:
    """
    Normalize a group/tag/scope token.

    Lower-cases, replaces characters outside ``[a-z0-9._:-]`` with dashes,
    collapses runs of dashes and strips leading/trailing dashes.
    """
    if not isinstance(value, str):
        return None
    cleaned = _TOKEN_INVALID.sub("-", value.strip().lower())
    cleaned = _TOKEN_DASHES.sub("-", cleaned).strip("-")[:max_len]
    return cleaned or None


def normalize_token_list(values: Iterable[Any], max_items: int = 30, max_len: int = 64) -> List[str]:
    """Normalize, de-duplicate and cap a list of tokens, preserving order."""
    out: List[str] = []
    seen = set()
    for raw in values:
        token = normalize_token(raw, max_len)
        if not token or token in seen:
            continue
        seen.add(token)
        out.append(token)
        if len(out) >= max_items:
            break
    return out


@lru_cache(maxsize=1024)
def _parse_timestamp_cached(text: str) -> Optional[datetime]:
    try:
        return date_parser.isoparse(text)
    except (ValueError, TypeError, OverflowError):
        pass
    try:
        return date_parser.parse(text)
    except (ValueError, TypeError, OverflowError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into an aware UTC datetime.

    Accepts datetimes and ISO-8601 (or other dateutil-parsable) strings.
    Naive values are taken to be UTC. Returns None for blanks and junk.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    parsed = _parse_timestamp_cached(value.strip())
    if parsed is None:
        return None
    return ensure_utc(parsed)
