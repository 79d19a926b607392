"""
Input sanitization for redirect requests.

Pure functions: phone normalization, UTM parameter cleaning and client
address extraction. Nothing here touches the database or the network.
"""

from __future__ import annotations

import re
from typing import Mapping, Optional

from leadlink.core.errors import InvalidAddress

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15
MAX_PARAM_LENGTH = 200

_NON_DIGITS = re.compile(r"\D")
_UNSAFE_CHARS = re.compile(r"[<>\"']")
_PLACEHOLDER_MARKERS = ("{{", "}}")


def normalize_address(raw: Optional[str]) -> str:
    """Normalize a phone number to ``+<digits>``.

    Every character other than digits is dropped (a leading ``+`` is
    re-emitted). Raises InvalidAddress when fewer than 10 or more than 15
    digits remain.
    """
    if not raw:
        raise InvalidAddress(raw, "phone number is required")

    digits = _NON_DIGITS.sub("", raw)
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise InvalidAddress(raw)
    return f"+{digits}"


def is_valid_address(raw: Optional[str]) -> bool:
    try:
        normalize_address(raw)
    except InvalidAddress:
        return False
    return True


def sanitize_token(raw: Optional[str]) -> Optional[str]:
    """Trim, strip markup characters and truncate to 200 characters."""
    if not raw:
        return None
    cleaned = _UNSAFE_CHARS.sub("", raw.strip())[:MAX_PARAM_LENGTH]
    return cleaned or None


def clean_parameter(raw: Optional[str]) -> Optional[str]:
    """Sanitize a marketing parameter value.

    Returns None for empty values and for template placeholders the traffic
    source never substituted (text still containing ``{{`` or ``}}``).
    """
    if not raw:
        return None
    if any(marker in raw for marker in _PLACEHOLDER_MARKERS):
        return None
    return sanitize_token(raw)


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the caller address behind proxies.

    Order: first X-Forwarded-For entry, X-Real-IP, socket peer, "unknown".
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer or "unknown"
