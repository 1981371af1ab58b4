from __future__ import annotations

import re

E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")
_STRIP_RE = re.compile(r"[\s\-().]")


def normalize_phone(raw: str | None, *, default_country_code: str = "44") -> str | None:
    """
    Normalize a phone number to E.164.

    Examples:
        >>> normalize_phone("07700 900123")
        '+447700900123'
        >>> normalize_phone("+44 (0)7700 900123")
        '+447700900123'
        >>> normalize_phone("0044 7700 900123")
        '+447700900123'

    Returns None for blank input; raises ValueError when the number cannot
    be normalized.
    """
    s = (raw or "").strip()
    if not s:
        return None
    s = s.replace("(0)", "")
    s = _STRIP_RE.sub("", s)

    if s.startswith("+"):
        digits = "+" + s[1:]
    elif s.startswith("00"):
        digits = "+" + s[2:]
    elif s.startswith("0"):
        digits = f"+{default_country_code}" + s[1:]
    elif s.startswith(default_country_code) and len(s) > 10:
        digits = "+" + s
    else:
        raise ValueError(f"Invalid phone number: {raw}")

    if not E164_RE.match(digits):
        raise ValueError(f"Invalid phone number: {raw}")
    return digits


def phone_variants(e164: str) -> list[str]:
    """Formats a number may have been stored in before normalization."""
    variants = [e164]
    if e164.startswith("+44"):
        national = "0" + e164[3:]
        variants.extend([national, e164[1:]])
    return variants


def mask_phone(e164: str | None) -> str:
    if not e164:
        return ""
    return e164[:4] + "*" * max(len(e164) - 7, 0) + e164[-3:]
