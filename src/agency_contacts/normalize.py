"""Pure normalization helpers for raw person fields.

Every function here is total: any input (including ``None`` or non-string
garbage from an upload) yields a value instead of raising. The resolver and
the reconciler build household keys exclusively through these helpers so
that a name typed three different ways always lands on the same key.
"""

from __future__ import annotations

from typing import Any

UNKNOWN_KEY_PART = "UNKNOWN"
PLACEHOLDER_ZIP = "00000"

_WORD_BOUNDARIES = frozenset(" -'’")
_ASCII_DIGITS = frozenset("0123456789")


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return ""
    if isinstance(raw, int):
        return str(raw)
    # Spreadsheet numbers: 5551234567.0 is a phone, 90210.5 is noise.
    if isinstance(raw, float):
        return str(int(raw)) if raw.is_integer() else ""
    return ""


def normalize_name(raw: Any) -> str:
    """Return a display-cased name.

    Whitespace runs collapse to a single space and the result is trimmed. The
    first letter after the start of the string, a space, a hyphen or an
    apostrophe is uppercased; every other letter is lowercased. Non-letters
    are kept as-is and do not start a new word.

    >>> normalize_name("  mary-jane o'brien  ")
    "Mary-Jane O'Brien"
    """
    text = " ".join(_as_text(raw).split())
    out: list[str] = []
    at_boundary = True
    for ch in text:
        if ch.isalpha():
            out.append(ch.upper() if at_boundary else ch.lower())
            at_boundary = False
        else:
            out.append(ch)
            at_boundary = ch in _WORD_BOUNDARIES
    return "".join(out)


def normalize_phone(raw: Any) -> str | None:
    """Return the rightmost 10 digits of *raw*, or ``None`` if fewer than 10 remain."""
    digits = "".join(ch for ch in _as_text(raw) if ch in _ASCII_DIGITS)
    if len(digits) < 10:
        return None
    return digits[-10:]


def normalize_email(raw: Any) -> str | None:
    """Return a trimmed, lowercased email, or ``None`` if it does not look like one."""
    text = _as_text(raw).strip().lower()
    local, sep, domain = text.partition("@")
    if not sep or not local or not domain:
        return None
    return text


def normalize_zip(raw: Any) -> str | None:
    """Return the 5-digit zip prefix, or ``None`` when absent or a placeholder.

    Only the part before a ZIP+4 hyphen counts, so ``"1234-5678"`` is too short.
    """
    base = _as_text(raw).split("-", 1)[0]
    digits = "".join(ch for ch in base if ch in _ASCII_DIGITS)
    if len(digits) < 5:
        return None
    zip5 = digits[:5]
    if zip5 == PLACEHOLDER_ZIP:
        return None
    return zip5


def is_placeholder_zip(raw: Any) -> bool:
    """True for empty, missing or all-zero zip codes."""
    return normalize_zip(raw) is None


def key_part(raw: Any) -> str:
    """Uppercase *raw* and drop every non-alphabetic character."""
    return "".join(ch for ch in _as_text(raw).upper() if ch.isalpha())


def has_usable_last_name(raw: Any) -> bool:
    return bool(key_part(raw))


def name_key(first_name: Any, last_name: Any) -> str:
    """Household key without its zip segment (``LAST_FIRST``)."""
    last = key_part(last_name) or UNKNOWN_KEY_PART
    first = key_part(first_name) or UNKNOWN_KEY_PART
    return f"{last}_{first}"


def household_key(first_name: Any, last_name: Any, zip_code: Any) -> str:
    """Build the canonical household key ``LAST_FIRST_ZIP``.

    >>> household_key("Mary-Jane", "O'Brien", "90210-1234")
    'OBRIEN_MARYJANE_90210'
    >>> household_key(None, "Smith", None)
    'SMITH_UNKNOWN_00000'
    """
    return f"{name_key(first_name, last_name)}_{normalize_zip(zip_code) or PLACEHOLDER_ZIP}"


def split_full_name(raw: Any) -> tuple[str, str]:
    """Split a single "customer name" field into ``(first, last)``.

    The last whitespace token is the last name and everything before it is the
    first name. A lone token is treated as the last name.
    """
    parts = normalize_name(raw).split(" ")
    parts = [p for p in parts if p]
    if not parts:
        return "", ""
    if len(parts) == 1:
        return "", parts[0]
    return " ".join(parts[:-1]), parts[-1]


__all__ = [
    "PLACEHOLDER_ZIP",
    "UNKNOWN_KEY_PART",
    "has_usable_last_name",
    "household_key",
    "is_placeholder_zip",
    "key_part",
    "name_key",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    "normalize_zip",
    "split_full_name",
]
