"""
String normalization helpers for contact fields.

Used by the contact model and the vCard codec so that labels, names and
free-text values compare equal regardless of how a server cased or spaced
them.
"""

from __future__ import annotations

import re
import unicodedata

# vCard TYPE values that are enumerated by RFC 2426/6350 or by common
# clients. These are compared case-insensitively and stored lower-cased.
KNOWN_TYPE_LABELS = frozenset(
    {
        "home",
        "work",
        "other",
        "cell",
        "mobile",
        "voice",
        "fax",
        "pager",
        "text",
        "textphone",
        "video",
        "main",
        "iphone",
        "internet",
        "pref",
        "personal",
        "school",
        "homepage",
        "blog",
        "profile",
        "anniversary",
    }
)

PLACEHOLDER_NAME = "Unknown Contact"


def collapse_whitespace(value: str | None) -> str:
    """Trim a value and collapse internal whitespace runs to single spaces."""
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip()


def normalize_label(label: str | None) -> str | None:
    """
    Normalize a type label.

    Known enumerated labels are lower-cased; free-text labels keep their
    casing but lose surrounding whitespace. Empty labels become None.

    Args:
        label: Raw label from a vCard TYPE parameter or X-ABLabel

    Returns:
        Normalized label, or None
    """
    if label is None:
        return None
    label = collapse_whitespace(unicodedata.normalize("NFC", label))
    if not label:
        return None
    if label.lower() in KNOWN_TYPE_LABELS:
        return label.lower()
    return label


def build_display_name(*parts: str | None, nickname: str | None = None) -> str:
    """
    Join name parts into a display name.

    Falls back to the nickname, then to the "Unknown Contact" placeholder.
    """
    joined = " ".join(p.strip() for p in parts if p and p.strip())
    if joined:
        return joined
    if nickname and nickname.strip():
        return nickname.strip()
    return PLACEHOLDER_NAME
