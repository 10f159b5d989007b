"""
Nickname canonicalisation.

Nicknames are compared in a lowercase form that keeps Latin letters, digits and
Polish diacritics and drops everything else (spaces, punctuation, OCR noise).
"""
from __future__ import annotations

import re

POLISH_LETTERS = "ąćęłńóśźż"

_STRIP_RE = re.compile(f"[^a-z0-9{POLISH_LETTERS}]")

_CONFUSABLES = str.maketrans(
    {
        "ą": "a",
        "ć": "c",
        "ę": "e",
        "ł": "l",
        "ń": "n",
        "ó": "o",
        "ś": "s",
        "ź": "z",
        "ż": "z",
    }
)


def normalise(value: str) -> str:
    """Lowercase ``value`` and strip every character outside [a-z0-9] and Polish diacritics."""
    if not value:
        return ""
    return _STRIP_RE.sub("", value.lower())


def fold_confusables(value: str) -> str:
    """Map Polish diacritics of an already normalised string to their base letter."""
    return value.translate(_CONFUSABLES)
