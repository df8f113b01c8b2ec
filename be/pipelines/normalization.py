"""Text normalization utilities for song names.

Handles case folding, whitespace, punctuation, and diacritics so that
"Amazing  Grace", "amazing grace" and "Ámazing Grace" compare as equal.
"""
from __future__ import annotations

import re
import unicodedata


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize common punctuation variations."""
    # Replace smart quotes
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")

    # Normalize dashes
    text = text.replace('–', '-').replace('—', '-')

    return text


_LATIN_LIMIT = 0x0250


def strip_diacritics(text: str) -> str:
    """Remove accents from Latin letters.

    Combining marks are only dropped when they follow a Latin base letter;
    vowel signs in Indic scripts (Telugu, for instance) are part of the
    word and must survive.
    """
    decomposed = unicodedata.normalize('NFKD', text)
    kept: list[str] = []
    base = ''
    for char in decomposed:
        if unicodedata.category(char) == 'Mn':
            if base and ord(base) < _LATIN_LIMIT:
                continue
        else:
            base = char
        kept.append(char)
    return unicodedata.normalize('NFC', ''.join(kept))


def normalize_name(name: str) -> str:
    """Comparison key for a song name.

    Returns an empty string for blank input.
    """
    if not name or not name.strip():
        return ""

    name = normalize_punctuation(name)
    name = strip_diacritics(name)
    name = name.casefold()
    return normalize_whitespace(name)
