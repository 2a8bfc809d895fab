"""
Card Catalog Sync — Text Normalization & Similarity

Canonical forms for set names, card names and card numbers, applied to both
feeds before any comparison. Every normalizer is idempotent:
normalize(normalize(x)) == normalize(x).

Similarity is normalized Levenshtein, (maxLen - distance) / maxLen, in [0, 1].
"""

from __future__ import annotations

import re
import unicodedata

from rapidfuzz.distance import Levenshtein

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_PARENTHETICAL = re.compile(r"\s*[(\[][^()\[\]]*[)\]]\s*$")

# (pattern, replacement) applied in order after normalize_text
_SET_NAME_REWRITES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(?:first|1st)\s+edition\b"), "first edition"),
    (re.compile(r"\b(?:base|basic)\s+set\b"), "base set"),
    (re.compile(r"\bpromo\b"), "promotional"),
]

_ROMAN_NUMERALS = {
    "ii": "2",
    "iii": "3",
    "iv": "4",
    "v": "5",
    "vi": "6",
    "vii": "7",
    "viii": "8",
    "ix": "9",
    "x": "10",
}
_ROMAN_PATTERN = re.compile(r"\b(" + "|".join(sorted(_ROMAN_NUMERALS, key=len, reverse=True)) + r")\b")

# Print-variant terms that do not change card identity
_CARD_VARIANT_TERMS = re.compile(
    r"\b(?:reverse\s+holo(?:foil)?|holo(?:foil)?|foil|1st\s+edition|first\s+edition"
    r"|unlimited|shadowless)\b"
)


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: str | None) -> str:
    """Lower-case, drop diacritics and punctuation, collapse whitespace."""
    if not value:
        return ""
    text = strip_diacritics(str(value)).lower()
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_set_name(value: str | None) -> str:
    """
    Canonical set name.

    "Base Set (1st Edition)" and "basic set first edition" both become
    "base set first edition"; "Neo Destiny II" becomes "neo destiny 2".
    """
    text = normalize_text(value)
    for pattern, replacement in _SET_NAME_REWRITES:
        text = pattern.sub(replacement, text)
    return _ROMAN_PATTERN.sub(lambda m: _ROMAN_NUMERALS[m.group(1)], text)


def normalize_card_name(value: str | None) -> str:
    """Canonical card name with print-variant terms and a trailing parenthetical removed."""
    if not value:
        return ""
    text = str(value)
    while True:
        stripped = _TRAILING_PARENTHETICAL.sub("", text)
        if stripped == text:
            break
        text = stripped
    text = normalize_text(text)
    while True:
        stripped = _WHITESPACE.sub(" ", _CARD_VARIANT_TERMS.sub("", text)).strip()
        if stripped == text:
            return text
        text = stripped


def normalize_card_number(value: str | None) -> str:
    """
    Canonical collector number: "#004/102" -> "4", "SV-001" -> "sv001".

    Separators and a leading '#' are dropped, a "/total" suffix is removed and
    a purely numeric numerator loses its leading zeros.
    """
    if not value:
        return ""
    text = re.sub(r"[-_\s]", "", str(value).lower()).lstrip("#")
    numerator = text.split("/", 1)[0]
    if numerator.isdigit():
        numerator = numerator.lstrip("0") or "0"
    return numerator


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - Levenshtein.distance(a, b)) / longest
