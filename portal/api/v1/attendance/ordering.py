"""
Vietnamese personal-name ordering.

Names are compared by given name (last token), then family name (first token), then
middle name(s). A name without a middle name sorts before one that has it when the
first two keys tie. Each key uses Vietnamese collation: base letters in alphabet
order (a < ă < â < b ... d < đ ...), then tone marks, then letter case.
"""

import unicodedata
from typing import Iterable, List, Tuple, TypeVar

T = TypeVar("T")

_ALPHABET = "aăâbcdđeêfghijklmnoôơpqrstuưvwxyz"
_LETTER_WEIGHT = {ch: i for i, ch in enumerate(_ALPHABET)}

# Combining marks that form distinct letters (ă, â, ê, ô, ơ, ư) rather than tones.
_LETTER_MODIFIERS = {"\u0306", "\u0302", "\u031b"}
# Dictionary tone order: ngang, huyền, hỏi, ngã, sắc, nặng.
_TONE_WEIGHT = {"\u0300": 1, "\u0309": 2, "\u0303": 3, "\u0301": 4, "\u0323": 5}

TokenKey = Tuple[Tuple[int, ...], Tuple[int, ...], Tuple[int, ...]]


def _token_key(token: str) -> TokenKey:
    primary: List[int] = []
    tones: List[int] = []
    cases: List[int] = []
    for ch in token:
        decomposed = unicodedata.normalize("NFD", ch)
        base = decomposed[0]
        modifiers = "".join(m for m in decomposed[1:] if m in _LETTER_MODIFIERS)
        tone = max((_TONE_WEIGHT.get(m, 0) for m in decomposed[1:]), default=0)
        letter = unicodedata.normalize("NFC", base + modifiers)
        lower = letter.lower()
        primary.append(_LETTER_WEIGHT.get(lower, len(_ALPHABET) + ord(lower)))
        tones.append(tone)
        cases.append(0 if letter == lower else 1)
    return tuple(primary), tuple(tones), tuple(cases)


def _parts(name: str) -> List[str]:
    return (name or "").split()


def name_sort_key(name: str) -> tuple:
    parts = _parts(name)
    if not parts:
        return (1,)
    given = _token_key(parts[-1])
    family = _token_key(parts[0])
    middle = parts[1:-1]
    middle_key = (1, tuple(_token_key(p) for p in middle)) if middle else (0,)
    return (0, given, family, middle_key)


def compare(name_a: str, name_b: str) -> int:
    """Return -1, 0 or 1. Empty names sort last."""
    key_a, key_b = name_sort_key(name_a), name_sort_key(name_b)
    return (key_a > key_b) - (key_a < key_b)


def sort_by_name(items: Iterable[T], name_of) -> List[T]:
    """Stable sort of arbitrary items by the name `name_of(item)` returns."""
    return sorted(items, key=lambda item: name_sort_key(name_of(item)))

