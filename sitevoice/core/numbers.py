"""
Spoken number handling.

Converts number words ("one thousand five hundred", "twelve point five") and
digit tokens ("1,500", "$12.50") into Decimal values. Used by the fallback
intent parser and by the numeric-entity accuracy metric.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16,
    "seventeen": 17, "eighteen": 18, "nineteen": 19,
}

TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}

SCALES = {
    "thousand": 1_000,
    "million": 1_000_000,
    "billion": 1_000_000_000,
}

NUMBER_WORDS = set(UNITS) | set(TENS) | set(SCALES) | {"hundred"}

_DIGITS = re.compile(r"^[$€£]?(\d{1,3}(?:,\d{3})+|\d+)(\.\d+)?$")
_EDGE_PUNCTUATION = "\"'()[]{}!?;:.,"


@dataclass(frozen=True)
class NumberSpan:
    """A number found in a token sequence: tokens[start:end] -> value."""
    start: int
    end: int
    value: Decimal


def words_to_number(words: Sequence[str]) -> Optional[int]:
    """
    Convert a sequence of number words to an integer.

    Examples:
        ["one", "thousand", "five", "hundred"] -> 1500
        ["twenty", "five"] -> 25
    """
    total = 0
    current = 0
    seen = False
    for word in words:
        if word == "and":
            continue
        if word in UNITS:
            current += UNITS[word]
        elif word in TENS:
            current += TENS[word]
        elif word == "hundred":
            current = (current or 1) * 100
        elif word in SCALES:
            total += (current or 1) * SCALES[word]
            current = 0
        else:
            return None
        seen = True
    return total + current if seen else None


def _clean(token: str) -> str:
    return token.strip(_EDGE_PUNCTUATION).lower()


def _parse_digits(token: str) -> Optional[Decimal]:
    match = _DIGITS.match(token.strip("\"'()[]{}!?;:").rstrip(".,"))
    if not match:
        return None
    whole = match.group(1).replace(",", "")
    fraction = match.group(2) or ""
    return Decimal(whole + fraction)


def tokenize(text: str) -> List[str]:
    """Whitespace tokenization that also splits hyphenated number words."""
    tokens: List[str] = []
    for raw in text.split():
        parts = raw.split("-")
        if len(parts) > 1 and all(_clean(p) in NUMBER_WORDS for p in parts if p):
            tokens.extend(p for p in parts if p)
        else:
            tokens.append(raw)
    return tokens


def find_numbers(tokens: Sequence[str]) -> List[NumberSpan]:
    """Locate digit tokens and runs of number words."""
    spans: List[NumberSpan] = []
    i = 0
    while i < len(tokens):
        digits = _parse_digits(tokens[i])
        if digits is not None:
            spans.append(NumberSpan(i, i + 1, digits))
            i += 1
            continue

        if _clean(tokens[i]) not in NUMBER_WORDS:
            i += 1
            continue

        j = i
        words: List[str] = []
        while j < len(tokens):
            word = _clean(tokens[j])
            if word in NUMBER_WORDS:
                words.append(word)
                j += 1
            elif word == "and" and words and j + 1 < len(tokens) and _clean(tokens[j + 1]) in NUMBER_WORDS:
                j += 1
            else:
                break

        value = words_to_number(words)
        end = j
        # "twelve point five" -> 12.5
        if value is not None and j + 1 < len(tokens) and _clean(tokens[j]) == "point":
            fraction_digits: List[str] = []
            k = j + 1
            while k < len(tokens) and _clean(tokens[k]) in UNITS and UNITS[_clean(tokens[k])] < 10:
                fraction_digits.append(str(UNITS[_clean(tokens[k])]))
                k += 1
            if fraction_digits:
                spans.append(NumberSpan(i, k, Decimal(f"{value}.{''.join(fraction_digits)}")))
                i = k
                continue

        if value is not None:
            spans.append(NumberSpan(i, end, Decimal(value)))
        i = max(end, i + 1)
    return spans


def extract_numbers(text: str) -> List[Decimal]:
    """All numeric values mentioned in a text, in order."""
    return [span.value for span in find_numbers(tokenize(text))]


def format_number(value: Decimal) -> str:
    """1500 -> "1500", 12.50 -> "12.50"."""
    if value == value.to_integral_value() and "." not in str(value):
        return str(int(value))
    return str(value)


def replace_number_words(text: str) -> str:
    """
    Rewrite spoken numbers as digits.

    "add cost one thousand five hundred for cement"
        -> "add cost 1500 for cement"
    """
    tokens = tokenize(text)
    spans = find_numbers(tokens)
    if not spans:
        return " ".join(tokens)

    out: List[str] = []
    position = 0
    for span in spans:
        out.extend(tokens[position:span.start])
        out.append(format_number(span.value))
        position = span.end
    out.extend(tokens[position:])
    return " ".join(out)
