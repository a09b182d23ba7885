"""Approximate string matching and date range helpers."""

from datetime import date
from typing import Optional

from saleingest.models.sale import parse_iso_timestamp


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance (insert, delete, substitute) between two strings."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def string_similarity(first: str, second: str) -> float:
    """
    Normalized title similarity in [0, 1].

    (len(longer) - levenshtein(longer, shorter)) / len(longer) on lower-cased
    input; identical strings (including two empty ones) score 1.0.
    """
    s1 = first.lower()
    s2 = second.lower()
    if s1 == s2:
        return 1.0

    longer, shorter = (s1, s2) if len(s1) > len(s2) else (s2, s1)
    return (len(longer) - levenshtein_distance(longer, shorter)) / len(longer)


def _to_day(value: str) -> date:
    return parse_iso_timestamp(value).date()


def date_ranges_overlap(
    start1: str,
    end1: Optional[str],
    start2: str,
    end2: Optional[str],
) -> bool:
    """
    True when two [start, end] day ranges intersect.

    A missing end collapses the range to the start day.
    """
    s1 = _to_day(start1)
    e1 = _to_day(end1) if end1 else s1
    s2 = _to_day(start2)
    e2 = _to_day(end2) if end2 else s2
    return s1 <= e2 and s2 <= e1
