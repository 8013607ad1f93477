"""
name_matching.py
================
Fuzzy matching of OCR'd sign-in lines against the class roster.

  clean_name   : strip numbering / punctuation, collapse whitespace
  similarity   : 1 - levenshtein / max(len) on case-folded strings, in [0, 1]
  best_match   : single highest-scoring roster name (first one wins ties)
  all_matches  : every roster name at or above a threshold, best first
"""

import re
from typing import List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

DEFAULT_THRESHOLD = 0.7

# "1.", "2)", "#3", "(4)", "5:" at the very start of the line
NUMBERING_PATTERN = re.compile(r"^\s*[#(]?\s*\d+\s*[.):\]-]?\s*")
NON_LETTER_PATTERN = re.compile(r"[^A-Za-z ]")
WHITESPACE_PATTERN = re.compile(r"\s+")

Match = Tuple[str, float]


def clean_name(raw: str) -> str:
    """'#2) Jane-Doe!!' -> 'Jane Doe'. Never raises; '' in, '' out."""
    if not raw:
        return ""
    text = NUMBERING_PATTERN.sub("", str(raw), count=1)
    text = NON_LETTER_PATTERN.sub(" ", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def similarity(a: str, b: str) -> float:
    a, b = a.casefold(), b.casefold()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def _scored(name: str, candidates: Sequence[str]) -> List[Match]:
    needle = clean_name(name).casefold()
    return [(c, similarity(needle, c)) for c in candidates]


def best_match(name: str, candidates: Sequence[str]) -> Optional[Match]:
    if not candidates:
        return None
    best: Optional[Match] = None
    for candidate, score in _scored(name, candidates):
        if best is None or score > best[1]:
            best = (candidate, score)
    return best


def all_matches(name: str, candidates: Sequence[str],
                threshold: float = DEFAULT_THRESHOLD) -> List[Match]:
    hits = [m for m in _scored(name, candidates) if m[1] >= threshold]
    # sorted() is stable, so equal scores keep roster order
    return sorted(hits, key=lambda m: m[1], reverse=True)
