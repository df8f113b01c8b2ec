"""Fuzzy duplicate detection for song names.

Names are compared on their normalized form with a symmetric score in
[0, 1]. The default scorer is the Sørensen–Dice coefficient over character
bigrams; rapidfuzz's ratio scorers are available as alternatives and all
of them are driven through ``rapidfuzz.process.extractOne``.
"""
from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from rapidfuzz import fuzz, process

from be.config import SimilarityScorer
from be.pipelines.normalization import normalize_name

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def dice_coefficient(
    s1: str,
    s2: str,
    *,
    processor: Callable[[str], str] | None = None,
    score_cutoff: float | None = None,
    **kwargs: Any,
) -> float:
    """Bigram overlap score on a 0-100 scale (rapidfuzz scorer protocol).

    Whitespace is ignored. Strings shorter than two characters only match
    when identical.
    """
    if processor is not None:
        s1, s2 = processor(s1), processor(s2)

    a = _WHITESPACE.sub("", s1)
    b = _WHITESPACE.sub("", s2)
    if a == b:
        return 100.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    bigrams = Counter(a[i:i + 2] for i in range(len(a) - 1))
    overlap = 0
    for i in range(len(b) - 1):
        bigram = b[i:i + 2]
        if bigrams[bigram] > 0:
            bigrams[bigram] -= 1
            overlap += 1

    score = 200.0 * overlap / (len(a) + len(b) - 2)
    if score_cutoff is not None and score < score_cutoff:
        return 0.0
    return score


SCORERS: dict[SimilarityScorer, Callable[..., float]] = {
    SimilarityScorer.DICE: dice_coefficient,
    SimilarityScorer.RATIO: fuzz.ratio,
    SimilarityScorer.TOKEN_SORT_RATIO: fuzz.token_sort_ratio,
}


def name_similarity(a: str, b: str, scorer: SimilarityScorer = SimilarityScorer.DICE) -> float:
    """Similarity of two song names in [0, 1]."""
    return SCORERS[scorer](normalize_name(a), normalize_name(b)) / 100.0


def clamp_threshold(value: Any) -> float:
    """Coerce a threshold into [0, 1].

    Out-of-range values clamp to the nearest bound; anything that is not a
    number clamps to 1.0 so that only exact matches conflict.
    """
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        return 1.0
    if math.isnan(threshold):
        return 1.0
    return max(0.0, min(1.0, threshold))


class ConflictSource(str, Enum):
    """Where a conflicting name was found."""
    DATABASE = "database"
    PAYLOAD = "payload"


@dataclass
class NameConflict:
    """Best match at or above the threshold."""
    source: ConflictSource
    matched_name: str
    score: float


class NameSet:
    """Names with their precomputed comparison keys."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names: list[str] = []
        self._keys: list[str] = []
        for name in names:
            self.add(name)

    def __len__(self) -> int:
        return len(self._names)

    def add(self, name: str) -> None:
        self._names.append(name)
        self._keys.append(normalize_name(name))

    def best_match(self, key: str, scorer: Callable[..., float]) -> tuple[str, float] | None:
        """Return (name, score in [0, 1]) of the closest entry, or None if empty."""
        if not self._keys:
            return None
        match = process.extractOne(key, self._keys, scorer=scorer, processor=None)
        if match is None:
            return None
        _, score, idx = match
        return self._names[idx], score / 100.0


class NameDeduplicator:
    """Checks candidate names against a snapshot and the names accepted so far.

    The snapshot is fixed at construction. The accepted set only grows
    through ``accept``, which callers invoke for records that passed every
    check, so the first occurrence of a name in a batch wins.
    """

    def __init__(
        self,
        existing_names: Iterable[str],
        *,
        threshold: float,
        scorer: SimilarityScorer = SimilarityScorer.DICE,
    ) -> None:
        self.threshold = clamp_threshold(threshold)
        self._scorer = SCORERS[scorer]
        self._existing = NameSet(existing_names)
        self._accepted = NameSet()

        logger.debug(
            f"Deduplicator ready: {len(self._existing)} existing names, "
            f"threshold={self.threshold}, scorer={scorer.value}"
        )

    def find_conflict(self, name: str) -> NameConflict | None:
        """Return the first conflict, database before payload, or None."""
        key = normalize_name(name)
        for source, names in (
            (ConflictSource.DATABASE, self._existing),
            (ConflictSource.PAYLOAD, self._accepted),
        ):
            best = names.best_match(key, self._scorer)
            if best is not None and best[1] >= self.threshold:
                return NameConflict(source=source, matched_name=best[0], score=best[1])
        return None

    def accept(self, name: str) -> None:
        self._accepted.add(name)
