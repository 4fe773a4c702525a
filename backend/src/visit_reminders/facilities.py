from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from threading import Lock
from typing import Iterable

from .models import FacilityMatchConfidence

logger = logging.getLogger(__name__)

MIN_MATCH_SCORE = 0.3
CONTAINMENT_SCORE = 0.9

# Network brands and generic words carry no information about which site is meant.
_STOP_WORDS = frozenset(
    {
        "autosur",
        "secta",
        "dekra",
        "controle",
        "technique",
        "centre",
        "ct",
        "auto",
        "de",
        "la",
        "le",
        "les",
        "du",
        "des",
        "en",
        "sur",
        "sous",
    }
)
_SEPARATORS = re.compile(r"[-_']")
_PUNCTUATION = re.compile(r"[.,;:!?()]")
_SPACES = re.compile(r"\s+")


@dataclass(frozen=True)
class FacilityRecord:
    facility_id: str
    name: str
    network: str | None = None
    template_name: str | None = None
    phone: str | None = None
    short_url: str | None = None


@dataclass(frozen=True)
class FacilityMatch:
    facility: FacilityRecord
    confidence: FacilityMatchConfidence
    score: float


class FacilityDirectory:
    """Explicit lookup table of inspection facilities.

    Owned by the application context and swapped wholesale with ``replace``;
    ``invalidate`` empties it until the next load.
    """

    def __init__(self, facilities: Iterable[FacilityRecord] = ()) -> None:
        self._lock = Lock()
        self._facilities: tuple[FacilityRecord, ...] = tuple(facilities)

    def replace(self, facilities: Iterable[FacilityRecord]) -> None:
        with self._lock:
            self._facilities = tuple(facilities)
        logger.info("facility directory loaded with %d entries", len(self._facilities))

    def invalidate(self) -> None:
        with self._lock:
            self._facilities = ()

    def all(self) -> tuple[FacilityRecord, ...]:
        return self._facilities

    def get(self, facility_id: str | None) -> FacilityRecord | None:
        if not facility_id:
            return None
        for facility in self._facilities:
            if facility.facility_id == facility_id:
                return facility
        return None


def normalize_facility_name(name: str | None) -> str:
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name.lower())
    value = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    value = _SEPARATORS.sub(" ", value)
    value = _PUNCTUATION.sub("", value)
    return _SPACES.sub(" ", value).strip()


def extract_keywords(name: str | None) -> list[str]:
    return [
        word
        for word in normalize_facility_name(name).split(" ")
        if len(word) > 2 and word not in _STOP_WORDS
    ]


def similarity(left: str | None, right: str | None) -> float:
    """Share of keywords found (by substring, either way) in the other name."""
    left_keywords = extract_keywords(left)
    right_keywords = extract_keywords(right)
    if not left_keywords or not right_keywords:
        return 0.0
    common = [
        keyword
        for keyword in left_keywords
        if any(other in keyword or keyword in other for other in right_keywords)
    ]
    return len(common) / max(len(left_keywords), len(right_keywords))


def _confidence(score: float) -> FacilityMatchConfidence:
    if score >= 0.7:
        return "high"
    if score >= 0.5:
        return "medium"
    return "low"


def match_facility(directory: FacilityDirectory, name: str | None) -> FacilityMatch | None:
    normalized_name = normalize_facility_name(name)
    if not normalized_name:
        return None

    best: FacilityMatch | None = None
    for facility in directory.all():
        normalized_facility = normalize_facility_name(facility.name)
        if not normalized_facility:
            continue
        if normalized_name == normalized_facility:
            return FacilityMatch(facility=facility, confidence="high", score=1.0)

        if normalized_name in normalized_facility or normalized_facility in normalized_name:
            score = CONTAINMENT_SCORE
        else:
            score = similarity(name, facility.name)
        # Strict comparison: on ties the first facility encountered is kept.
        if score > 0 and (best is None or score > best.score):
            best = FacilityMatch(facility=facility, confidence=_confidence(score), score=score)

    if best is None or best.score < MIN_MATCH_SCORE:
        logger.info("no facility match for %r", name)
        return None
    logger.info(
        "facility match %r -> %r (%s, score %.2f)",
        name,
        best.facility.name,
        best.confidence,
        best.score,
    )
    return best
