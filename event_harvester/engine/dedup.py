"""Duplicate detection and merge rules for event records.

Everything here is pure: no I/O, no clocks, no shared state. The orchestrator
feeds records in and acts on the answers.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Collection, Mapping, Optional
from urllib.parse import urlparse

from dateutil import parser as date_parser
from fuzzywuzzy import fuzz

from ..config.models import DeduplicationConfig
from ..records import MatchType, RawEventData, SimilarityMatch

TITLE_WEIGHT = 0.5
LOCATION_WEIGHT = 0.3
TIME_WEIGHT = 0.2
# A time signal counts as dominant only when within half the tolerance
TIME_MATCH_THRESHOLD = 0.5

_TEXT_FIELDS = ("description", "location", "price", "image_url", "source_url")
_PUNCTUATION = re.compile(r"[^\w\s]")
_MERGE_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "price",
    "image_url",
    "source_url",
    "scrape_hash",
)


def _collapse(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.split())


def parse_event_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a listing timestamp into an aware UTC datetime, or ``None``."""

    text = _collapse(value)
    if not text:
        return None
    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_event_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _canonical_time(value: Optional[str]) -> Optional[str]:
    text = _collapse(value)
    if not text:
        return None
    parsed = parse_event_time(text)
    return format_event_time(parsed) if parsed else text


def normalize_event_data(event: RawEventData) -> RawEventData:
    """Return a copy with collapsed whitespace and canonical UTC timestamps."""

    changes: dict[str, Optional[str]] = {"title": _collapse(event.title)}
    for name in _TEXT_FIELDS:
        changes[name] = _collapse(getattr(event, name)) or None
    changes["start_time"] = _canonical_time(event.start_time)
    changes["end_time"] = _canonical_time(event.end_time)
    return replace(event, **changes)


def generate_event_hash(event: RawEventData) -> str:
    normalized = normalize_event_data(event)
    parts = (
        normalized.title,
        normalized.description or "",
        normalized.start_time or "",
        normalized.location or "",
    )
    digest_input = "|".join(part.casefold() for part in parts)
    return hashlib.sha256(digest_input.encode("utf-8")).hexdigest()


def _comparable(value: Optional[str]) -> str:
    text = _collapse(value).casefold()
    # Text made only of punctuation is compared as written
    return _collapse(_PUNCTUATION.sub("", text)) or text


def calculate_string_similarity(first: Optional[str], second: Optional[str]) -> float:
    left = _comparable(first)
    right = _comparable(second)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    # Ordered pair keeps the ratio symmetric regardless of the backend
    low, high = sorted((left, right))
    return fuzz.ratio(low, high) / 100.0


def calculate_time_similarity(
    first: Optional[str], second: Optional[str], tolerance_minutes: float
) -> float:
    left = parse_event_time(first)
    right = parse_event_time(second)
    if left is None or right is None:
        return 0.0
    diff_minutes = abs((left - right).total_seconds()) / 60.0
    if diff_minutes == 0:
        return 1.0
    if tolerance_minutes <= 0 or diff_minutes >= tolerance_minutes:
        return 0.0
    return 1.0 - diff_minutes / tolerance_minutes


def _dominant_signal(
    combined: float, location_score: float, time_score: float, config: DeduplicationConfig
) -> MatchType:
    contenders = []
    if location_score >= config.location_similarity_threshold:
        contenders.append((LOCATION_WEIGHT * location_score, MatchType.LOCATION))
    if time_score >= TIME_MATCH_THRESHOLD:
        contenders.append((TIME_WEIGHT * time_score, MatchType.TIME))
    contenders = [item for item in contenders if item[0] >= combined / 2]
    if not contenders:
        return MatchType.COMBINED
    return max(contenders, key=lambda item: item[0])[1]


def _score(
    event_id: str, candidate: RawEventData, existing: RawEventData, config: DeduplicationConfig
) -> SimilarityMatch:
    title_score = calculate_string_similarity(candidate.title, existing.title)
    location_score = calculate_string_similarity(candidate.location, existing.location)
    time_score = calculate_time_similarity(
        candidate.start_time, existing.start_time, config.time_tolerance_minutes
    )
    combined = (
        TITLE_WEIGHT * title_score + LOCATION_WEIGHT * location_score + TIME_WEIGHT * time_score
    )
    if title_score >= config.title_similarity_threshold:
        similarity = max(combined, title_score)
        match_type = MatchType.TITLE
    else:
        similarity = combined
        match_type = _dominant_signal(combined, location_score, time_score, config)
    return SimilarityMatch(
        event_id=event_id,
        similarity=round(min(1.0, similarity), 6),
        match_type=match_type,
        title_score=title_score,
        time_score=time_score,
        location_score=location_score,
    )


def rank_candidates(
    candidate: RawEventData,
    existing: Mapping[str, RawEventData],
    config: DeduplicationConfig,
) -> list[SimilarityMatch]:
    """Score every existing record against ``candidate``, best first."""

    scored = [_score(event_id, candidate, record, config) for event_id, record in existing.items()]
    scored.sort(key=lambda match: (-match.similarity, match.event_id))
    return scored


def qualifies(match: SimilarityMatch, config: DeduplicationConfig) -> bool:
    # Inclusive on both thresholds
    return (
        match.similarity >= config.combined_similarity_threshold
        or match.title_score >= config.title_similarity_threshold
    )


def find_similar_events(
    candidate: RawEventData,
    existing: Mapping[str, RawEventData],
    config: DeduplicationConfig,
) -> list[SimilarityMatch]:
    if not config.enable_fuzzy_matching:
        return []
    return [match for match in rank_candidates(candidate, existing, config) if qualifies(match, config)]


def is_exact_duplicate(event_hash: str, known_hashes: Collection[str]) -> bool:
    return bool(event_hash) and event_hash in known_hashes


def merge_event_data(existing: RawEventData, incoming: RawEventData) -> RawEventData:
    """Overlay the non-empty fields of ``incoming`` onto ``existing``."""

    changes = {}
    for name in _MERGE_FIELDS:
        value = getattr(incoming, name)
        if isinstance(value, str) and value.strip():
            changes[name] = value
    changes["extracted_at"] = max(existing.extracted_at, incoming.extracted_at)
    return replace(existing, **changes)


def _is_canonical_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def calculate_event_quality_score(event: RawEventData) -> int:
    score = 0
    title = _collapse(event.title)
    description = _collapse(event.description)
    location = _collapse(event.location)

    if title:
        score += 15
        if len(title) > 10:
            score += 5
        if len(title) > 30:
            score += 5

    if description:
        score += 15
        if description.casefold() != title.casefold():
            if len(description) > 50:
                score += 5
            if len(description) > 200:
                score += 5

    if _collapse(event.start_time):
        score += 15
        if _collapse(event.end_time):
            score += 5

    if location:
        score += 10
        if len(location) > 10:
            score += 5

    if _collapse(event.image_url):
        score += 4
    if _collapse(event.price):
        score += 4
    if _is_canonical_url(event.source_url):
        score += 7
    return min(score, 100)


__all__ = [
    "LOCATION_WEIGHT",
    "TIME_WEIGHT",
    "TITLE_WEIGHT",
    "calculate_event_quality_score",
    "calculate_string_similarity",
    "calculate_time_similarity",
    "find_similar_events",
    "format_event_time",
    "generate_event_hash",
    "is_exact_duplicate",
    "merge_event_data",
    "normalize_event_data",
    "parse_event_time",
    "qualifies",
    "rank_candidates",
]
