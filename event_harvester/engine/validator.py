"""Reject navigation links and junk rows before they reach deduplication."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from ..records import RawEventData, utcnow
from .dedup import parse_event_time

MIN_TITLE_LENGTH = 10
MIN_DESCRIPTION_LENGTH = 50
MAX_PAST_DAYS = 60
MAX_FUTURE_DAYS = 365 * 2

_INVALID_TITLES = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^home$",
        r"^menu$",
        r"^navigation$",
        r"^contact$",
        r"^about\s*us$",
        r"^services$",
        r"^browse\s*events$",
        r"^all\s*events$",
        r"^view\s*all$",
        r"^more\s*events$",
        r"^upcoming$",
        r"^past\s*events$",
        r"^calendar$",
        r"^search$",
        r"^filter$",
        r"^categories$",
        r"^sign\s*(in|up)$",
        r"^log\s*(in|out)$",
        r"^(my\s*)?account$",
        r"^cart$",
        r"^checkout$",
        r"^wishlist$",
        r"^favorites$",
    )
]
_ATTRACTION_KEYWORDS = (
    "permanent",
    "ongoing",
    "year-round",
    "daily",
    "open every",
    "always open",
    "museum",
    "gallery",
    "exhibition hall",
)
_REPEATED_CHAR = re.compile(r"(.)\1{5,}")
_LONG_CAPS = re.compile(r"[A-Z]{6,}")
_SPECIAL_CHAR = re.compile(r"[^a-zA-Z0-9\s]")


class Classification(str, Enum):
    EVENT = "event"
    ATTRACTION = "attraction"
    INVALID = "invalid"


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    classification: Classification
    reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def classify_event(event: RawEventData) -> Classification:
    title = (event.title or "").strip().lower()
    if any(pattern.match(title) for pattern in _INVALID_TITLES):
        return Classification.INVALID
    description = (event.description or "").lower()
    if any(keyword in title or keyword in description for keyword in _ATTRACTION_KEYWORDS):
        return Classification.ATTRACTION
    if not event.start_time and not event.end_time:
        return Classification.ATTRACTION
    return Classification.EVENT


def _is_suspicious(text: str) -> bool:
    if len(text) > 5 and text == text.upper() and _LONG_CAPS.search(text):
        return True
    if _REPEATED_CHAR.search(text):
        return True
    return len(_SPECIAL_CHAR.findall(text)) > len(text) * 0.3


def _date_problem(value: str, now: datetime) -> Optional[str]:
    parsed = parse_event_time(value)
    if parsed is None:
        return "Invalid date format"
    if parsed < now - timedelta(days=MAX_PAST_DAYS):
        return f"Event date is more than {MAX_PAST_DAYS} days in the past"
    if parsed > now + timedelta(days=MAX_FUTURE_DAYS):
        return "Event date is more than 2 years in the future"
    return None


def validate_event(event: RawEventData, now: Optional[datetime] = None) -> ValidationResult:
    now = now or utcnow()
    title = (event.title or "").strip()
    if not title:
        return ValidationResult(False, Classification.INVALID, "Missing title")
    if len(title) < MIN_TITLE_LENGTH:
        return ValidationResult(
            False,
            Classification.INVALID,
            f"Title too short ({len(title)} chars, minimum {MIN_TITLE_LENGTH})",
        )

    classification = classify_event(event)
    if classification is Classification.INVALID:
        return ValidationResult(False, classification, "Title matches navigation/menu pattern")

    warnings: list[str] = []
    description = (event.description or "").strip()
    if not description:
        warnings.append("Missing description")
    elif len(description) < MIN_DESCRIPTION_LENGTH:
        warnings.append(f"Description too short ({len(description)} chars)")

    if classification is Classification.EVENT:
        if not event.start_time:
            warnings.append("Missing start time")
        else:
            problem = _date_problem(event.start_time, now)
            if problem:
                return ValidationResult(False, classification, problem, warnings)

    if not event.location:
        warnings.append("Missing venue/location information")

    if _is_suspicious(title):
        return ValidationResult(False, Classification.INVALID, "Title contains suspicious patterns", warnings)
    return ValidationResult(True, classification, None, warnings)


def rejection_summary(results: Iterable[ValidationResult]) -> dict[str, int]:
    """Count rejection reasons, most frequent first."""

    counts: dict[str, int] = {}
    for result in results:
        if not result.is_valid:
            reason = result.reason or "unknown"
            counts[reason] = counts.get(reason, 0) + 1
    return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))


__all__ = [
    "Classification",
    "ValidationResult",
    "classify_event",
    "rejection_summary",
    "validate_event",
]
