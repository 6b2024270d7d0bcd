"""Engine components: fetch → parse → validate → dedup."""

from .fetcher import FetchRequest, FetchResponse, Fetcher, ProbeResult
from .parser import ListingParser
from .thread_pool import ThreadPoolManager
from .validator import ValidationResult, validate_event

__all__ = [
    "FetchRequest",
    "FetchResponse",
    "Fetcher",
    "ListingParser",
    "ProbeResult",
    "ThreadPoolManager",
    "ValidationResult",
    "validate_event",
]
