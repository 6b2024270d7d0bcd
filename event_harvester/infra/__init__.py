"""Infra layer utilities (storage, broker, pacing, UA pools)."""

from .broker import BrokerConnection
from .rate_limit import RateLimiter
from .storage import SQLiteManager
from .ua_pool import UserAgentPool

__all__ = ["BrokerConnection", "RateLimiter", "SQLiteManager", "UserAgentPool"]
