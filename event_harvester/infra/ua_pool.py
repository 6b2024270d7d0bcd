"""User-Agent pool shared by every fetch."""

from __future__ import annotations

import random
from threading import Lock
from typing import Iterable, List, Optional

from ..config import GlobalConfig


class UserAgentPool:
    """Return random user agents from the configured rotation list."""

    def __init__(self, user_agents: Iterable[str] | None = None) -> None:
        self._lock = Lock()
        self._uas: List[str] = [ua.strip() for ua in (user_agents or []) if ua.strip()]

    @classmethod
    def from_config(cls, config: GlobalConfig) -> "UserAgentPool":
        return cls(config.user_agents())

    def __len__(self) -> int:
        with self._lock:
            return len(self._uas)

    def get(self) -> Optional[str]:
        with self._lock:
            if not self._uas:
                return None
            return random.choice(self._uas)

    def refresh(self, user_agents: Iterable[str]) -> None:
        with self._lock:
            self._uas = [ua.strip() for ua in user_agents if ua.strip()]


__all__ = ["UserAgentPool"]
