"""Extraction strategies and the fallback chain that sequences them."""

from __future__ import annotations

from ...config import GlobalConfig
from ...errors import ConfigurationError
from ..fetcher import Fetcher
from ..parser import ListingParser
from .base import ExtractionStrategy
from .browser import BrowserStrategy
from .chain import ChainOutcome, FallbackChain
from .http import HttpStrategy
from .service import ServiceStrategy


def build_strategies(
    config: GlobalConfig, fetcher: Fetcher, parser: ListingParser | None = None
) -> list[ExtractionStrategy]:
    """Instantiate the strategies named in ``extraction.strategy_order``."""

    parser = parser or ListingParser()
    factories = {
        "http": lambda: HttpStrategy(fetcher, parser),
        "browser": lambda: BrowserStrategy(config.extraction, parser, user_agent=config.user_agents()[0]),
        "service": lambda: ServiceStrategy(fetcher, config.extraction, parser),
    }
    strategies: list[ExtractionStrategy] = []
    for name in config.extraction.strategy_order:
        if name not in factories:
            raise ConfigurationError(f"Unknown extraction strategy: {name}")
        strategies.append(factories[name]())
    return strategies


__all__ = [
    "BrowserStrategy",
    "ChainOutcome",
    "ExtractionStrategy",
    "FallbackChain",
    "HttpStrategy",
    "ServiceStrategy",
    "build_strategies",
]
