from .chain import AntiBotChain, AntiBotStrategy, FetchAttempt, RequestPlan
from .strategies import build_chain

__all__ = ["AntiBotChain", "AntiBotStrategy", "FetchAttempt", "RequestPlan", "build_chain"]
