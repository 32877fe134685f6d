"""Derived pool, player and creator state for the CoinToss elimination game."""

from .chain_log import ChainLog, EventKind
from .dispatcher import Dispatcher, DispatchResult
from .store import EntityStore

__all__ = ["ChainLog", "Dispatcher", "DispatchResult", "EntityStore", "EventKind"]
