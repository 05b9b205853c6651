"""Sync orchestration."""

from .engine import DestinationRoute, SyncEngine, build_engine
from .ledger import DedupLedger, HistoryLedger
from .refresh import TokenRefresher

__all__ = ["DedupLedger", "DestinationRoute", "HistoryLedger", "SyncEngine", "TokenRefresher", "build_engine"]
