# backend/trading/__init__.py
"""Atomic peer-to-peer trade exchange engine."""
from datetime import timedelta
from typing import Optional

from trading.clock import Clock, utcnow
from trading.exchange import ExchangeExecutor
from trading.history import HistoryRecorder
from trading.ledger import InventoryLedger
from trading.memory_store import MemoryTradeStore
from trading.offers import DEFAULT_OFFER_TTL, OfferStore
from trading.store import StoreTransaction, TradeStore
from trading.sweeper import ExpirationSweeper


class TradingEngine:
    """Wires the five components over one store and one clock."""

    def __init__(
        self,
        store: TradeStore,
        clock: Clock = utcnow,
        default_ttl: timedelta = DEFAULT_OFFER_TTL,
        max_ttl: Optional[timedelta] = None,
    ):
        self.store = store
        self.clock = clock
        self.ledger = InventoryLedger(store)
        self.history = HistoryRecorder(store)
        self.offers = OfferStore(store, self.ledger, clock, default_ttl, max_ttl)
        self.exchange = ExchangeExecutor(store, self.ledger, self.history, clock)
        self.sweeper = ExpirationSweeper(store, self.ledger, clock)


__all__ = [
    "ExchangeExecutor",
    "ExpirationSweeper",
    "HistoryRecorder",
    "InventoryLedger",
    "MemoryTradeStore",
    "OfferStore",
    "StoreTransaction",
    "TradeStore",
    "TradingEngine",
]
