# backend/trading/memory_store.py
"""In-process trade store with per-row locks.

Each row key (offer, inventory entry, history) gets its own
``threading.Lock``. A transaction acquires row locks on demand, stages its
writes privately and applies them on commit, then releases its locks. An
exception anywhere inside the unit discards the staged writes, so other
threads never observe a half-applied unit.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from models.trade import OfferStatus, TradeHistory, TradeOffer
from trading.errors import BackendFailure, OfferUnavailable
from trading.store import StoreTransaction, TradeStore

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5.0

_MISSING = object()


class MemoryTradeStore(TradeStore):
    """Thread-safe memory store. Used for development and the unit suite."""

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._offers: dict[str, TradeOffer] = {}
        self._inventory: dict[tuple[str, str], int] = {}
        self._history: dict[str, TradeHistory] = {}

        # key -> [lock, number of transactions holding or waiting on it]
        self._row_locks: dict[tuple, list] = {}
        self._registry_lock = threading.Lock()
        # Guards the dicts themselves during commit and display reads only
        self._data_lock = threading.Lock()

    def checkout_lock(self, key: tuple) -> threading.Lock:
        with self._registry_lock:
            entry = self._row_locks.get(key)
            if entry is None:
                entry = self._row_locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def return_lock(self, key: tuple) -> None:
        """Drop the row's lock once no transaction holds or waits on it."""
        with self._registry_lock:
            entry = self._row_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[key]

    @contextmanager
    def transaction(self) -> Iterator["MemoryTransaction"]:
        tx = MemoryTransaction(self)
        try:
            yield tx
            tx.commit()
        finally:
            tx.release()

    def _apply(self, offers, inventory, history) -> None:
        with self._data_lock:
            self._offers.update(offers)
            for key, quantity in inventory.items():
                if quantity == 0:
                    self._inventory.pop(key, None)
                else:
                    self._inventory[key] = quantity
            self._history.update(history)

    # ---- display reads ----

    def get_offer(self, offer_id: str) -> Optional[TradeOffer]:
        with self._data_lock:
            offer = self._offers.get(offer_id)
            return offer.model_copy(deep=True) if offer else None

    def list_active_offers(self, now: datetime) -> list[TradeOffer]:
        with self._data_lock:
            offers = [o.model_copy(deep=True) for o in self._offers.values() if o.is_open(now)]
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    def list_offers_by_owner(self, owner_id: str) -> list[TradeOffer]:
        with self._data_lock:
            offers = [o.model_copy(deep=True) for o in self._offers.values() if o.owner_id == owner_id]
        return sorted(offers, key=lambda o: o.created_at, reverse=True)

    def find_lapsed_offer_ids(self, now: datetime) -> list[str]:
        with self._data_lock:
            return [
                o.id for o in self._offers.values()
                if o.status is OfferStatus.ACTIVE and o.expires_at < now
            ]

    def get_balance(self, account_id: str, item_id: str) -> int:
        with self._data_lock:
            return self._inventory.get((account_id, item_id), 0)

    def get_balances(self, account_id: str) -> dict[str, int]:
        with self._data_lock:
            return {
                item_id: quantity
                for (owner, item_id), quantity in self._inventory.items()
                if owner == account_id and quantity > 0
            }

    def get_history(self, history_id: str) -> Optional[TradeHistory]:
        with self._data_lock:
            return self._history.get(history_id)

    def list_history(self, account_id: str) -> list[TradeHistory]:
        with self._data_lock:
            rows = [h for h in self._history.values() if account_id in (h.seller_id, h.buyer_id)]
        return sorted(rows, key=lambda h: h.completed_at, reverse=True)


class MemoryTransaction(StoreTransaction):
    """Unit of work over a MemoryTradeStore."""

    def __init__(self, store: MemoryTradeStore):
        self.store = store
        self._held: dict[tuple, threading.Lock] = {}
        self._offers: dict[str, TradeOffer] = {}
        self._inventory: dict[tuple[str, str], int] = {}
        self._history: dict[str, TradeHistory] = {}

    def _acquire(self, key: tuple) -> None:
        if key in self._held:
            return
        lock = self.store.checkout_lock(key)
        if not lock.acquire(timeout=self.store.lock_timeout):
            self.store.return_lock(key)
            logger.error("Lock wait timeout on %s", key)
            raise BackendFailure(f"Lock wait timeout on {key[0]} row")
        self._held[key] = lock

    def _require(self, key: tuple) -> None:
        if key not in self._held:
            raise RuntimeError(f"Row {key} written without holding its lock")

    def commit(self) -> None:
        self.store._apply(self._offers, self._inventory, self._history)

    def release(self) -> None:
        for key, lock in self._held.items():
            lock.release()
            self.store.return_lock(key)
        self._held.clear()

    # ---- offers ----

    def _current_offer(self, offer_id: str) -> Optional[TradeOffer]:
        if offer_id in self._offers:
            return self._offers[offer_id]
        with self.store._data_lock:
            return self.store._offers.get(offer_id)

    def lock_offer(self, offer_id: str) -> Optional[TradeOffer]:
        self._acquire(("offer", offer_id))
        offer = self._current_offer(offer_id)
        return offer.model_copy(deep=True) if offer else None

    def insert_offer(self, offer: TradeOffer) -> None:
        self._acquire(("offer", offer.id))
        self._offers[offer.id] = offer.model_copy(deep=True)

    def update_offer(self, offer: TradeOffer) -> None:
        self._require(("offer", offer.id))
        current = self._current_offer(offer.id)
        if current is None or current.status.is_terminal:
            raise OfferUnavailable()
        self._offers[offer.id] = current.model_copy(update={
            "status": offer.status,
            "completed_at": offer.completed_at,
            "completed_by": offer.completed_by,
            "completed_by_display_name": offer.completed_by_display_name,
        })

    # ---- inventory ----

    def lock_inventory(self, account_id: str, item_id: str) -> int:
        key = (account_id, item_id)
        self._acquire(("inventory",) + key)
        staged = self._inventory.get(key, _MISSING)
        if staged is not _MISSING:
            return staged
        with self.store._data_lock:
            return self.store._inventory.get(key, 0)

    def write_inventory(self, account_id: str, item_id: str, quantity: int) -> None:
        self._require(("inventory", account_id, item_id))
        if quantity < 0:
            raise ValueError("Inventory quantity cannot be negative")
        self._inventory[(account_id, item_id)] = quantity

    # ---- history ----

    def insert_history(self, history: TradeHistory) -> None:
        self._acquire(("history", history.id))
        self._history[history.id] = history

    def lock_history(self, history_id: str) -> Optional[TradeHistory]:
        self._acquire(("history", history_id))
        if history_id in self._history:
            return self._history[history_id]
        with self.store._data_lock:
            return self.store._history.get(history_id)

    def update_history(self, history: TradeHistory) -> None:
        self._require(("history", history.id))
        self._history[history.id] = history
