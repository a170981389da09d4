# backend/trading/store.py
"""Storage contract for the trading engine.

A ``TradeStore`` offers two kinds of access:

- display reads (``get_offer``, ``list_active_offers``, ``get_balances`` ...)
  that take no locks and must never feed an accept/cancel/expire decision;
- ``transaction()``, a context manager yielding a ``StoreTransaction``: one
  atomic unit of work. Every ``lock_*`` call takes an exclusive row lock that
  is held until the unit commits (normal exit) or rolls back (any exception).
  Nothing a unit writes is visible to others before commit.

Lock order inside a unit is always: offer or history row first, then
inventory rows sorted by ``(account_id, item_id)``.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Optional

from models.trade import TradeHistory, TradeOffer


class StoreTransaction(ABC):
    """One atomic unit of work against the three trade tables."""

    # ---- offers ----

    @abstractmethod
    def lock_offer(self, offer_id: str) -> Optional[TradeOffer]:
        """Lock the offer row and return its current state, or None."""

    @abstractmethod
    def insert_offer(self, offer: TradeOffer) -> None:
        ...

    @abstractmethod
    def update_offer(self, offer: TradeOffer) -> None:
        """Write the status/completion fields of a locked, still active offer.

        Raises ``OfferUnavailable`` if the stored row is no longer active.
        """

    # ---- inventory ----

    @abstractmethod
    def lock_inventory(self, account_id: str, item_id: str) -> int:
        """Lock the (account, item) row and return its quantity (0 if absent)."""

    @abstractmethod
    def write_inventory(self, account_id: str, item_id: str, quantity: int) -> None:
        """Write a quantity to a row locked by this unit. 0 removes the row."""

    # ---- history ----

    @abstractmethod
    def insert_history(self, history: TradeHistory) -> None:
        ...

    @abstractmethod
    def lock_history(self, history_id: str) -> Optional[TradeHistory]:
        ...

    @abstractmethod
    def update_history(self, history: TradeHistory) -> None:
        """Write the rating fields of a locked history row."""


class TradeStore(ABC):
    """Persistence for offers, inventory entries and trade history."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[StoreTransaction]:
        ...

    @abstractmethod
    def get_offer(self, offer_id: str) -> Optional[TradeOffer]:
        ...

    @abstractmethod
    def list_active_offers(self, now: datetime) -> list[TradeOffer]:
        """Offers with status active and expires_at > now, newest first."""

    @abstractmethod
    def list_offers_by_owner(self, owner_id: str) -> list[TradeOffer]:
        ...

    @abstractmethod
    def find_lapsed_offer_ids(self, now: datetime) -> list[str]:
        """Ids of offers with status active and expires_at < now."""

    @abstractmethod
    def get_balance(self, account_id: str, item_id: str) -> int:
        ...

    @abstractmethod
    def get_balances(self, account_id: str) -> dict[str, int]:
        """Non-zero balances of one account keyed by item_id."""

    @abstractmethod
    def get_history(self, history_id: str) -> Optional[TradeHistory]:
        ...

    @abstractmethod
    def list_history(self, account_id: str) -> list[TradeHistory]:
        """History rows where the account is seller or buyer, newest first."""
