# backend/trading/ledger.py
"""Per-account, per-item quantity store with atomic debit/credit."""
import logging
from typing import Iterable

from trading.errors import InsufficientItems
from trading.store import StoreTransaction, TradeStore

logger = logging.getLogger(__name__)


class InventoryLedger:
    """The only writer of inventory rows.

    ``debit`` and ``credit`` run inside a caller's unit of work and hold the
    row lock of the ``(account_id, item_id)`` entry until that unit ends.
    """

    def __init__(self, store: TradeStore):
        self.store = store

    def lock_rows(self, tx: StoreTransaction, keys: Iterable[tuple[str, str]]) -> None:
        """Lock every (account_id, item_id) row up front in sorted order."""
        for account_id, item_id in sorted(set(keys)):
            tx.lock_inventory(account_id, item_id)

    def debit(self, tx: StoreTransaction, account_id: str, item_id: str, quantity: int) -> int:
        """Remove ``quantity`` units; fails with no write if the balance is short."""
        if quantity <= 0:
            raise ValueError("Debit quantity must be positive")
        current = tx.lock_inventory(account_id, item_id)
        if current < quantity:
            raise InsufficientItems(item_id, quantity - current)
        remaining = current - quantity
        tx.write_inventory(account_id, item_id, remaining)
        return remaining

    def credit(self, tx: StoreTransaction, account_id: str, item_id: str, quantity: int) -> int:
        """Add ``quantity`` units, creating the row if absent."""
        if quantity <= 0:
            raise ValueError("Credit quantity must be positive")
        current = tx.lock_inventory(account_id, item_id)
        updated = current + quantity
        tx.write_inventory(account_id, item_id, updated)
        return updated

    def grant(self, account_id: str, item_id: str, quantity: int) -> int:
        """Credit items in a unit of their own (rewards, admin seeding)."""
        with self.store.transaction() as tx:
            updated = self.credit(tx, account_id, item_id, quantity)
        logger.info("Granted %s x%d to %s (now %d)", item_id, quantity, account_id, updated)
        return updated

    # Display reads: never use these to decide an accept/cancel/expire

    def balance(self, account_id: str, item_id: str) -> int:
        return self.store.get_balance(account_id, item_id)

    def balances(self, account_id: str) -> dict[str, int]:
        return self.store.get_balances(account_id)
