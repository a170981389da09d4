"""Tests for the in-memory store's row lock registry."""
import threading

import pytest

from trading import MemoryTradeStore
from trading.errors import BackendFailure, OfferNotFound


class TestRowLockRegistry:
    """Row locks exist only while a transaction holds or waits on them."""

    def test_locks_are_dropped_after_each_unit(self, memory_engine, memory_store, owner_id, buyer_id):
        memory_engine.ledger.grant(owner_id, "wood", 10)
        memory_engine.ledger.grant(buyer_id, "iron", 3)
        offer = memory_engine.offers.create(owner_id, [("wood", 10)], [("iron", 3)])
        memory_engine.exchange.accept(offer.id, buyer_id)
        with pytest.raises(OfferNotFound):
            memory_engine.offers.cancel("no-such-offer", owner_id)

        assert memory_store._row_locks == {}

    def test_lock_is_registered_while_held(self, memory_store, owner_id):
        with memory_store.transaction() as tx:
            tx.lock_inventory(owner_id, "wood")
            assert list(memory_store._row_locks) == [("inventory", owner_id, "wood")]

        assert memory_store._row_locks == {}

    def test_timed_out_waiter_leaves_no_lock_behind(self, owner_id):
        store = MemoryTradeStore(lock_timeout=0.05)
        errors = []

        def wait_for_row():
            try:
                with store.transaction() as tx:
                    tx.lock_inventory(owner_id, "wood")
            except BackendFailure as exc:
                errors.append(exc)

        with store.transaction() as tx:
            tx.lock_inventory(owner_id, "wood")
            thread = threading.Thread(target=wait_for_row)
            thread.start()
            thread.join()
            assert store._row_locks[("inventory", owner_id, "wood")][1] == 1

        assert len(errors) == 1
        assert store._row_locks == {}
