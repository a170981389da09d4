# backend/trading/history.py
"""Immutable record of completed exchanges plus one-time ratings."""
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from models.trade import ExchangedItems, TradeHistory, TradeOffer, TradeRole
from trading.errors import AlreadyRated, HistoryNotFound, InvalidRating, PermissionDenied
from trading.store import StoreTransaction, TradeStore

logger = logging.getLogger(__name__)


class HistoryRecorder:

    def __init__(self, store: TradeStore):
        self.store = store

    def record(
        self,
        tx: StoreTransaction,
        offer: TradeOffer,
        buyer_id: str,
        buyer_display_name: Optional[str],
        completed_at: datetime,
    ) -> TradeHistory:
        """Snapshot a completed offer. Only called from inside an accept unit."""
        history = TradeHistory(
            id=str(uuid4()),
            offer_id=offer.id,
            seller_id=offer.owner_id,
            seller_display_name=offer.owner_display_name,
            buyer_id=buyer_id,
            buyer_display_name=buyer_display_name,
            items_exchanged=ExchangedItems(
                offered=[item.model_copy() for item in offer.offering_items],
                requested=[item.model_copy() for item in offer.requesting_items],
            ),
            completed_at=completed_at,
        )
        tx.insert_history(history)
        return history

    def rate(
        self,
        history_id: str,
        rater_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> TradeHistory:
        """Write the rater's rating exactly once.

        The seller writes ``seller_rating``/``seller_comment`` and the buyer
        writes ``buyer_rating``/``buyer_comment``.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidRating()

        with self.store.transaction() as tx:
            history = tx.lock_history(history_id)
            if history is None:
                raise HistoryNotFound()

            role = history.role_of(rater_id)
            if role is None:
                raise PermissionDenied("Only the two parties can rate a trade")

            if role is TradeRole.SELLER:
                if history.seller_rating is not None:
                    raise AlreadyRated()
                updated = history.model_copy(update={"seller_rating": rating, "seller_comment": comment})
            else:
                if history.buyer_rating is not None:
                    raise AlreadyRated()
                updated = history.model_copy(update={"buyer_rating": rating, "buyer_comment": comment})

            tx.update_history(updated)

        logger.info("Trade %s rated %d by %s (%s)", history_id, rating, rater_id, role.value)
        return updated

    def get(self, history_id: str) -> TradeHistory:
        history = self.store.get_history(history_id)
        if history is None:
            raise HistoryNotFound()
        return history

    def list_for_account(self, account_id: str) -> list[TradeHistory]:
        return self.store.list_history(account_id)
