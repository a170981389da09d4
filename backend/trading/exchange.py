# backend/trading/exchange.py
"""The atomic accept operation.

``accept`` runs as one unit of work:

1. lock the offer row (serializes accept/cancel/expire on that offer)
2. re-validate under the lock: exists, active, unexpired, not the owner
3. lock every inventory row it will touch, sorted by (account_id, item_id)
4. pre-check the buyer holds every requested item
5. debit requested items from the buyer
6. credit offered (escrowed) items to the buyer
7. credit requested items to the owner
8. mark the offer completed and write the history row

Any exception rolls the whole unit back, so a failed accept leaves both
accounts and the offer exactly as they were.
"""
import logging
from typing import Optional

from models.trade import AcceptTradeResponse, OfferStatus
from trading.clock import Clock, utcnow
from trading.errors import (
    InsufficientItems,
    OfferExpired,
    OfferNotFound,
    OfferUnavailable,
    SelfAcceptance,
    TradeError,
)
from trading.history import HistoryRecorder
from trading.ledger import InventoryLedger
from trading.store import TradeStore

logger = logging.getLogger(__name__)


class ExchangeExecutor:

    def __init__(
        self,
        store: TradeStore,
        ledger: InventoryLedger,
        history: HistoryRecorder,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.history = history
        self.clock = clock

    def accept(
        self,
        offer_id: str,
        buyer_id: str,
        buyer_display_name: Optional[str] = None,
    ) -> AcceptTradeResponse:
        """Swap the offer's items between owner and buyer, all or nothing.

        Raises a ``TradeError`` subclass when a business rule rejects the
        trade and ``BackendFailure`` when storage fails; in both cases
        nothing was written.
        """
        try:
            with self.store.transaction() as tx:
                offer = tx.lock_offer(offer_id)
                now = self.clock()

                if offer is None:
                    raise OfferNotFound()
                if offer.status is not OfferStatus.ACTIVE:
                    raise OfferUnavailable()
                if offer.expires_at <= now:
                    raise OfferExpired()
                if offer.owner_id == buyer_id:
                    raise SelfAcceptance()

                owner_id = offer.owner_id
                self.ledger.lock_rows(
                    tx,
                    [(buyer_id, item.item_id) for item in offer.requesting_items]
                    + [(buyer_id, item.item_id) for item in offer.offering_items]
                    + [(owner_id, item.item_id) for item in offer.requesting_items],
                )

                # Nothing is written until the buyer is known to hold everything
                for item in offer.requesting_items:
                    held = tx.lock_inventory(buyer_id, item.item_id)
                    if held < item.quantity:
                        raise InsufficientItems(item.item_id, item.quantity - held)

                for item in sorted(offer.requesting_items, key=lambda i: i.item_id):
                    self.ledger.debit(tx, buyer_id, item.item_id, item.quantity)
                for item in offer.offering_items:
                    self.ledger.credit(tx, buyer_id, item.item_id, item.quantity)
                for item in offer.requesting_items:
                    self.ledger.credit(tx, owner_id, item.item_id, item.quantity)

                offer.status = OfferStatus.COMPLETED
                offer.completed_at = now
                offer.completed_by = buyer_id
                offer.completed_by_display_name = buyer_display_name
                tx.update_offer(offer)

                record = self.history.record(tx, offer, buyer_id, buyer_display_name, now)
        except TradeError as exc:
            logger.warning("Accept of offer %s by %s rejected: %s", offer_id, buyer_id, exc.code)
            raise

        logger.info("Offer %s accepted by %s (history %s)", offer_id, buyer_id, record.id)
        return AcceptTradeResponse(
            success=True,
            message="Trade completed",
            offer_id=offer_id,
            history_id=record.id,
        )
