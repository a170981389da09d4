# backend/trading/sweeper.py
"""Retire and refund offers whose deadline has passed."""
import logging

from models.trade import OfferStatus, SweepResponse
from trading.clock import Clock, utcnow
from trading.errors import BackendFailure
from trading.ledger import InventoryLedger
from trading.store import TradeStore

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Reconciliation pass over lapsed offers.

    Safe to run repeatedly and concurrently with accept: each offer is
    re-checked under its row lock, and whichever unit takes the lock first
    wins. The loser sees a non-active status and backs off without writing.
    """

    def __init__(self, store: TradeStore, ledger: InventoryLedger, clock: Clock = utcnow):
        self.store = store
        self.ledger = ledger
        self.clock = clock

    def expire(self, offer_id: str) -> bool:
        """Expire one offer if it is still active and lapsed. Returns True if it did."""
        with self.store.transaction() as tx:
            offer = tx.lock_offer(offer_id)
            now = self.clock()
            if offer is None or offer.status is not OfferStatus.ACTIVE or not offer.expires_at < now:
                return False

            self.ledger.lock_rows(tx, [(offer.owner_id, item.item_id) for item in offer.offering_items])
            for item in offer.offering_items:
                self.ledger.credit(tx, offer.owner_id, item.item_id, item.quantity)

            offer.status = OfferStatus.EXPIRED
            tx.update_offer(offer)

        logger.info("Offer %s expired, items returned to %s", offer_id, offer.owner_id)
        return True

    def sweep(self) -> SweepResponse:
        """Expire every lapsed offer, each in its own unit of work."""
        result = SweepResponse()
        for offer_id in self.store.find_lapsed_offer_ids(self.clock()):
            try:
                if self.expire(offer_id):
                    result.expired_offer_ids.append(offer_id)
            except BackendFailure:
                logger.exception("Failed to expire offer %s", offer_id)
                result.failed_offer_ids.append(offer_id)

        if result.expired_offer_ids or result.failed_offer_ids:
            logger.info(
                "Expiration sweep: %d expired, %d failed",
                len(result.expired_offer_ids),
                len(result.failed_offer_ids),
            )
        return result
