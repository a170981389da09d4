# backend/trading/offers.py
"""Offer lifecycle: creation, cancellation and listing."""
import logging
from datetime import timedelta
from typing import Iterable, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from models.trade import OfferStatus, TradeItem, TradeOffer
from trading.clock import Clock, utcnow
from trading.errors import InvalidOffer, OfferNotFound, OfferUnavailable, PermissionDenied
from trading.ledger import InventoryLedger
from trading.store import TradeStore

logger = logging.getLogger(__name__)

DEFAULT_OFFER_TTL = timedelta(hours=24)

ItemLike = Union[TradeItem, tuple[str, int], dict]


def normalize_items(items: Iterable[ItemLike], side: str) -> list[TradeItem]:
    """Validate one side of an offer: non-empty, positive, no duplicate item_id."""
    normalized = []
    try:
        for item in items:
            if isinstance(item, TradeItem):
                normalized.append(item.model_copy())
            elif isinstance(item, dict):
                normalized.append(TradeItem.model_validate(item))
            else:
                item_id, quantity = item
                normalized.append(TradeItem(item_id=item_id, quantity=quantity))
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidOffer(f"Invalid {side} item: {exc}") from exc

    if not normalized:
        raise InvalidOffer(f"{side} items must not be empty")

    seen = set()
    for item in normalized:
        if item.item_id in seen:
            raise InvalidOffer(f"Duplicate {side} item: {item.item_id}")
        seen.add(item.item_id)
    return normalized


class OfferStore:
    """Persistence and lifecycle of trade offers.

    Offered items are escrowed: ``create`` debits them from the owner in the
    same unit that inserts the offer, and ``cancel`` credits them back.
    """

    def __init__(
        self,
        store: TradeStore,
        ledger: InventoryLedger,
        clock: Clock = utcnow,
        default_ttl: timedelta = DEFAULT_OFFER_TTL,
        max_ttl: Optional[timedelta] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl

    def create(
        self,
        owner_id: str,
        offering_items: Iterable[ItemLike],
        requesting_items: Iterable[ItemLike],
        message: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        owner_display_name: Optional[str] = None,
    ) -> TradeOffer:
        """Post a new active offer and escrow its offered items."""
        offering = normalize_items(offering_items, "offering")
        requesting = normalize_items(requesting_items, "requesting")

        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= timedelta(0):
            raise InvalidOffer("Offer lifetime must be positive")
        if self.max_ttl is not None and ttl > self.max_ttl:
            raise InvalidOffer(f"Offer lifetime cannot exceed {self.max_ttl}")

        now = self.clock()
        offer = TradeOffer(
            id=str(uuid4()),
            owner_id=owner_id,
            owner_display_name=owner_display_name,
            offering_items=offering,
            requesting_items=requesting,
            status=OfferStatus.ACTIVE,
            message=message,
            created_at=now,
            expires_at=now + ttl,
        )

        with self.store.transaction() as tx:
            self.ledger.lock_rows(tx, [(owner_id, item.item_id) for item in offering])
            for item in sorted(offering, key=lambda i: i.item_id):
                self.ledger.debit(tx, owner_id, item.item_id, item.quantity)
            tx.insert_offer(offer)

        logger.info("Offer %s created by %s, expires %s", offer.id, owner_id, offer.expires_at.isoformat())
        return offer

    def cancel(self, offer_id: str, requester_id: str) -> TradeOffer:
        """Owner withdraws an active offer; escrowed items go back to the owner."""
        with self.store.transaction() as tx:
            offer = tx.lock_offer(offer_id)
            if offer is None:
                raise OfferNotFound()
            if offer.owner_id != requester_id:
                raise PermissionDenied("Only the owner can cancel an offer")
            if offer.status is not OfferStatus.ACTIVE:
                raise OfferUnavailable()

            self.ledger.lock_rows(tx, [(offer.owner_id, item.item_id) for item in offer.offering_items])
            for item in offer.offering_items:
                self.ledger.credit(tx, offer.owner_id, item.item_id, item.quantity)

            offer.status = OfferStatus.CANCELLED
            tx.update_offer(offer)

        logger.info("Offer %s cancelled by owner %s", offer_id, requester_id)
        return offer

    def get(self, offer_id: str) -> TradeOffer:
        offer = self.store.get_offer(offer_id)
        if offer is None:
            raise OfferNotFound()
        return offer

    def list_available(self) -> list[TradeOffer]:
        """Active offers whose deadline has not passed, newest first.

        The deadline is re-checked here because the expiration sweep may lag.
        """
        now = self.clock()
        return [offer for offer in self.store.list_active_offers(now) if offer.is_open(now)]

    def list_for_owner(self, owner_id: str) -> list[TradeOffer]:
        return self.store.list_offers_by_owner(owner_id)
