# backend/trading/errors.py
"""Error taxonomy for the trade exchange engine.

Business-rule errors (``TradeError`` subclasses) are always raised by a
validation step that runs before any mutation, so they never leave state
behind. ``BackendFailure`` means the enclosing unit of work was rolled back.
"""
from typing import Optional


class TradingError(Exception):
    """Root of every error raised by the trading engine."""
    code = "trading_error"
    status_code = 500
    default_message = "Trading error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "detail": str(self)}


class TradeError(TradingError):
    """A business rule rejected the operation."""
    code = "trade_error"
    status_code = 400
    default_message = "Trade rejected"


class InvalidOffer(TradeError):
    code = "invalid_offer"
    default_message = "Offer is invalid"


class OfferNotFound(TradeError):
    code = "offer_not_found"
    status_code = 404
    default_message = "Offer not found"


class OfferUnavailable(TradeError):
    code = "offer_unavailable"
    status_code = 409
    default_message = "Offer is no longer active"


class OfferExpired(TradeError):
    code = "offer_expired"
    status_code = 409
    default_message = "Offer has expired"


class SelfAcceptance(TradeError):
    code = "self_acceptance"
    default_message = "Cannot accept your own offer"


class InsufficientItems(TradeError):
    code = "insufficient_items"

    def __init__(self, item_id: str, shortfall: int):
        self.item_id = item_id
        self.shortfall = shortfall
        super().__init__(f"Insufficient items: {item_id}, short by {shortfall}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"item_id": self.item_id, "shortfall": self.shortfall})
        return data


class PermissionDenied(TradeError):
    code = "permission_denied"
    status_code = 403
    default_message = "Not permitted"


class AlreadyRated(TradeError):
    code = "already_rated"
    status_code = 409
    default_message = "Trade already rated by this party"


class HistoryNotFound(TradeError):
    code = "history_not_found"
    status_code = 404
    default_message = "Trade history not found"


class InvalidRating(TradeError):
    code = "invalid_rating"
    default_message = "Rating must be between 1 and 5"


class BackendFailure(TradingError):
    """Storage failed (lock timeout, deadlock, connectivity). Retryable."""
    code = "backend_failure"
    status_code = 500
    default_message = "Storage backend failure"
