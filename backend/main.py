import asyncio
import hmac
import logging
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import AuthError, Client, create_client

from config import (
    ADMIN_API_KEY,
    CORS_ORIGINS,
    DATABASE_URL,
    DEFAULT_OFFER_TTL_HOURS,
    LOCK_TIMEOUT_SECONDS,
    LOG_LEVEL,
    MAX_OFFER_TTL_HOURS,
    SUPABASE_KEY,
    SUPABASE_URL,
    SWEEP_INTERVAL_SECONDS,
)
from models.inventory import InventoryEntry, InventoryGrant, InventoryResponse
from models.trade import (
    AcceptTradeResponse,
    OfferCreate,
    SweepResponse,
    TradeHistory,
    TradeOffer,
    TradeRatingCreate,
)
from models.user import AuthenticatedUser
from trading import MemoryTradeStore, TradeStore, TradingEngine
from trading.errors import BackendFailure, InvalidOffer, PermissionDenied, TradeError
from trading.sql_store import SqlTradeStore

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def build_store() -> TradeStore:
    if DATABASE_URL:
        return SqlTradeStore.from_url(DATABASE_URL, lock_timeout=LOCK_TIMEOUT_SECONDS)
    logger.warning("DATABASE_URL not set, trades are kept in memory only")
    return MemoryTradeStore(lock_timeout=LOCK_TIMEOUT_SECONDS)


# Supabase client, used to verify caller access tokens
supabase: Optional[Client] = (
    create_client(SUPABASE_URL, SUPABASE_KEY) if SUPABASE_URL and SUPABASE_KEY else None
)

engine = TradingEngine(
    build_store(),
    default_ttl=timedelta(hours=DEFAULT_OFFER_TTL_HOURS),
    max_ttl=timedelta(hours=MAX_OFFER_TTL_HOURS),
)


async def sweep_periodically(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(engine.sweeper.sweep)
        except Exception:
            logger.exception("Periodic expiration sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(sweep_periodically(SWEEP_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Trade Exchange API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Error Handling ==============

@app.exception_handler(TradeError)
async def trade_error_handler(request: Request, exc: TradeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(BackendFailure)
async def backend_failure_handler(request: Request, exc: BackendFailure):
    logger.error("Backend failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": BackendFailure.code, "detail": "Internal server error"},
    )


# ============== Auth ==============

def get_current_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    """Resolve the caller from a Supabase bearer token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication is not configured")

    token = authorization[len("bearer "):].strip()
    try:
        response = supabase.auth.get_user(token)
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = response.user if response else None
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    metadata = user.user_metadata or {}
    display_name = metadata.get("username") or user.email or "unknown"
    return AuthenticatedUser(id=str(user.id), display_name=display_name)


def require_admin(x_admin_key: Optional[str] = Header(None)):
    if not ADMIN_API_KEY or not x_admin_key or not hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(status_code=403, detail="Admin key required")


@app.get("/")
def read_root():
    return {"message": "Trade Exchange API"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Offer Endpoints ==============

@app.post("/offers", response_model=TradeOffer, status_code=201)
def create_offer(offer: OfferCreate, user: AuthenticatedUser = Depends(get_current_user)):
    """Post an offer. The offered items leave the caller's inventory until it resolves."""
    try:
        ttl = timedelta(hours=offer.valid_hours) if offer.valid_hours is not None else None
    except OverflowError:
        raise InvalidOffer("Offer lifetime is out of range")
    return engine.offers.create(
        owner_id=user.id,
        offering_items=offer.offering_items,
        requesting_items=offer.requesting_items,
        message=offer.message,
        ttl=ttl,
        owner_display_name=user.display_name,
    )


@app.get("/offers", response_model=list[TradeOffer])
def list_available_offers(user: AuthenticatedUser = Depends(get_current_user)):
    """Active, unexpired offers, newest first."""
    return engine.offers.list_available()


@app.get("/offers/mine", response_model=list[TradeOffer])
def list_my_offers(user: AuthenticatedUser = Depends(get_current_user)):
    """All of the caller's offers, any status."""
    return engine.offers.list_for_owner(user.id)


@app.get("/offers/{offer_id}", response_model=TradeOffer)
def get_offer(offer_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    return engine.offers.get(offer_id)


@app.post("/offers/{offer_id}/accept", response_model=AcceptTradeResponse)
def accept_offer(offer_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    """Accept an offer: atomic two-party swap."""
    return engine.exchange.accept(offer_id, buyer_id=user.id, buyer_display_name=user.display_name)


@app.post("/offers/{offer_id}/cancel", response_model=TradeOffer)
def cancel_offer(offer_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    """Withdraw an active offer and return its items to the owner."""
    return engine.offers.cancel(offer_id, requester_id=user.id)


# ============== History Endpoints ==============

@app.get("/history", response_model=list[TradeHistory])
def list_my_history(user: AuthenticatedUser = Depends(get_current_user)):
    return engine.history.list_for_account(user.id)


@app.get("/history/{history_id}", response_model=TradeHistory)
def get_history(history_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    history = engine.history.get(history_id)
    if history.role_of(user.id) is None:
        raise PermissionDenied("Only the two parties can view a trade")
    return history


@app.post("/history/{history_id}/rating", response_model=TradeHistory)
def rate_trade(
    history_id: str,
    rating: TradeRatingCreate,
    user: AuthenticatedUser = Depends(get_current_user),
):
    """Rate a completed trade once per party."""
    return engine.history.rate(history_id, rater_id=user.id, rating=rating.rating, comment=rating.comment)


# ============== Inventory Endpoints ==============

@app.get("/inventory", response_model=InventoryResponse)
def get_my_inventory(user: AuthenticatedUser = Depends(get_current_user)):
    return InventoryResponse.from_balances(user.id, engine.ledger.balances(user.id))


# ============== Admin Endpoints ==============

@app.post(
    "/admin/inventory/{account_id}",
    response_model=InventoryEntry,
    dependencies=[Depends(require_admin)],
)
def grant_items(account_id: str, grant: InventoryGrant):
    """Credit items to an account."""
    quantity = engine.ledger.grant(account_id, grant.item_id, grant.quantity)
    return InventoryEntry(account_id=account_id, item_id=grant.item_id, quantity=quantity)


@app.post("/admin/sweep", response_model=SweepResponse, dependencies=[Depends(require_admin)])
def run_expiration_sweep():
    """Expire and refund lapsed offers now."""
    return engine.sweeper.sweep()
