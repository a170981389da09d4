# backend/trading/sql_store.py
"""SQLAlchemy-backed trade store (Supabase Postgres in production).

Each unit of work is one ``engine.begin()`` block. Row locks are
``SELECT ... FOR UPDATE``; Postgres releases them at commit/rollback. Lock
waits are bounded with ``SET LOCAL lock_timeout`` and every SQLAlchemy error
surfaces as ``BackendFailure`` after the block has rolled back.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    event,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from models.trade import OfferStatus, TradeHistory, TradeOffer
from trading.errors import BackendFailure, OfferUnavailable
from trading.store import StoreTransaction, TradeStore

logger = logging.getLogger(__name__)

metadata = MetaData()

trade_offers = Table(
    "trade_offers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(64), nullable=False),
    Column("owner_display_name", Text),
    Column("offering_items", JSON, nullable=False),
    Column("requesting_items", JSON, nullable=False),
    Column("status", String(16), nullable=False, default=OfferStatus.ACTIVE.value),
    Column("message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("completed_by", String(64)),
    Column("completed_by_display_name", Text),
    CheckConstraint(
        "status IN ('active', 'completed', 'cancelled', 'expired')",
        name="trade_offers_status_check",
    ),
    CheckConstraint("expires_at > created_at", name="trade_offers_expiry_check"),
    Index("idx_trade_offers_owner", "owner_id"),
    Index("idx_trade_offers_status_expires", "status", "expires_at"),
)

inventory_entries = Table(
    "inventory_entries",
    metadata,
    Column("account_id", String(64), primary_key=True),
    Column("item_id", String(64), primary_key=True),
    Column("quantity", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("quantity >= 0", name="inventory_entries_quantity_check"),
)

trade_history = Table(
    "trade_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("offer_id", String(36), nullable=False),
    Column("seller_id", String(64), nullable=False),
    Column("seller_display_name", Text),
    Column("buyer_id", String(64), nullable=False),
    Column("buyer_display_name", Text),
    Column("items_exchanged", JSON, nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=False),
    Column("seller_rating", Integer),
    Column("seller_comment", Text),
    Column("buyer_rating", Integer),
    Column("buyer_comment", Text),
    CheckConstraint("seller_rating BETWEEN 1 AND 5", name="trade_history_seller_rating_check"),
    CheckConstraint("buyer_rating BETWEEN 1 AND 5", name="trade_history_buyer_rating_check"),
    Index("idx_trade_history_seller", "seller_id"),
    Index("idx_trade_history_buyer", "buyer_id"),
)


def _sqlite_manual_begin(dbapi_connection, connection_record):
    # Stop pysqlite from deferring BEGIN until the first write
    dbapi_connection.isolation_level = None


def _sqlite_begin_immediate(conn):
    # SQLite ignores FOR UPDATE; take the database write lock before any read
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _offer_from_row(row) -> TradeOffer:
    return TradeOffer.model_validate(dict(row))


def _history_from_row(row) -> TradeHistory:
    return TradeHistory.model_validate(dict(row))


def _offer_values(offer: TradeOffer) -> dict:
    values = offer.model_dump()
    values["status"] = offer.status.value
    return values


def _history_values(history: TradeHistory) -> dict:
    return history.model_dump()


class SqlTradeStore(TradeStore):
    """Trade store over any SQLAlchemy engine (Postgres or SQLite).

    SQLite has no row locks, so every unit there opens with
    ``BEGIN IMMEDIATE`` and holds the database write lock for its duration.
    Units serialize on the whole file; lock waits are bounded by the
    driver's busy timeout.
    """

    def __init__(self, engine: Engine, lock_timeout: float = 5.0):
        self.engine = engine
        self.lock_timeout = lock_timeout
        if engine.dialect.name == "sqlite" and not event.contains(engine, "begin", _sqlite_begin_immediate):
            event.listen(engine, "connect", _sqlite_manual_begin)
            event.listen(engine, "begin", _sqlite_begin_immediate)

    @classmethod
    def from_url(cls, url: str, lock_timeout: float = 5.0, create_tables: bool = True, **engine_kwargs):
        if make_url(url).get_backend_name() == "sqlite":
            engine_kwargs.setdefault("connect_args", {"timeout": lock_timeout, "check_same_thread": False})
        engine = create_engine(url, pool_pre_ping=True, **engine_kwargs)
        store = cls(engine, lock_timeout=lock_timeout)
        if create_tables:
            store.create_tables()
        return store

    def create_tables(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator["SqlTransaction"]:
        try:
            with self.engine.begin() as conn:
                if conn.dialect.name == "postgresql":
                    conn.execute(text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout * 1000)}ms'"))
                yield SqlTransaction(conn)
        except SQLAlchemyError as exc:
            logger.error("Trade store transaction rolled back: %s", exc)
            raise BackendFailure(f"Storage error: {exc.__class__.__name__}") from exc

    @contextmanager
    def _read(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Trade store read failed: %s", exc)
            raise BackendFailure(f"Storage error: {exc.__class__.__name__}") from exc

    # ---- display reads ----

    def get_offer(self, offer_id: str) -> Optional[TradeOffer]:
        with self._read() as conn:
            row = conn.execute(
                select(trade_offers).where(trade_offers.c.id == offer_id)
            ).mappings().first()
        return _offer_from_row(row) if row else None

    def list_active_offers(self, now: datetime) -> list[TradeOffer]:
        query = (
            select(trade_offers)
            .where(
                trade_offers.c.status == OfferStatus.ACTIVE.value,
                trade_offers.c.expires_at > now,
            )
            .order_by(trade_offers.c.created_at.desc())
        )
        with self._read() as conn:
            rows = conn.execute(query).mappings().all()
        return [_offer_from_row(row) for row in rows]

    def list_offers_by_owner(self, owner_id: str) -> list[TradeOffer]:
        query = (
            select(trade_offers)
            .where(trade_offers.c.owner_id == owner_id)
            .order_by(trade_offers.c.created_at.desc())
        )
        with self._read() as conn:
            rows = conn.execute(query).mappings().all()
        return [_offer_from_row(row) for row in rows]

    def find_lapsed_offer_ids(self, now: datetime) -> list[str]:
        query = select(trade_offers.c.id).where(
            trade_offers.c.status == OfferStatus.ACTIVE.value,
            trade_offers.c.expires_at < now,
        )
        with self._read() as conn:
            return list(conn.execute(query).scalars().all())

    def get_balance(self, account_id: str, item_id: str) -> int:
        query = select(inventory_entries.c.quantity).where(
            inventory_entries.c.account_id == account_id,
            inventory_entries.c.item_id == item_id,
        )
        with self._read() as conn:
            quantity = conn.execute(query).scalar()
        return quantity or 0

    def get_balances(self, account_id: str) -> dict[str, int]:
        query = select(inventory_entries.c.item_id, inventory_entries.c.quantity).where(
            inventory_entries.c.account_id == account_id,
            inventory_entries.c.quantity > 0,
        )
        with self._read() as conn:
            return {item_id: quantity for item_id, quantity in conn.execute(query)}

    def get_history(self, history_id: str) -> Optional[TradeHistory]:
        with self._read() as conn:
            row = conn.execute(
                select(trade_history).where(trade_history.c.id == history_id)
            ).mappings().first()
        return _history_from_row(row) if row else None

    def list_history(self, account_id: str) -> list[TradeHistory]:
        query = (
            select(trade_history)
            .where(or_(trade_history.c.seller_id == account_id, trade_history.c.buyer_id == account_id))
            .order_by(trade_history.c.completed_at.desc())
        )
        with self._read() as conn:
            rows = conn.execute(query).mappings().all()
        return [_history_from_row(row) for row in rows]


class SqlTransaction(StoreTransaction):
    """Unit of work bound to one open connection/transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    # ---- offers ----

    def lock_offer(self, offer_id: str) -> Optional[TradeOffer]:
        row = self.conn.execute(
            select(trade_offers).where(trade_offers.c.id == offer_id).with_for_update()
        ).mappings().first()
        return _offer_from_row(row) if row else None

    def insert_offer(self, offer: TradeOffer) -> None:
        self.conn.execute(insert(trade_offers).values(**_offer_values(offer)))

    def update_offer(self, offer: TradeOffer) -> None:
        # Compare-and-set on status: terminal rows never change again
        result = self.conn.execute(
            update(trade_offers)
            .where(
                trade_offers.c.id == offer.id,
                trade_offers.c.status == OfferStatus.ACTIVE.value,
            )
            .values(
                status=offer.status.value,
                completed_at=offer.completed_at,
                completed_by=offer.completed_by,
                completed_by_display_name=offer.completed_by_display_name,
            )
        )
        if result.rowcount != 1:
            raise OfferUnavailable()

    # ---- inventory ----

    def _ensure_inventory_row(self, account_id: str, item_id: str) -> None:
        # A missing row cannot be locked, so materialize it at zero first
        values = {"account_id": account_id, "item_id": item_id, "quantity": 0}
        dialect = self.conn.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(inventory_entries).values(**values).on_conflict_do_nothing()
        elif dialect == "sqlite":
            stmt = sqlite_insert(inventory_entries).values(**values).on_conflict_do_nothing()
        else:
            raise NotImplementedError(f"Unsupported dialect: {dialect}")
        self.conn.execute(stmt)

    def lock_inventory(self, account_id: str, item_id: str) -> int:
        row_filter = and_(
            inventory_entries.c.account_id == account_id,
            inventory_entries.c.item_id == item_id,
        )
        quantity = self.conn.execute(
            select(inventory_entries.c.quantity).where(row_filter).with_for_update()
        ).scalar()
        if quantity is None:
            self._ensure_inventory_row(account_id, item_id)
            quantity = self.conn.execute(
                select(inventory_entries.c.quantity).where(row_filter).with_for_update()
            ).scalar_one()
        return quantity

    def write_inventory(self, account_id: str, item_id: str, quantity: int) -> None:
        if quantity < 0:
            raise ValueError("Inventory quantity cannot be negative")
        row_filter = and_(
            inventory_entries.c.account_id == account_id,
            inventory_entries.c.item_id == item_id,
        )
        if quantity == 0:
            self.conn.execute(delete(inventory_entries).where(row_filter))
        else:
            self.conn.execute(
                update(inventory_entries)
                .where(row_filter)
                .values(quantity=quantity, updated_at=datetime.now(timezone.utc))
            )

    # ---- history ----

    def insert_history(self, history: TradeHistory) -> None:
        self.conn.execute(insert(trade_history).values(**_history_values(history)))

    def lock_history(self, history_id: str) -> Optional[TradeHistory]:
        row = self.conn.execute(
            select(trade_history).where(trade_history.c.id == history_id).with_for_update()
        ).mappings().first()
        return _history_from_row(row) if row else None

    def update_history(self, history: TradeHistory) -> None:
        self.conn.execute(
            update(trade_history)
            .where(trade_history.c.id == history.id)
            .values(
                seller_rating=history.seller_rating,
                seller_comment=history.seller_comment,
                buyer_rating=history.buyer_rating,
                buyer_comment=history.buyer_comment,
            )
        )
