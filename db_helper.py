# db_helper.py
# ----------------------------------------------------------------------
# Storage seam for the inventory core:
# - get_conn() / run_query(): raw psycopg2 helpers
# - ProductRepository / AlertRepository / TransactionRepository interfaces
# - InventoryStore.atomic(): one unit of work spanning all three
# - PostgresStore: psycopg2 implementation (one connection per unit)
# ----------------------------------------------------------------------
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ContextManager, Iterable, Iterator, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from errors import ConcurrentUpdate, InvalidProduct
from models import Alert, Product, StockTransaction
from settings import Settings

logger = logging.getLogger(__name__)


def get_conn(settings: Optional[Settings] = None):
    settings = settings or Settings.from_env()
    conn = psycopg2.connect(
        host=settings.pg_host,
        port=settings.pg_port,
        dbname=settings.pg_database,
        user=settings.pg_user,
        password=settings.pg_password,
    )
    conn.autocommit = False  # we'll commit explicitly
    return conn


def run_query(cur, sql: str, params: Iterable[Any] | None = None):
    cur.execute(sql, params or ())
    # Only return rows if it's a SELECT
    if cur.description is not None:
        return cur.fetchall()
    return None


# psycopg2 executes these one by one (see init_db.py)
SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS public.products (
        id                 TEXT PRIMARY KEY,
        name               TEXT NOT NULL,
        category           TEXT NOT NULL DEFAULT '',
        description        TEXT NOT NULL DEFAULT '',
        barcode_data       TEXT NOT NULL UNIQUE,
        barcode_type       TEXT NOT NULL DEFAULT 'QR',
        current_stock      INTEGER NOT NULL DEFAULT 0 CHECK (current_stock >= 0),
        minimum_threshold  INTEGER NOT NULL DEFAULT 5 CHECK (minimum_threshold >= 0),
        version            INTEGER NOT NULL DEFAULT 1,
        created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.alerts (
        id             TEXT PRIMARY KEY,
        product_id     TEXT NOT NULL REFERENCES public.products (id) ON DELETE CASCADE,
        product_name   TEXT NOT NULL,
        current_stock  INTEGER NOT NULL,
        threshold      INTEGER NOT NULL,
        is_read        BOOLEAN NOT NULL DEFAULT FALSE,
        is_resolved    BOOLEAN NOT NULL DEFAULT FALSE,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.stock_transactions (
        id               TEXT PRIMARY KEY,
        product_id       TEXT NOT NULL,
        product_name     TEXT NOT NULL,
        direction        TEXT NOT NULL CHECK (direction IN ('add', 'remove')),
        quantity         INTEGER NOT NULL CHECK (quantity > 0),
        previous_stock   INTEGER NOT NULL,
        resulting_stock  INTEGER NOT NULL CHECK (resulting_stock >= 0),
        user_id          TEXT,
        user_name        TEXT,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_alerts_open ON public.alerts (is_resolved, created_at DESC);",
    "CREATE INDEX IF NOT EXISTS ix_tx_product ON public.stock_transactions (product_id, created_at DESC);",
    "CREATE INDEX IF NOT EXISTS ix_tx_user ON public.stock_transactions (user_id, created_at DESC);",
]


# ------------------------------------------------------------------
# Repository interfaces
# ------------------------------------------------------------------
class ProductRepository(ABC):
    @abstractmethod
    def get(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def find_by_barcode(self, payload: str) -> Optional[Product]: ...

    @abstractmethod
    def list(self) -> List[Product]: ...

    @abstractmethod
    def list_low_stock(self) -> List[Product]: ...

    @abstractmethod
    def add(self, product: Product) -> Product: ...

    @abstractmethod
    def update_stock(
        self, product_id: str, new_stock: int, *, expected_version: int, updated_at: datetime
    ) -> Product:
        """Compare-and-swap on `version`; raises ConcurrentUpdate on mismatch."""

    @abstractmethod
    def delete(self, product_id: str) -> bool: ...


class AlertRepository(ABC):
    @abstractmethod
    def add(self, alert: Alert) -> Alert: ...

    @abstractmethod
    def get(self, alert_id: str) -> Optional[Alert]: ...

    @abstractmethod
    def list(self, resolved: Optional[bool] = None) -> List[Alert]: ...

    @abstractmethod
    def resolve(self, alert_id: str) -> Optional[Alert]: ...


class TransactionRepository(ABC):
    @abstractmethod
    def add(self, tx: StockTransaction) -> StockTransaction: ...

    @abstractmethod
    def list(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[StockTransaction]: ...

    @abstractmethod
    def latest_for_product(self, product_id: str) -> Optional[StockTransaction]: ...


@dataclass
class InventoryUnit:
    products: ProductRepository
    alerts: AlertRepository
    transactions: TransactionRepository


class InventoryStore(ABC):
    @abstractmethod
    def atomic(self) -> ContextManager[InventoryUnit]:
        """Yield repositories bound to one unit of work; commit on success, roll back on error."""


# ------------------------------------------------------------------
# PostgreSQL implementation
# ------------------------------------------------------------------
_PRODUCT_COLS = (
    "id, name, category, description, barcode_data, barcode_type, "
    "current_stock, minimum_threshold, version, created_at, updated_at"
)
_ALERT_COLS = "id, product_id, product_name, current_stock, threshold, is_read, is_resolved, created_at"
_TX_COLS = (
    "id, product_id, product_name, direction, quantity, previous_stock, "
    "resulting_stock, user_id, user_name, created_at"
)


class PgProductRepository(ProductRepository):
    def __init__(self, cur):
        self.cur = cur

    def _one(self, sql: str, params) -> Optional[Product]:
        self.cur.execute(sql, params)
        row = self.cur.fetchone()
        return Product.from_row(row) if row else None

    def get(self, product_id):
        return self._one(f"SELECT {_PRODUCT_COLS} FROM public.products WHERE id = %s", (product_id,))

    def find_by_barcode(self, payload):
        # Exact match only; no case folding
        return self._one(
            f"SELECT {_PRODUCT_COLS} FROM public.products WHERE barcode_data = %s LIMIT 1",
            (payload,),
        )

    def list(self):
        rows = run_query(self.cur, f"SELECT {_PRODUCT_COLS} FROM public.products ORDER BY updated_at DESC")
        return [Product.from_row(r) for r in rows or []]

    def list_low_stock(self):
        rows = run_query(
            self.cur,
            f"""
            SELECT {_PRODUCT_COLS}
              FROM public.products
             WHERE current_stock <= minimum_threshold
             ORDER BY current_stock ASC, upper(name)
            """,
        )
        return [Product.from_row(r) for r in rows or []]

    def add(self, product):
        try:
            self.cur.execute(
                """
                INSERT INTO public.products (
                    id, name, category, description, barcode_data, barcode_type,
                    current_stock, minimum_threshold, version, created_at, updated_at
                ) VALUES (
                    %(id)s, %(name)s, %(category)s, %(description)s, %(barcode_data)s, %(barcode_type)s,
                    %(current_stock)s, %(minimum_threshold)s, %(version)s, %(created_at)s, %(updated_at)s
                )
                """,
                {
                    "id": product.id,
                    "name": product.name,
                    "category": product.category,
                    "description": product.description,
                    "barcode_data": product.barcode_data,
                    "barcode_type": product.barcode_type,
                    "current_stock": product.current_stock,
                    "minimum_threshold": product.minimum_threshold,
                    "version": product.version,
                    "created_at": product.created_at,
                    "updated_at": product.updated_at,
                },
            )
        except psycopg2.IntegrityError as e:
            raise InvalidProduct(f"Barcode already registered: {product.barcode_data}") from e
        return product

    def update_stock(self, product_id, new_stock, *, expected_version, updated_at):
        updated = self._one(
            f"""
            UPDATE public.products
               SET current_stock = %s,
                   updated_at    = %s,
                   version       = version + 1
             WHERE id = %s AND version = %s
            RETURNING {_PRODUCT_COLS}
            """,
            (new_stock, updated_at, product_id, expected_version),
        )
        if updated is None:
            raise ConcurrentUpdate(f"Product {product_id} changed since it was read")
        return updated

    def delete(self, product_id):
        self.cur.execute("DELETE FROM public.products WHERE id = %s", (product_id,))
        return self.cur.rowcount > 0


class PgAlertRepository(AlertRepository):
    def __init__(self, cur):
        self.cur = cur

    def add(self, alert):
        self.cur.execute(
            f"INSERT INTO public.alerts ({_ALERT_COLS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
            (
                alert.id, alert.product_id, alert.product_name, alert.current_stock,
                alert.threshold, alert.is_read, alert.is_resolved, alert.created_at,
            ),
        )
        return alert

    def get(self, alert_id):
        self.cur.execute(f"SELECT {_ALERT_COLS} FROM public.alerts WHERE id = %s", (alert_id,))
        row = self.cur.fetchone()
        return Alert.from_row(row) if row else None

    def list(self, resolved=None):
        sql = [f"SELECT {_ALERT_COLS} FROM public.alerts"]
        params: List[Any] = []
        if resolved is not None:
            sql.append(" WHERE is_resolved = %s")
            params.append(resolved)
        sql.append(" ORDER BY created_at DESC")
        rows = run_query(self.cur, "\n".join(sql), params)
        return [Alert.from_row(r) for r in rows or []]

    def resolve(self, alert_id):
        self.cur.execute(
            f"""
            UPDATE public.alerts
               SET is_resolved = TRUE, is_read = TRUE
             WHERE id = %s
            RETURNING {_ALERT_COLS}
            """,
            (alert_id,),
        )
        row = self.cur.fetchone()
        return Alert.from_row(row) if row else None


class PgTransactionRepository(TransactionRepository):
    def __init__(self, cur):
        self.cur = cur

    def add(self, tx):
        self.cur.execute(
            f"INSERT INTO public.stock_transactions ({_TX_COLS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                tx.id, tx.product_id, tx.product_name, tx.direction.value, tx.quantity,
                tx.previous_stock, tx.resulting_stock, tx.user_id, tx.user_name, tx.created_at,
            ),
        )
        return tx

    def list(self, user_id=None, limit=None):
        sql = [f"SELECT {_TX_COLS} FROM public.stock_transactions"]
        params: List[Any] = []
        if user_id:
            sql.append(" WHERE user_id = %s")
            params.append(user_id)
        sql.append(" ORDER BY created_at DESC")
        if limit:
            sql.append(" LIMIT %s")
            params.append(int(limit))
        rows = run_query(self.cur, "\n".join(sql), params)
        return [StockTransaction.from_row(r) for r in rows or []]

    def latest_for_product(self, product_id):
        self.cur.execute(
            f"""
            SELECT {_TX_COLS}
              FROM public.stock_transactions
             WHERE product_id = %s
             ORDER BY created_at DESC
             LIMIT 1
            """,
            (product_id,),
        )
        row = self.cur.fetchone()
        return StockTransaction.from_row(row) if row else None


class PostgresStore(InventoryStore):
    def __init__(self, conn_factory: Optional[Callable[[], Any]] = None):
        self._conn_factory = conn_factory or get_conn

    @contextmanager
    def atomic(self) -> Iterator[InventoryUnit]:
        with closing(self._conn_factory()) as conn:
            with conn:  # commit on success, rollback on exception
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield InventoryUnit(
                        products=PgProductRepository(cur),
                        alerts=PgAlertRepository(cur),
                        transactions=PgTransactionRepository(cur),
                    )


def open_store(settings: Optional[Settings] = None) -> InventoryStore:
    settings = settings or Settings.from_env()
    if settings.store == "memory":
        from memory_store import MemoryStore

        logger.info("Using in-memory inventory store")
        return MemoryStore()
    if settings.store != "postgres":
        raise ValueError(f"Unknown INVENTORY_STORE: {settings.store!r}")
    logger.info("Using PostgreSQL store %s@%s/%s", settings.pg_user, settings.pg_host, settings.pg_database)
    return PostgresStore(lambda: get_conn(settings))
