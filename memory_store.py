# memory_store.py
# In-process InventoryStore: dict-backed, one lock, snapshot rollback per unit.
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional

from db_helper import (
    AlertRepository,
    InventoryStore,
    InventoryUnit,
    ProductRepository,
    TransactionRepository,
)
from errors import ConcurrentUpdate, InvalidProduct
from models import Alert, Product, StockTransaction


class _Tables:
    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.alerts: Dict[str, Alert] = {}
        self.transactions: List[StockTransaction] = []

    def checkpoint(self):
        # Rows are replaced rather than mutated; transactions only append
        return dict(self.products), dict(self.alerts), len(self.transactions)

    def restore(self, checkpoint) -> None:
        self.products, self.alerts, n_tx = checkpoint
        del self.transactions[n_tx:]


class MemoryProductRepository(ProductRepository):
    def __init__(self, tables: _Tables):
        self.t = tables

    def get(self, product_id):
        p = self.t.products.get(product_id)
        return replace(p) if p else None

    def find_by_barcode(self, payload):
        for p in self.t.products.values():
            if p.barcode_data == payload:
                return replace(p)
        return None

    def list(self):
        return [replace(p) for p in sorted(self.t.products.values(), key=lambda p: p.updated_at, reverse=True)]

    def list_low_stock(self):
        low = [p for p in self.t.products.values() if p.is_low_stock]
        return [replace(p) for p in sorted(low, key=lambda p: (p.current_stock, p.name.upper()))]

    def add(self, product):
        if product.id in self.t.products:
            raise InvalidProduct(f"Product id already exists: {product.id}")
        if self.find_by_barcode(product.barcode_data) is not None:
            raise InvalidProduct(f"Barcode already registered: {product.barcode_data}")
        self.t.products[product.id] = replace(product)
        return replace(product)

    def update_stock(self, product_id, new_stock, *, expected_version, updated_at):
        current = self.t.products.get(product_id)
        if current is None or current.version != expected_version:
            raise ConcurrentUpdate(f"Product {product_id} changed since it was read")
        updated = replace(current, current_stock=new_stock, updated_at=updated_at, version=current.version + 1)
        self.t.products[product_id] = updated
        return replace(updated)

    def delete(self, product_id):
        if self.t.products.pop(product_id, None) is None:
            return False
        # Mirrors ON DELETE CASCADE on alerts
        self.t.alerts = {k: a for k, a in self.t.alerts.items() if a.product_id != product_id}
        return True


class MemoryAlertRepository(AlertRepository):
    def __init__(self, tables: _Tables):
        self.t = tables

    def add(self, alert):
        self.t.alerts[alert.id] = replace(alert)
        return replace(alert)

    def get(self, alert_id):
        a = self.t.alerts.get(alert_id)
        return replace(a) if a else None

    def list(self, resolved=None):
        rows = [a for a in self.t.alerts.values() if resolved is None or a.is_resolved == resolved]
        return [replace(a) for a in sorted(rows, key=lambda a: a.created_at, reverse=True)]

    def resolve(self, alert_id):
        a = self.t.alerts.get(alert_id)
        if a is None:
            return None
        a = replace(a, is_resolved=True, is_read=True)
        self.t.alerts[alert_id] = a
        return replace(a)


class MemoryTransactionRepository(TransactionRepository):
    def __init__(self, tables: _Tables):
        self.t = tables

    def add(self, tx):
        self.t.transactions.append(tx)
        return tx

    def list(self, user_id=None, limit=None):
        # Stable on equal timestamps: later appends first
        rows = [tx for tx in reversed(self.t.transactions) if not user_id or tx.user_id == user_id]
        rows.sort(key=lambda tx: tx.created_at, reverse=True)
        return rows[:limit] if limit else rows

    def latest_for_product(self, product_id):
        for tx in self.list():
            if tx.product_id == product_id:
                return tx
        return None


class MemoryStore(InventoryStore):
    def __init__(self, products: Optional[List[Product]] = None):
        self._lock = threading.RLock()
        self._tables = _Tables()
        for p in products or []:
            self._tables.products[p.id] = replace(p)

    @contextmanager
    def atomic(self) -> Iterator[InventoryUnit]:
        with self._lock:
            checkpoint = self._tables.checkpoint()
            try:
                yield InventoryUnit(
                    products=MemoryProductRepository(self._tables),
                    alerts=MemoryAlertRepository(self._tables),
                    transactions=MemoryTransactionRepository(self._tables),
                )
            except BaseException:
                self._tables.restore(checkpoint)
                raise
