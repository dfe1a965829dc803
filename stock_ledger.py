"""
Overview
Applies a confirmed stock change to one product: computes the resulting level,
persists it, raises a low-stock alert when the product is at or under its
threshold, and appends the transaction to the activity log. All three writes
happen inside one `store.atomic()` unit, so either all of them land or none do.

The stock update is a compare-and-swap on the product's `version`. If another
writer got there first the unit rolls back and the whole read-compute-write
cycle is retried against a fresh read (a remove that no longer fits then fails
with InsufficientStock instead of losing the other update).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from db_helper import InventoryStore
from errors import (
    ConcurrentUpdate,
    InsufficientStock,
    InvalidDirection,
    InvalidQuantity,
    ProductNotFound,
)
from models import Alert, Direction, Product, StockTransaction, new_id, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE_S = 0.05


@dataclass
class TransactionOutcome:
    product: Product
    transaction: StockTransaction
    alert: Optional[Alert] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product.to_dict(),
            "transaction": self.transaction.to_dict(),
            "alert": self.alert.to_dict() if self.alert else None,
        }


def parse_quantity(raw: Any) -> int:
    """Accept a positive whole number (int or numeric string); reject everything else."""
    if isinstance(raw, bool):
        raise InvalidQuantity("Please enter a valid quantity")
    if isinstance(raw, int):
        qty = raw
    else:
        s = str(raw if raw is not None else "").strip()
        if not s.isdigit():
            raise InvalidQuantity("Please enter a valid quantity")
        qty = int(s)
    if qty <= 0:
        raise InvalidQuantity("Please enter a valid quantity")
    return qty


def parse_direction(raw: Any) -> Direction:
    if isinstance(raw, Direction):
        return raw
    try:
        return Direction(str(raw or "").strip().lower())
    except ValueError:
        raise InvalidDirection(f"Unknown transaction type: {raw!r} (expected 'add' or 'remove')") from None


def run_with_retry(func: Callable[[], Any], *, attempts: int = MAX_ATTEMPTS, backoff_base: float = BACKOFF_BASE_S):
    """Run `func`, retrying on optimistic-locking conflicts with exponential backoff."""
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrentUpdate:
            if attempt >= attempts - 1:
                raise
            logger.warning("Concurrent stock update, retrying (attempt %d/%d)", attempt + 2, attempts)
            time.sleep(backoff_base * (2 ** attempt))


def apply_stock_transaction(
    store: InventoryStore,
    product: Union[Product, str],
    direction: Union[Direction, str],
    quantity: int,
    *,
    user_id: Optional[str] = None,
    user_name: Optional[str] = None,
    attempts: int = MAX_ATTEMPTS,
    clock: Callable[[], datetime] = utcnow,
) -> TransactionOutcome:
    product_id = product.id if isinstance(product, Product) else str(product)
    direction = parse_direction(direction)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity("Please enter a valid quantity")

    def _apply() -> TransactionOutcome:
        with store.atomic() as unit:
            current = unit.products.get(product_id)
            if current is None:
                raise ProductNotFound(f"Product not found: {product_id}")

            delta = quantity if direction is Direction.ADD else -quantity
            resulting = current.current_stock + delta
            if resulting < 0:
                raise InsufficientStock(current.current_stock, quantity)

            now = clock()
            updated = unit.products.update_stock(
                product_id, resulting, expected_version=current.version, updated_at=now
            )

            alert = None
            if resulting <= current.minimum_threshold:
                alert = unit.alerts.add(Alert(
                    id=new_id(),
                    product_id=current.id,
                    product_name=current.name,
                    current_stock=resulting,
                    threshold=current.minimum_threshold,
                    created_at=now,
                ))

            tx = unit.transactions.add(StockTransaction(
                id=new_id(),
                product_id=current.id,
                product_name=current.name,
                direction=direction,
                quantity=quantity,
                previous_stock=current.current_stock,
                resulting_stock=resulting,
                user_id=user_id,
                user_name=user_name,
                created_at=now,
            ))
            return TransactionOutcome(product=updated, transaction=tx, alert=alert)

    outcome = run_with_retry(_apply, attempts=attempts)
    logger.info(
        "%s %d x %s: %d -> %d%s",
        direction.value, quantity, outcome.product.name,
        outcome.transaction.previous_stock, outcome.transaction.resulting_stock,
        " (low-stock alert)" if outcome.alert else "",
    )
    return outcome
