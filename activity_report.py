# activity_report.py
from __future__ import annotations

import csv
from io import StringIO
from typing import Iterable, List, Optional

from models import StockTransaction

CSV_HEADER = ["Date", "User", "Product", "Type", "Quantity Change", "Previous Stock", "New Stock"]


def filter_transactions(
    transactions: Iterable[StockTransaction],
    query: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[StockTransaction]:
    """Case-insensitive match on product or user name, optionally narrowed to one user."""
    q = (query or "").strip().lower()
    out = []
    for tx in transactions:
        if user_id and tx.user_id != user_id:
            continue
        if q and q not in (tx.product_name or "").lower() and q not in (tx.user_name or "").lower():
            continue
        out.append(tx)
    return out


def transactions_to_csv(transactions: Iterable[StockTransaction]) -> str:
    buf = StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(CSV_HEADER)
    for tx in transactions:
        w.writerow([
            tx.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            tx.user_name or tx.user_id or "",
            tx.product_name,
            tx.direction.value,
            tx.quantity_change,
            tx.previous_stock,
            tx.resulting_stock,
        ])
    return buf.getvalue()
