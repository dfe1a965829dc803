# models.py
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Direction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass
class Product:
    id: str
    name: str
    barcode_data: str
    current_stock: int = 0
    minimum_threshold: int = 5
    category: str = ""
    description: str = ""
    barcode_type: str = "QR"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.minimum_threshold

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Product":
        return Product(
            id=row["id"],
            name=row["name"],
            barcode_data=row["barcode_data"],
            current_stock=int(row["current_stock"]),
            minimum_threshold=int(row["minimum_threshold"]),
            category=row.get("category") or "",
            description=row.get("description") or "",
            barcode_type=row.get("barcode_type") or "QR",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=int(row.get("version") or 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = _iso(self.created_at)
        d["updated_at"] = _iso(self.updated_at)
        d["is_low_stock"] = self.is_low_stock
        return d


@dataclass
class Alert:
    id: str
    product_id: str
    product_name: str
    current_stock: int
    threshold: int
    is_read: bool = False
    is_resolved: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Alert":
        return Alert(
            id=row["id"],
            product_id=row["product_id"],
            product_name=row["product_name"],
            current_stock=int(row["current_stock"]),
            threshold=int(row["threshold"]),
            is_read=bool(row.get("is_read")),
            is_resolved=bool(row.get("is_resolved")),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = _iso(self.created_at)
        return d


@dataclass(frozen=True)
class StockTransaction:
    """Append-only record of one confirmed stock change."""
    id: str
    product_id: str
    product_name: str
    direction: Direction
    quantity: int
    previous_stock: int
    resulting_stock: int
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def quantity_change(self) -> int:
        return self.quantity if self.direction is Direction.ADD else -self.quantity

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "StockTransaction":
        return StockTransaction(
            id=row["id"],
            product_id=row["product_id"],
            product_name=row["product_name"],
            direction=Direction(row["direction"]),
            quantity=int(row["quantity"]),
            previous_stock=int(row["previous_stock"]),
            resulting_stock=int(row["resulting_stock"]),
            user_id=row.get("user_id"),
            user_name=row.get("user_name"),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "transaction_type": self.direction.value,
            "quantity": self.quantity,
            "quantity_change": self.quantity_change,
            "previous_stock": self.previous_stock,
            "resulting_stock": self.resulting_stock,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "created_at": _iso(self.created_at),
        }
