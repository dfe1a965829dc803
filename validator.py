# validator.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from db_helper import InventoryStore
from models import Product

logger = logging.getLogger(__name__)

NOT_REGISTERED = "QR code not registered"
LOOKUP_FAILED = "Validation error"
EMPTY_PAYLOAD = "Empty payload"


@dataclass
class ValidationResult:
    valid: bool
    product: Optional[Product] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "product": self.product.to_dict() if self.product else None,
            "reason": self.reason,
        }


class ProductValidator:
    """Resolve a decoded payload to a registered product.

    Exact string equality against `barcode_data`. Read-only, and never raises:
    any lookup failure comes back as an invalid result so the scan session can
    treat every non-success the same way.
    """

    def __init__(self, store: InventoryStore):
        self.store = store

    def validate(self, payload: Optional[str]) -> ValidationResult:
        if not payload:
            return ValidationResult(False, reason=EMPTY_PAYLOAD)
        try:
            with self.store.atomic() as unit:
                product = unit.products.find_by_barcode(payload)
        except Exception:
            logger.exception("Product lookup failed for payload %r", payload)
            return ValidationResult(False, reason=LOOKUP_FAILED)

        if product is None:
            logger.info("Payload %r is not registered", payload)
            return ValidationResult(False, reason=NOT_REGISTERED)
        return ValidationResult(True, product=product)

    __call__ = validate
