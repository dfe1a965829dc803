# errors.py
# ----------------------------------------------------------------------
# Error taxonomy shared by the scanner, the validator and the stock ledger.
# Each error carries the HTTP status the web layer should answer with.
# ----------------------------------------------------------------------

from __future__ import annotations


class InventoryError(Exception):
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class CameraUnavailable(InventoryError):
    """Permission denied, no device, or the stream stopped delivering frames."""
    http_status = 503


class DecoderUnavailable(InventoryError):
    """No barcode backend could be loaded."""
    http_status = 503


class PayloadNotFound(InventoryError):
    http_status = 404


class ProductNotFound(InventoryError):
    http_status = 404


class InvalidQuantity(InventoryError):
    http_status = 400


class InvalidDirection(InventoryError):
    http_status = 400


class InvalidProduct(InventoryError):
    http_status = 400


class InsufficientStock(InventoryError):
    http_status = 409

    def __init__(self, current_stock: int, requested: int):
        super().__init__(
            f"Not enough stock to remove: {requested} requested, {current_stock} on hand"
        )
        self.current_stock = current_stock
        self.requested = requested


class ConcurrentUpdate(InventoryError):
    """The product row changed between read and write (version mismatch)."""
    http_status = 409
