# app.py
from __future__ import annotations

# Standard library
from typing import Any, Dict, Optional

# Third-party
from flask import Blueprint, Flask, Response, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

# Local Files/Helpers
from Code_Scanner import ImageDecoder
from activity_report import filter_transactions, transactions_to_csv
from db_helper import InventoryStore, open_store
from errors import DecoderUnavailable, InvalidProduct, InventoryError, PayloadNotFound, ProductNotFound
from models import Product, new_id
from qr_labels import generate_barcode_payload, render_qr_png
from settings import Settings, configure_logging
from stock_ledger import apply_stock_transaction, parse_direction, parse_quantity
from validator import ProductValidator

bp = Blueprint("inventory", __name__)

# -------------------------------------------------------------------
# Helper Functions
# -------------------------------------------------------------------

def _store() -> InventoryStore:
    return current_app.extensions["inventory_store"]


def _validator() -> ProductValidator:
    return current_app.extensions["product_validator"]


def _fail(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


def _body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _non_negative_int(value: Any, default: int, field: str) -> int:
    if value is None or value == "":
        return default
    try:
        n = int(str(value).strip())
    except ValueError:
        raise InvalidProduct(f"{field} must be a whole number") from None
    if n < 0:
        raise InvalidProduct(f"{field} cannot be negative")
    return n


def _actor(data: Dict[str, Any]):
    """Acting user comes from the caller (auth is handled upstream)."""
    user_id = data.get("user_id") or request.headers.get("X-User-Id")
    user_name = data.get("user_name") or request.headers.get("X-User-Name")
    return user_id, user_name


def _limit_arg(default: Optional[int] = 100) -> Optional[int]:
    raw = request.args.get("limit")
    if raw is None:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


# -------------------------------------------------------------------
# Routes: products
# -------------------------------------------------------------------
@bp.get("/api/products")
def api_products():
    with _store().atomic() as unit:
        items = unit.products.list()
    return jsonify({"ok": True, "items": [p.to_dict() for p in items]})


@bp.get("/api/products/low_stock")
def api_low_stock():
    with _store().atomic() as unit:
        items = unit.products.list_low_stock()
    return jsonify({"ok": True, "items": [p.to_dict() for p in items]})


@bp.post("/api/products")
def api_create_product():
    """
    Accepts:
      { name, category?, description?, barcode_data?, current_stock?, minimum_threshold? }
    A QR payload is generated when barcode_data is omitted.
    """
    data = _body()
    name = str(data.get("name") or "").strip()
    if not name:
        return _fail("Product name is required", 400)

    product = Product(
        id=new_id(),
        name=name,
        category=str(data.get("category") or "").strip(),
        description=str(data.get("description") or "").strip(),
        barcode_data=str(data.get("barcode_data") or "").strip() or generate_barcode_payload(),
        barcode_type=str(data.get("barcode_type") or "QR"),
        current_stock=_non_negative_int(data.get("current_stock"), 0, "current_stock"),
        minimum_threshold=_non_negative_int(
            data.get("minimum_threshold"), current_app.config["LOW_STOCK_DEFAULT"], "minimum_threshold"
        ),
    )
    with _store().atomic() as unit:
        unit.products.add(product)
    current_app.logger.info("Registered product %s (%s)", product.name, product.barcode_data)
    return jsonify({"ok": True, "product": product.to_dict()}), 201


@bp.get("/api/products/by_barcode")
def api_product_by_barcode():
    payload = (request.args.get("payload") or "").strip()
    if not payload:
        return _fail("payload is required", 400)
    with _store().atomic() as unit:
        product = unit.products.find_by_barcode(payload)
    if product is None:
        raise PayloadNotFound(f"No product registered for {payload!r}")
    return jsonify({"ok": True, "product": product.to_dict()})


@bp.get("/api/products/<product_id>")
def api_product(product_id):
    with _store().atomic() as unit:
        product = unit.products.get(product_id)
    if product is None:
        raise ProductNotFound("Product not found")
    return jsonify({"ok": True, "product": product.to_dict()})


@bp.delete("/api/products/<product_id>")
def api_delete_product(product_id):
    with _store().atomic() as unit:
        deleted = unit.products.delete(product_id)
    if not deleted:
        raise ProductNotFound("Product not found")
    return jsonify({"ok": True, "deleted": product_id})


@bp.get("/api/products/<product_id>/qr.png")
def api_product_qr(product_id):
    with _store().atomic() as unit:
        product = unit.products.get(product_id)
    if product is None:
        raise ProductNotFound("Product not found")
    size = request.args.get("size", default=200, type=int)
    png = render_qr_png(product.barcode_data, size=max(64, min(size, 1024)))
    return Response(png, mimetype="image/png")


# -------------------------------------------------------------------
# Routes: scanning
# -------------------------------------------------------------------
@bp.post("/api/scan/validate")
def api_scan_validate():
    """
    Accepts { payload: "<decoded or typed text>" }.
    Always answers 200 with a ValidationResult; an unknown code is not an HTTP error.
    """
    payload = _body().get("payload")
    result = _validator().validate(str(payload) if payload is not None else None)
    return jsonify({"ok": True, **result.to_dict(), "payload": payload})


@bp.post("/api/scan/image")
def api_scan_image():
    upload = request.files.get("image")
    if upload is None:
        return _fail("No image provided", 400)
    decoder = current_app.extensions.get("image_decoder")
    if decoder is None:
        decoder = current_app.extensions["image_decoder"] = ImageDecoder()
    try:
        payload = decoder.decode_bytes(upload.read())
    except ValueError as e:
        return _fail(str(e), 400)
    if not payload:
        return jsonify({"ok": True, "valid": False, "product": None, "payload": None,
                        "reason": "No code found in image"})
    result = _validator().validate(payload)
    return jsonify({"ok": True, **result.to_dict(), "payload": payload})


# -------------------------------------------------------------------
# Routes: stock transactions
# -------------------------------------------------------------------
@bp.post("/api/products/<product_id>/transactions")
def api_apply_transaction(product_id):
    """
    Accepts { direction: "add"|"remove", quantity: <positive int>, user_id?, user_name? }
    """
    data = _body()
    direction = parse_direction(data.get("direction") or data.get("transaction_type"))
    quantity = parse_quantity(data.get("quantity"))
    user_id, user_name = _actor(data)

    outcome = apply_stock_transaction(
        _store(), product_id, direction, quantity, user_id=user_id, user_name=user_name
    )
    return jsonify({"ok": True, **outcome.to_dict()})


@bp.get("/api/transactions")
def api_transactions():
    with _store().atomic() as unit:
        rows = unit.transactions.list(user_id=request.args.get("user_id"), limit=_limit_arg())
    rows = filter_transactions(rows, query=request.args.get("q"))
    return jsonify({"ok": True, "items": [tx.to_dict() for tx in rows]})


@bp.get("/api/transactions.csv")
def api_transactions_csv():
    with _store().atomic() as unit:
        rows = unit.transactions.list(user_id=request.args.get("user_id"), limit=_limit_arg(None))
    rows = filter_transactions(rows, query=request.args.get("q"))
    return Response(
        transactions_to_csv(rows),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=inventory-activity.csv"},
    )


# -------------------------------------------------------------------
# Routes: alerts
# -------------------------------------------------------------------
@bp.get("/api/alerts")
def api_alerts():
    resolved_arg = request.args.get("resolved")
    resolved = None if resolved_arg is None else resolved_arg.lower() in ("1", "true", "yes")
    with _store().atomic() as unit:
        items = unit.alerts.list(resolved=resolved)
    return jsonify({"ok": True, "items": [a.to_dict() for a in items]})


@bp.post("/api/alerts/<alert_id>/resolve")
def api_resolve_alert(alert_id):
    with _store().atomic() as unit:
        alert = unit.alerts.resolve(alert_id)
    if alert is None:
        return _fail("Alert not found", 404)
    return jsonify({"ok": True, "alert": alert.to_dict()})


# -------------------------------------------------------------------
# Error mapping
# -------------------------------------------------------------------
@bp.app_errorhandler(InventoryError)
def _inventory_error(e: InventoryError):
    if isinstance(e, DecoderUnavailable):
        current_app.logger.error("Decoder unavailable: %s", e)
    return _fail(e.message, e.http_status)


@bp.app_errorhandler(Exception)
def _unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        return _fail(e.description or e.name, e.code or 500)
    current_app.logger.exception("Request failed: %s", e)
    return _fail("Something went wrong. Please try again.", 500)


# -------------------------------------------------------------------
# Flask setup
# -------------------------------------------------------------------
def create_app(
    store: Optional[InventoryStore] = None,
    settings: Optional[Settings] = None,
    image_decoder: Optional[ImageDecoder] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.config["LOW_STOCK_DEFAULT"] = settings.low_stock_default

    store = store or open_store(settings)
    app.extensions["inventory_store"] = store
    app.extensions["product_validator"] = ProductValidator(store)
    if image_decoder is not None:
        app.extensions["image_decoder"] = image_decoder

    app.register_blueprint(bp)
    return app


# -------------------------------------------------------------------
# Main
# -------------------------------------------------------------------
if __name__ == "__main__":
    _settings = Settings.from_env()
    configure_logging(_settings.log_level)
    # Camera capture happens in the browser; this serves the JSON API.
    create_app(settings=_settings).run(host=_settings.host, port=_settings.port, debug=_settings.flask_debug)
