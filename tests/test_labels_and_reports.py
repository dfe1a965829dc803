import re
from datetime import datetime, timezone

import numpy as np
import pytest

from activity_report import CSV_HEADER, filter_transactions, transactions_to_csv
from models import Direction, StockTransaction
from qr_labels import generate_barcode_payload, render_qr, render_qr_png


def _tx(tx_id, product_name, direction, qty, prev, user_name=None, user_id=None):
    resulting = prev + qty if direction is Direction.ADD else prev - qty
    return StockTransaction(
        id=tx_id, product_id="p-" + tx_id, product_name=product_name, direction=direction,
        quantity=qty, previous_stock=prev, resulting_stock=resulting,
        user_id=user_id, user_name=user_name,
        created_at=datetime(2024, 6, 10, 9, 30, 5, tzinfo=timezone.utc),
    )


def test_generated_payload_format():
    payload = generate_barcode_payload(now_ms=1718000000000)
    assert re.fullmatch(r"QR-1718000000000-[a-z0-9]{6}", payload)


def test_generated_payloads_differ():
    assert len({generate_barcode_payload() for _ in range(20)}) == 20


def test_qr_png_bytes():
    png = render_qr_png("QR-123")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


def test_qr_image_is_square_black_and_white():
    img = render_qr("QR-123", size=200)
    assert img.shape[0] == img.shape[1]
    assert img.shape[0] >= 21
    assert set(np.unique(img).tolist()) <= {0, 255}


def test_qr_rejects_empty_payload():
    with pytest.raises(ValueError):
        render_qr("")


def test_csv_export():
    rows = [
        _tx("1", "Widget", Direction.REMOVE, 2, 3, user_name="Dana"),
        _tx("2", "Bolt", Direction.ADD, 5, 0, user_id="u9"),
    ]
    lines = transactions_to_csv(rows).strip().split("\n")
    assert lines[0] == ",".join(CSV_HEADER)
    assert lines[1] == "2024-06-10 09:30:05,Dana,Widget,remove,-2,3,1"
    assert lines[2] == "2024-06-10 09:30:05,u9,Bolt,add,5,0,5"


def test_filter_transactions():
    rows = [
        _tx("1", "Widget", Direction.REMOVE, 1, 3, user_name="Dana", user_id="u1"),
        _tx("2", "Bolt", Direction.ADD, 1, 0, user_name="Sam", user_id="u2"),
    ]
    assert [t.id for t in filter_transactions(rows, query="BOL")] == ["2"]
    assert [t.id for t in filter_transactions(rows, query="dana")] == ["1"]
    assert [t.id for t in filter_transactions(rows, user_id="u2")] == ["2"]
    assert len(filter_transactions(rows, query="  ")) == 2
