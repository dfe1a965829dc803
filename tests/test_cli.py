import json

import pytest

import Scan_Stock
import stock_audit
from Scan_Session import ScanSession, ScanState, SessionProfile
from conftest import FakeCamera, camera_factory_for
from stock_ledger import apply_stock_transaction


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("SCANNER_PROFILE", "SCANNER_PROFILES_PATH", "INVENTORY_STORE"):
        monkeypatch.delenv(var, raising=False)


def _inputs(*answers):
    it = iter(answers)
    return lambda prompt="": next(it)


def _last_json(out: str):
    return json.loads(out[out.index("{"):])


# ------------------------------ Scan_Stock ------------------------------

def test_manual_scan_then_remove(store, capsys):
    code = Scan_Stock.main(
        ["--manual", "--direction", "remove", "--quantity", "2", "--user-name", "Dock 2"],
        input_fn=_inputs("QR-123"),
        store=store,
    )
    assert code == 0
    body = _last_json(capsys.readouterr().out)
    assert body["success"] is True
    assert body["product"]["current_stock"] == 1
    assert body["alert"] is not None
    with store.atomic() as unit:
        assert unit.products.get("p1").current_stock == 1


def test_manual_scan_retries_until_registered_code(store, capsys):
    code = Scan_Stock.main(["--manual"], input_fn=_inputs("QR-999", "QR-123", "add", "4"), store=store)
    assert code == 0
    out = capsys.readouterr().out
    assert "Invalid QR Code: QR code not registered" in out
    assert _last_json(out[out.index("Product:"):])["product"]["current_stock"] == 7


def test_manual_scan_cancelled(store, capsys):
    assert Scan_Stock.main(["--manual"], input_fn=_inputs(""), store=store) == 1
    assert "Cancelled" in capsys.readouterr().out


def test_insufficient_stock_is_reported(store, capsys):
    code = Scan_Stock.main(["--manual", "--direction", "remove"], input_fn=_inputs("QR-123", "5"), store=store)
    assert code == 1
    assert "Not enough stock" in _last_json(capsys.readouterr().out)["error"]
    with store.atomic() as unit:
        assert unit.products.get("p1").current_stock == 3


def test_bad_quantity_is_reported(store, capsys):
    code = Scan_Stock.main(["--manual", "--direction", "add"], input_fn=_inputs("QR-123", "lots"), store=store)
    assert code == 1
    assert _last_json(capsys.readouterr().out)["error"] == "Please enter a valid quantity"


def test_cancel_from_the_camera_window_ends_the_flow(store, monkeypatch, capsys):
    monkeypatch.setattr(Scan_Stock, "FrameDecoder", lambda *a, **kw: (lambda frame: None))
    monkeypatch.setattr(
        Scan_Stock, "run_scan",
        lambda session, decoder, **kw: Scan_Stock.ScanResult(False, message="Cancelled by user.", cancelled=True),
    )

    def _no_prompt(prompt=""):
        raise AssertionError(f"unexpected prompt: {prompt}")

    assert Scan_Stock.main(["--no-gui"], input_fn=_no_prompt, store=store) == 1
    assert _last_json(capsys.readouterr().out)["error"] == "Cancelled."
    with store.atomic() as unit:
        assert unit.transactions.list() == []


def test_run_scan_detects_from_camera(validator):
    camera = FakeCamera(["blank", "label"], repeat_last=True)
    session = ScanSession(validator, SessionProfile(sample_interval_s=0.01))
    decoder = {"label": "QR-123"}.get

    result = Scan_Stock.run_scan(session, decoder, timeout=5, camera_factory=camera_factory_for(camera), poll_s=0.01)

    assert result.success is True
    assert result.product.id == "p1"
    assert result.payload == "QR-123"
    assert camera.releases == 1


def test_run_scan_escape_key_reports_cancel(validator, monkeypatch):
    camera = FakeCamera(["blank"], repeat_last=True)
    monkeypatch.setattr(Scan_Stock, "_draw_overlay", lambda frame, session: frame)
    monkeypatch.setattr(Scan_Stock.cv2, "imshow", lambda *a: None)
    monkeypatch.setattr(Scan_Stock.cv2, "waitKey", lambda delay: 27)
    monkeypatch.setattr(Scan_Stock.cv2, "destroyAllWindows", lambda: None)
    session = ScanSession(validator, SessionProfile(sample_interval_s=0.01))

    result = Scan_Stock.run_scan(session, lambda f: None, timeout=5, show_window=True,
                                 camera_factory=camera_factory_for(camera), poll_s=0.01)

    assert result.cancelled is True
    assert result.success is False
    assert camera.releases == 1


def test_run_scan_camera_unavailable(validator):
    camera = FakeCamera([], opened=False)
    session = ScanSession(validator)
    result = Scan_Stock.run_scan(session, lambda f: None, camera_factory=camera_factory_for(camera))
    assert result.success is False
    assert result.state is ScanState.ERROR
    assert camera.releases == 1


def test_run_scan_times_out(validator):
    camera = FakeCamera(["blank"], repeat_last=True)
    session = ScanSession(validator, SessionProfile(sample_interval_s=0.01))
    result = Scan_Stock.run_scan(session, lambda f: None, timeout=0.2,
                                 camera_factory=camera_factory_for(camera), poll_s=0.01)
    assert result.success is False
    assert "Timed out" in result.message
    assert camera.releases == 1


# ------------------------------ stock_audit ------------------------------

def test_audit_finds_missing_alert(store):
    report = stock_audit.audit(store)
    assert report.products_checked == 1
    assert [p.id for p in report.missing_alerts] == ["p1"]
    assert report.drift == []


def test_audit_finds_drift(store, product):
    outcome = apply_stock_transaction(store, product, "add", 1)
    with store.atomic() as unit:
        unit.products.update_stock("p1", 40, expected_version=outcome.product.version,
                                   updated_at=outcome.product.updated_at)
    report = stock_audit.audit(store)
    assert len(report.drift) == 1
    assert report.drift[0].stored_stock == 40
    assert report.drift[0].logged_stock == 4


def test_audit_dry_run_writes_nothing(store, tmp_path, capsys):
    backup = tmp_path / "products.csv"
    assert stock_audit.main(["--dry-run", "--raise-missing-alerts", "--backup-csv", str(backup)], store=store) == 0
    assert not backup.exists()
    with store.atomic() as unit:
        assert unit.alerts.list() == []
    assert "(Dry run)" in capsys.readouterr().out


def test_audit_raises_missing_alerts_after_backup(store, tmp_path):
    backup = tmp_path / "products.csv"
    assert stock_audit.main(["--raise-missing-alerts", "--backup-csv", str(backup)], store=store) == 0
    assert backup.read_text(encoding="utf-8").splitlines()[1].startswith("p1,Widget,")
    with store.atomic() as unit:
        alerts = unit.alerts.list(resolved=False)
    assert [a.product_id for a in alerts] == ["p1"]

    # Second run finds nothing left to raise
    assert stock_audit.audit(store).missing_alerts == []
