import threading

import pytest

import memory_store
from errors import (
    ConcurrentUpdate,
    InsufficientStock,
    InvalidDirection,
    InvalidQuantity,
    ProductNotFound,
)
from models import Direction
from stock_ledger import apply_stock_transaction, parse_direction, parse_quantity, run_with_retry


def _snapshot(store):
    with store.atomic() as unit:
        return unit.products.get("p1"), unit.alerts.list(), unit.transactions.list()


def test_remove_below_threshold_updates_stock_and_raises_alert(store, product):
    outcome = apply_stock_transaction(store, product, "remove", 2, user_id="u1", user_name="Dana")

    assert outcome.product.current_stock == 1
    assert outcome.transaction.previous_stock == 3
    assert outcome.transaction.resulting_stock == 1
    assert outcome.transaction.quantity_change == -2
    assert outcome.alert is not None
    assert outcome.alert.current_stock == 1
    assert outcome.alert.threshold == 5

    stored, alerts, txs = _snapshot(store)
    assert stored.current_stock == 1
    assert [a.id for a in alerts] == [outcome.alert.id]
    assert len(txs) == 1
    assert txs[0].user_name == "Dana"
    assert txs[0].product_name == "Widget"


def test_remove_more_than_on_hand_changes_nothing(store, product):
    with pytest.raises(InsufficientStock) as excinfo:
        apply_stock_transaction(store, product, Direction.REMOVE, 5)

    assert excinfo.value.current_stock == 3
    assert excinfo.value.requested == 5
    stored, alerts, txs = _snapshot(store)
    assert stored.current_stock == 3
    assert alerts == []
    assert txs == []


def test_remove_exactly_everything_reaches_zero(store, product):
    outcome = apply_stock_transaction(store, product, "remove", 3)
    assert outcome.product.current_stock == 0
    assert outcome.alert is not None


def test_add_above_threshold_has_no_alert(store, product):
    outcome = apply_stock_transaction(store, product, "add", 10)
    assert outcome.product.current_stock == 13
    assert outcome.transaction.quantity_change == 10
    assert outcome.alert is None


def test_add_that_stays_at_or_under_threshold_still_alerts(store, product):
    outcome = apply_stock_transaction(store, product, "add", 2)
    assert outcome.product.current_stock == 5
    assert outcome.alert is not None


def test_version_increments_per_write(store, product):
    first = apply_stock_transaction(store, product, "add", 1)
    second = apply_stock_transaction(store, "p1", "add", 1)
    assert second.product.version == first.product.version + 1


def test_unknown_product(store):
    with pytest.raises(ProductNotFound):
        apply_stock_transaction(store, "nope", "add", 1)


@pytest.mark.parametrize("qty", [0, -1, True, 1.5, "3"])
def test_apply_rejects_non_positive_or_non_int_quantity(store, product, qty):
    with pytest.raises(InvalidQuantity):
        apply_stock_transaction(store, product, "add", qty)
    assert _snapshot(store)[0].current_stock == 3


@pytest.mark.parametrize("raw,expected", [(3, 3), ("7", 7), (" 12 ", 12)])
def test_parse_quantity_accepts(raw, expected):
    assert parse_quantity(raw) == expected


@pytest.mark.parametrize("raw", ["", "0", "-1", "abc", "2.5", None, True, 0])
def test_parse_quantity_rejects(raw):
    with pytest.raises(InvalidQuantity, match="Please enter a valid quantity"):
        parse_quantity(raw)


def test_parse_direction():
    assert parse_direction("REMOVE") is Direction.REMOVE
    assert parse_direction(Direction.ADD) is Direction.ADD
    with pytest.raises(InvalidDirection):
        parse_direction("sideways")


def test_failure_mid_unit_rolls_back_everything(store, product, monkeypatch):
    def _boom(self, tx):
        raise RuntimeError("disk full")

    monkeypatch.setattr(memory_store.MemoryTransactionRepository, "add", _boom)
    with pytest.raises(RuntimeError):
        apply_stock_transaction(store, product, "remove", 2)

    stored, alerts, txs = _snapshot(store)
    assert stored.current_stock == 3
    assert stored.version == 1
    assert alerts == []
    assert txs == []


def test_conflicting_write_is_retried_against_fresh_read(store, product, monkeypatch):
    original = memory_store.MemoryProductRepository.update_stock
    calls = []

    def _flaky(self, product_id, new_stock, **kw):
        calls.append(new_stock)
        if len(calls) == 1:
            raise ConcurrentUpdate("changed underneath")
        return original(self, product_id, new_stock, **kw)

    monkeypatch.setattr(memory_store.MemoryProductRepository, "update_stock", _flaky)
    outcome = apply_stock_transaction(store, product, "remove", 1)

    assert len(calls) == 2
    assert outcome.product.current_stock == 2
    assert len(_snapshot(store)[2]) == 1


def test_conflicts_exhaust_attempts(store, product, monkeypatch):
    def _always(self, *a, **kw):
        raise ConcurrentUpdate("changed underneath")

    monkeypatch.setattr(memory_store.MemoryProductRepository, "update_stock", _always)
    with pytest.raises(ConcurrentUpdate):
        apply_stock_transaction(store, product, "remove", 1, attempts=2)
    assert _snapshot(store)[0].current_stock == 3


def test_run_with_retry_passes_other_errors_through():
    calls = []

    def _fn():
        calls.append(1)
        raise ValueError("no")

    with pytest.raises(ValueError):
        run_with_retry(_fn, attempts=3, backoff_base=0)
    assert len(calls) == 1


def test_concurrent_removals_never_oversell(store, product):
    results = []
    barrier = threading.Barrier(2)

    def _worker():
        barrier.wait()
        try:
            results.append(apply_stock_transaction(store, "p1", "remove", 2))
        except InsufficientStock as e:
            results.append(e)

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert sum(isinstance(r, InsufficientStock) for r in results) == 1
    stored, _alerts, txs = _snapshot(store)
    assert stored.current_stock == 1
    assert len(txs) == 1
