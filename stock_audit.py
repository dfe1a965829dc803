"""stock_audit.py
=====================================================================
Purpose
-------
Occasional maintenance check over the inventory store. It compares each
product's stored `current_stock` with the `resulting_stock` of the most
recent transaction logged for it, and lists products that sit at or under
their threshold without an open (unresolved) low-stock alert.

Drift normally means stock was edited outside the scan flow (a direct
UPDATE, a restored backup). The tool only reports it; the activity log is
append-only and is never rewritten here.

Optionally (flags) you can:
 - Raise the missing low-stock alerts (`--raise-missing-alerts`).
 - Preview without writing anything (`--dry-run`).
 - Export a snapshot of every product to CSV first (`--backup-csv path`).

Usage Examples
--------------
    python stock_audit.py --dry-run
    python stock_audit.py --raise-missing-alerts --backup-csv products_backup.csv
---------------------------------------------------------------------
"""
from __future__ import annotations

import argparse
import csv
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from db_helper import InventoryStore, open_store
from models import Alert, Product, new_id, utcnow
from settings import Settings, configure_logging

logger = logging.getLogger(__name__)


@dataclass
class Drift:
    product_id: str
    product_name: str
    stored_stock: int
    logged_stock: int


@dataclass
class AuditReport:
    products_checked: int = 0
    drift: List[Drift] = field(default_factory=list)
    missing_alerts: List[Product] = field(default_factory=list)
    alerts_raised: int = 0


def audit(store: InventoryStore) -> AuditReport:
    report = AuditReport()
    with store.atomic() as unit:
        products = unit.products.list()
        open_alert_ids = {a.product_id for a in unit.alerts.list(resolved=False)}
        for p in products:
            report.products_checked += 1
            last = unit.transactions.latest_for_product(p.id)
            if last is not None and last.resulting_stock != p.current_stock:
                report.drift.append(Drift(p.id, p.name, p.current_stock, last.resulting_stock))
            if p.is_low_stock and p.id not in open_alert_ids:
                report.missing_alerts.append(p)
    return report


def raise_missing_alerts(store: InventoryStore, products: List[Product]) -> int:
    if not products:
        return 0
    now = utcnow()
    with store.atomic() as unit:
        for p in products:
            unit.alerts.add(Alert(
                id=new_id(),
                product_id=p.id,
                product_name=p.name,
                current_stock=p.current_stock,
                threshold=p.minimum_threshold,
                created_at=now,
            ))
    logger.info("Raised %d low-stock alerts", len(products))
    return len(products)


def write_backup_csv(store: InventoryStore, path: str) -> None:
    with store.atomic() as unit:
        products = unit.products.list()
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow([
            "id", "name", "category", "barcode_data", "barcode_type",
            "current_stock", "minimum_threshold", "version", "updated_at",
        ])
        for p in products:
            w.writerow([
                p.id, p.name, p.category, p.barcode_data, p.barcode_type,
                p.current_stock, p.minimum_threshold, p.version, p.updated_at.isoformat(),
            ])
    print(f"Backup CSV written: {path}")


# ------------------------------------------------------------------
# Main CLI
# ------------------------------------------------------------------
def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Check stored stock against the activity log and open alerts.")
    p.add_argument("--dry-run", action="store_true", help="Report only; no writes")
    p.add_argument("--raise-missing-alerts", action="store_true",
                   help="Create an alert for each low-stock product that has no open one")
    p.add_argument("--backup-csv", help="Path to write a product CSV snapshot BEFORE any changes")
    return p.parse_args(argv)


def main(argv: List[str], store: Optional[InventoryStore] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    store = store or open_store(settings)

    if args.backup_csv and not args.dry_run:
        write_backup_csv(store, args.backup_csv)

    report = audit(store)

    print("\nSummary")
    print("-------")
    print("Products checked:", report.products_checked)
    print("Stock differs from last logged transaction:", len(report.drift))
    for d in report.drift[:10]:
        print(f" - {d.product_name}: stored {d.stored_stock}, log says {d.logged_stock}")
    if len(report.drift) > 10:
        print(f" ... ({len(report.drift) - 10} more)")
    print("Low stock without an open alert:", len(report.missing_alerts))
    for p in report.missing_alerts[:10]:
        print(f" - {p.name}: {p.current_stock} (threshold {p.minimum_threshold})")

    if args.dry_run:
        print("\n(Dry run) No changes applied.")
        return 0

    if args.raise_missing_alerts:
        report.alerts_raised = raise_missing_alerts(store, report.missing_alerts)
        print("Alerts raised:", report.alerts_raised)
    print("Done.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
