"""
Overview
Kiosk flow that ties the pieces together: open the camera, run one scan
session until a registered product is detected, fall back to typed entry when
the camera is unavailable (or on request), then ask for add/remove and a
quantity and apply the stock transaction. The result is printed as JSON.

Usage examples
  python Scan_Stock.py --user-id u42 --user-name "Dock 2"
  python Scan_Stock.py --profile kiosk-fast --timeout 30
  python Scan_Stock.py --manual --direction remove --quantity 2
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import cv2

from Code_Scanner import CaptureLoop, FrameDecoder, open_camera
from Scan_Session import ScanSession, ScanState, get_profile
from db_helper import open_store
from errors import CameraUnavailable, DecoderUnavailable, InventoryError
from models import Product
from settings import Settings, configure_logging
from stock_ledger import apply_stock_transaction, parse_direction, parse_quantity
from validator import ProductValidator

logger = logging.getLogger(__name__)

WINDOW_NAME = "Inventory Scanner"
STATE_COLORS = {
    ScanState.INITIALIZING: (200, 200, 200),
    ScanState.READY: (255, 255, 255),
    ScanState.INVALID: (0, 0, 255),
    ScanState.DETECTED: (0, 255, 0),
    ScanState.ERROR: (0, 0, 255),
    ScanState.MANUAL: (255, 200, 0),
}


@dataclass
class ScanResult:
    success: bool
    product: Optional[Product] = None
    payload: Optional[str] = None
    message: str = ""
    state: ScanState = ScanState.INITIALIZING
    cancelled: bool = False


def _draw_overlay(frame, session: ScanSession):
    snap = session.snapshot()
    overlay = frame.copy()
    h, w = overlay.shape[:2]
    color = STATE_COLORS.get(snap.state, (255, 255, 255))
    gh, gw = int(h * 0.5), int(w * 0.5)
    cv2.rectangle(overlay, ((w - gw) // 2, (h - gh) // 2), ((w + gw) // 2, (h + gh) // 2), color, 2)
    label = snap.message or snap.state.value.capitalize()
    cv2.putText(overlay, label, (10, h - 18), cv2.FONT_HERSHEY_SIMPLEX, 0.7, color, 2, cv2.LINE_AA)
    cv2.putText(overlay, "Esc: cancel  m: type code", (10, 28), cv2.FONT_HERSHEY_SIMPLEX, 0.6,
                (220, 220, 220), 1, cv2.LINE_AA)
    return overlay


def run_scan(
    session: ScanSession,
    decoder: Callable,
    *,
    camera_index: int = 0,
    timeout: float = 0,
    show_window: bool = False,
    camera_factory: Callable = open_camera,
    poll_s: float = 0.05,
) -> ScanResult:
    """Drive `session` from a live camera until detected, error, cancel or timeout.

    The camera is released on every exit path.
    """
    finished = threading.Event()

    def _on_change(_old: ScanState, new: ScanState) -> None:
        if new in (ScanState.DETECTED, ScanState.ERROR, ScanState.MANUAL):
            finished.set()

    session.add_listener(_on_change)
    profile = session.profile
    loop = CaptureLoop(
        decoder,
        session.on_decode,
        on_error=session.camera_failed,
        camera_index=camera_index,
        width=profile.width,
        height=profile.height,
        sample_interval_s=profile.sample_interval_s,
        camera_factory=camera_factory,
    )

    try:
        try:
            loop.start()
        except CameraUnavailable as e:
            session.camera_failed(e)
            return ScanResult(False, message=str(e), state=session.state)
        session.camera_ready()

        start = time.monotonic()
        while not finished.is_set():
            if timeout and (time.monotonic() - start) > timeout:
                return ScanResult(False, message="Timed out without detecting a registered code.",
                                  state=session.state)
            session.tick()
            if show_window and loop.last_frame is not None:
                cv2.imshow(WINDOW_NAME, _draw_overlay(loop.last_frame, session))
                key = cv2.waitKey(1) & 0xFF
                if key in (27, ord("q")):
                    return ScanResult(False, message="Cancelled by user.", state=session.state, cancelled=True)
                if key == ord("m"):
                    session.request_manual()
                    continue
            finished.wait(poll_s)
    finally:
        loop.stop()
        if show_window:
            try:
                cv2.destroyAllWindows()
            except cv2.error:
                pass

    snap = session.snapshot()
    if snap.state is ScanState.DETECTED:
        return ScanResult(True, product=snap.product, payload=snap.last_payload, message="OK", state=snap.state)
    return ScanResult(False, payload=snap.last_payload, message=snap.message or snap.state.value, state=snap.state)


def prompt_manual_entry(session: ScanSession, input_fn: Callable[[str], str] = input) -> Optional[Product]:
    """Ask for typed codes until one validates; a blank line gives up."""
    if session.state is not ScanState.MANUAL and not session.request_manual():
        return None
    while session.state is ScanState.MANUAL:
        text = input_fn("Type the code printed under the QR label (blank to cancel): ").strip()
        if not text:
            return None
        result = session.submit_manual(text)
        if not result.valid:
            print(f"Invalid QR Code: {result.reason}")
    return session.product


# ------------------------------------------------------------------
# Main CLI
# ------------------------------------------------------------------
def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Scan a product label and add or remove stock.")
    p.add_argument("--profile", help="Scanner profile name (default: SCANNER_PROFILE or 'camera')")
    p.add_argument("--profiles-path", help="Path to scanner_profiles.yaml")
    p.add_argument("--camera", type=int, default=0)
    p.add_argument("--timeout", type=float, default=0, help="Seconds before giving up on the camera (0 = never)")
    p.add_argument("--no-gui", action="store_true", help="Do not open a preview window")
    p.add_argument("--manual", action="store_true", help="Skip the camera and type the code")
    p.add_argument("--direction", choices=["add", "remove"], help="Skip the add/remove prompt")
    p.add_argument("--quantity", help="Skip the quantity prompt")
    p.add_argument("--user-id")
    p.add_argument("--user-name")
    return p.parse_args(argv)


def _fail(message: str) -> int:
    print(json.dumps({"success": False, "error": message}, indent=2))
    return 1


def main(argv: List[str], input_fn: Callable[[str], str] = input, store=None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    store = store or open_store(settings)
    profile = get_profile(args.profiles_path or settings.scanner_profiles_path, args.profile or settings.scanner_profile)
    session = ScanSession(ProductValidator(store), profile)

    try:
        if not args.manual:
            try:
                decoder = FrameDecoder(profile.decoder, profile.mode)
            except DecoderUnavailable as e:
                session.camera_failed(e)
            else:
                res = run_scan(session, decoder, camera_index=args.camera, timeout=args.timeout,
                               show_window=not args.no_gui)
                if res.cancelled:
                    return _fail("Cancelled.")
                if not res.success:
                    print(f"Scanning failed: {res.message}")

        product = session.product if session.state is ScanState.DETECTED else None
        if product is None:
            if not profile.manual_entry:
                return _fail("No registered code detected and manual entry is disabled for this profile.")
            product = prompt_manual_entry(session, input_fn)
        if product is None:
            return _fail("Cancelled.")

        print(f"Product: {product.name}  (stock {product.current_stock}, threshold {product.minimum_threshold})")
        try:
            direction = parse_direction(args.direction or input_fn("Add or remove stock? [add/remove]: "))
            quantity = parse_quantity(args.quantity if args.quantity is not None else input_fn("Quantity: "))
            outcome = apply_stock_transaction(
                store, product, direction, quantity, user_id=args.user_id, user_name=args.user_name
            )
        except InventoryError as e:
            return _fail(e.message)
        except Exception as e:
            logger.exception("Stock update failed")
            return _fail(f"Failed to update stock: {e}")

        print(json.dumps({"success": True, **outcome.to_dict()}, indent=2))
        return 0
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
