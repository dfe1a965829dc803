#!/usr/bin/env python3
"""
Overview
Camera side of the scan-to-stock flow: turns frames into QR/barcode payload
strings. Two pieces live here:

- **Decoder adapters** (`FrameDecoder`, `ImageDecoder`): a frame (or an uploaded
  image) in, zero-or-one decoded text payload out. No state beyond their
  configuration, so the scan session never cares which one it is fed by.
- **Capture loop** (`CaptureLoop`): owns the camera handle, samples a frame on
  a fixed cadence from a background thread and forwards each decode result, in
  sample order, to a callback.

Special Features
- **Swappable backends**: ZXing-C++ (zxing-cpp) is preferred; pyzbar and
  OpenCV's built-in QRCodeDetector are fallbacks. `--backend auto` picks the
  first one that imports.
- **Effort modes**: `fast` only tries the grayscale frame plus a contrast
  stretch; `balanced` adds CLAHE / sharpen / invert; `aggressive` adds an
  upscale and rotations. Every frame is capped by a candidate count and a time
  budget so sampling never stalls.
- **Idempotent teardown**: `stop()` releases the camera on every exit path and
  can be called any number of times, before `start()` finished, or from the
  sampler thread itself.

Usage examples
  python Code_Scanner.py --image label.png
  python Code_Scanner.py --camera 0 --timeout 20 --mode fast

Notes
- On Windows we use DirectShow; on Linux (incl. Pi OS) we use V4L2 by default.
- Resolution hint defaults to 1280x720.
"""

from __future__ import annotations

import argparse
import json
import logging
import platform
import sys
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import cv2
import numpy as np

from errors import CameraUnavailable, DecoderUnavailable

logger = logging.getLogger(__name__)

cv2.setUseOptimized(True)

# ------------------------------ Decoder Backend Selection ------------------------------
try:
    import zxingcpp as _zxingcpp  # type: ignore
except ImportError:  # pragma: no cover
    _zxingcpp = None

try:
    from pyzbar.pyzbar import decode as _zbar_decode  # type: ignore
except (ImportError, OSError):  # pragma: no cover - needs the zbar shared library
    _zbar_decode = None


def _zxing_decode(gray: np.ndarray) -> List[str]:
    return [r.text for r in _zxingcpp.read_barcodes(gray) if getattr(r, "text", "")]


def _pyzbar_decode(gray: np.ndarray) -> List[str]:
    return [r.data.decode("utf-8", errors="replace") for r in _zbar_decode(gray) if r.data]


def _opencv_decode(gray: np.ndarray) -> List[str]:
    # QRCodeDetector keeps internal state; one per call keeps threads apart
    text, _points, _straight = cv2.QRCodeDetector().detectAndDecode(gray)
    return [text] if text else []


BACKENDS: Dict[str, Callable[[np.ndarray], List[str]]] = {
    "zxingcpp": _zxing_decode,
    "pyzbar": _pyzbar_decode,
    "opencv": _opencv_decode,
}


def available_backends() -> List[str]:
    out = []
    if _zxingcpp is not None:
        out.append("zxingcpp")
    if _zbar_decode is not None:
        out.append("pyzbar")
    if hasattr(cv2, "QRCodeDetector"):
        out.append("opencv")
    return out


def resolve_backend(choice: str = "auto") -> str:
    available = available_backends()
    if choice == "auto":
        if available:
            return available[0]
    elif choice in available:
        return choice
    raise DecoderUnavailable(
        f"Decoder backend {choice!r} is not available (have: {', '.join(available) or 'none'}). "
        "Install one of: pip install zxing-cpp | pip install pyzbar"
    )


def try_decode_image(gray: np.ndarray, backend: str) -> List[str]:
    return BACKENDS[backend](gray)


# ---- Image utilities (lightweight first) ----

def to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return frame
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def fast_contrast(gray: np.ndarray, alpha: float = 1.6, beta: float = 5.0) -> np.ndarray:
    # y = alpha*x + beta, clipped to [0, 255]
    return cv2.convertScaleAbs(gray, alpha=alpha, beta=beta)


def unsharp_mask(gray: np.ndarray, sigma: float = 1.2, amount: float = 1.0) -> np.ndarray:
    blur = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1 + amount, blur, -amount, 0)


def clahe(gray: np.ndarray, clip: float = 2.0, grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    return cv2.createCLAHE(clipLimit=clip, tileGridSize=grid).apply(gray)


def rotations(img: np.ndarray) -> Iterable[Tuple[np.ndarray, str]]:
    yield cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE), "r90"
    yield cv2.rotate(img, cv2.ROTATE_180), "r180"
    yield cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE), "r270"


# level 0: gray
# level 1: + fast_contrast
# level 2: + clahe, unsharp
# level 3: + inverted gray / contrast (light-on-dark labels)
# level 4: + 1.5x upscale (tiny modules)
# level 5: + rotations of gray
EFFORT_LEVELS: Dict[str, int] = {"fast": 1, "balanced": 3, "aggressive": 5}


def generate_candidates(gray: np.ndarray, level: int, max_candidates: int) -> Iterable[Tuple[np.ndarray, str]]:
    def _all():
        yield gray, "gray"
        if level < 1:
            return
        fc = fast_contrast(gray)
        yield fc, "fastc"
        if level >= 2:
            yield clahe(gray), "clahe"
            yield unsharp_mask(gray), "sharp"
        if level >= 3:
            yield 255 - gray, "gray+inv"
            yield 255 - fc, "fastc+inv"
        if level >= 4:
            h, w = gray.shape[:2]
            yield cv2.resize(gray, (int(w * 1.5), int(h * 1.5)), interpolation=cv2.INTER_CUBIC), "up1.5"
        if level >= 5:
            yield from rotations(gray)

    for count, item in enumerate(_all()):
        if count >= max_candidates:
            return
        yield item


# ------------------------------ Decoder adapters ------------------------------
class FrameDecoder:
    """Camera-frame decoder: BGR or gray frame -> first payload text, or None."""

    def __init__(
        self,
        backend: str = "auto",
        mode: str = "balanced",
        max_candidates: int = 6,
        decode_budget_ms: int = 30,
    ):
        self.backend = resolve_backend(backend)
        self.mode = mode
        self.level = EFFORT_LEVELS.get(mode, EFFORT_LEVELS["balanced"])
        self.max_candidates = max(1, int(max_candidates))
        self.decode_budget_ms = max(8, int(decode_budget_ms))

    def decode(self, frame: np.ndarray) -> Optional[str]:
        gray = to_gray(frame)
        start = time.monotonic()
        for img, tag in generate_candidates(gray, self.level, self.max_candidates):
            texts = try_decode_image(img, self.backend)
            if texts:
                logger.debug("Decoded via %s on %s candidate", self.backend, tag)
                return texts[0]
            if (time.monotonic() - start) * 1000.0 > self.decode_budget_ms:
                break
        return None

    __call__ = decode


class ImageDecoder(FrameDecoder):
    """Static-image decoder for uploads and files. Same contract as FrameDecoder."""

    def __init__(self, backend: str = "auto", mode: str = "aggressive",
                 max_candidates: int = 12, decode_budget_ms: int = 500):
        super().__init__(backend, mode, max_candidates, decode_budget_ms)

    def decode_bytes(self, data: bytes) -> Optional[str]:
        img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Unreadable image data")
        return self.decode(img)

    def decode_path(self, path: str) -> Optional[str]:
        img = cv2.imread(path, cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError(f"Unreadable image file: {path}")
        return self.decode(img)


# ------------------------------ Capture loop ------------------------------
def _configure_camera(cap, *, auto_focus: Optional[bool] = None) -> None:
    def _set(prop, val):
        try:
            cap.set(prop, float(val))
        except cv2.error:
            logger.debug("Camera property %s not supported", prop)

    if auto_focus is not None and hasattr(cv2, "CAP_PROP_AUTOFOCUS"):
        _set(cv2.CAP_PROP_AUTOFOCUS, 1 if auto_focus else 0)
    # Reduce latency if supported
    if hasattr(cv2, "CAP_PROP_BUFFERSIZE"):
        _set(cv2.CAP_PROP_BUFFERSIZE, 1)


def open_camera(index: int, width: Optional[int], height: Optional[int]):
    api = cv2.CAP_DSHOW if platform.system() == "Windows" else cv2.CAP_V4L2
    cap = cv2.VideoCapture(index, api)
    if width:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    if height:
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    _configure_camera(cap)
    return cap


class CaptureLoop:
    """Owns the camera; samples frames every `sample_interval_s` on a worker thread.

    `on_result(payload_or_None)` is called once per sampled frame, in order.
    `on_error(CameraUnavailable)` is called if the stream stops delivering frames.
    """

    def __init__(
        self,
        decoder: Callable[[np.ndarray], Optional[str]],
        on_result: Callable[[Optional[str]], None],
        *,
        on_error: Optional[Callable[[CameraUnavailable], None]] = None,
        camera_index: int = 0,
        width: Optional[int] = 1280,
        height: Optional[int] = 720,
        sample_interval_s: float = 0.3,
        camera_factory: Callable = open_camera,
    ):
        self.decoder = decoder
        self.on_result = on_result
        self.on_error = on_error
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.sample_interval_s = max(0.01, float(sample_interval_s))
        self._camera_factory = camera_factory
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cap = None
        self.last_frame: Optional[np.ndarray] = None

    @property
    def running(self) -> bool:
        return self._cap is not None

    def start(self) -> None:
        with self._lock:
            if self._cap is not None:
                return
            cap = self._camera_factory(self.camera_index, self.width, self.height)
            if cap is None or not cap.isOpened():
                if cap is not None:
                    cap.release()
                raise CameraUnavailable(f"Unable to open camera index {self.camera_index}")
            # One stop flag per run; a stopped worker stays stopped after a restart
            self._stop = threading.Event()
            self._cap = cap
            self._thread = threading.Thread(target=self._run, args=(self._stop,), name="capture-loop", daemon=True)
            self._thread.start()
        logger.info("Camera %s opened", self.camera_index)

    def sample_once(self) -> Optional[str]:
        """Read and decode one frame. Decode errors count as 'nothing found'."""
        with self._lock:
            cap = self._cap
            if cap is None:
                return None
            ok, frame = cap.read()
        if not ok or frame is None:
            raise CameraUnavailable("Failed to read from camera.")
        self.last_frame = frame
        try:
            return self.decoder(frame)
        except Exception:
            logger.debug("Frame decode failed; continuing", exc_info=True)
            return None

    def _run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                payload = self.sample_once()
            except CameraUnavailable as exc:
                logger.warning("Capture stopped: %s", exc)
                if self._release_after_error(stop) and self.on_error is not None:
                    self.on_error(exc)
                break
            if stop.is_set():
                break
            self.on_result(payload)
            stop.wait(self.sample_interval_s)

    def _release_after_error(self, stop: threading.Event) -> bool:
        """Release the camera unless this run was already stopped. True if released."""
        with self._lock:
            if stop.is_set() or self._stop is not stop:
                return False
            stop.set()
            cap, self._cap = self._cap, None
            self._thread = None
        if cap is not None:
            cap.release()
            logger.info("Camera %s released", self.camera_index)
        return True

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            cap, self._cap = self._cap, None
            thread, self._thread = self._thread, None
        if cap is not None:
            cap.release()
            logger.info("Camera %s released", self.camera_index)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def __enter__(self) -> "CaptureLoop":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


# ------------------------------ CLI ------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Decode a QR/barcode from an image or the camera and print JSON.")
    parser.add_argument("--image", type=str, default=None, help="Decode this file instead of the camera")
    parser.add_argument("--camera", type=int, default=0)
    parser.add_argument("--timeout", type=float, default=20.0)
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("--height", type=int, default=720)
    parser.add_argument("--backend", choices=["auto", *BACKENDS], default="auto")
    parser.add_argument("--mode", choices=list(EFFORT_LEVELS), default="balanced")
    parser.add_argument("--interval", type=float, default=0.3)
    args = parser.parse_args()

    try:
        if args.image:
            payload = ImageDecoder(backend=args.backend).decode_path(args.image)
            backend = resolve_backend(args.backend)
        else:
            decoder = FrameDecoder(backend=args.backend, mode=args.mode)
            backend = decoder.backend
            found: List[Optional[str]] = [None]
            done = threading.Event()

            def _on_result(p: Optional[str]) -> None:
                if p and not done.is_set():
                    found[0] = p
                    done.set()

            loop = CaptureLoop(decoder, _on_result, on_error=lambda e: done.set(),
                               camera_index=args.camera, width=args.width, height=args.height,
                               sample_interval_s=args.interval)
            with loop:
                done.wait(args.timeout or None)
            payload = found[0]
    except (CameraUnavailable, DecoderUnavailable, ValueError) as e:
        print(json.dumps({"success": False, "error": str(e)}, indent=2))
        sys.exit(1)

    if not payload:
        print(json.dumps({"success": False, "error": "No code detected."}, indent=2))
        sys.exit(1)

    print(json.dumps({
        "success": True,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "backend": backend,
        "payload": payload,
    }, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
