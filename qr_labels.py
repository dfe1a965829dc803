# qr_labels.py
# Payload generation and printable QR labels for newly registered products.
from __future__ import annotations

import secrets
import string
import time
from typing import Optional

import cv2
import numpy as np

_ALPHABET = string.ascii_lowercase + string.digits


def generate_barcode_payload(now_ms: Optional[int] = None) -> str:
    """`QR-<epoch ms>-<6 random base36 chars>`, e.g. QR-1718000000000-k3x9qa."""
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"QR-{ms}-{suffix}"


def render_qr(payload: str, size: int = 200, margin: int = 4) -> np.ndarray:
    """Encode `payload` as a black-on-white QR image roughly `size` pixels square."""
    if not payload:
        raise ValueError("Cannot encode an empty payload")
    modules = cv2.QRCodeEncoder.create().encode(payload)
    if modules is None or modules.size == 0:
        raise ValueError(f"Payload too long to encode: {len(payload)} chars")
    # Pad with a quiet zone measured in modules, then scale without smoothing
    modules = cv2.copyMakeBorder(modules, margin, margin, margin, margin, cv2.BORDER_CONSTANT, value=255)
    scale = max(1, size // modules.shape[0])
    return cv2.resize(
        modules, (modules.shape[1] * scale, modules.shape[0] * scale), interpolation=cv2.INTER_NEAREST
    )


def render_qr_png(payload: str, size: int = 200, margin: int = 4) -> bytes:
    ok, buf = cv2.imencode(".png", render_qr(payload, size=size, margin=margin))
    if not ok:
        raise ValueError("PNG encoding failed")
    return buf.tobytes()
