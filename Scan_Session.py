"""
Overview
One scan attempt, modelled as a small state machine:

    initializing --camera_ready--> ready --valid payload--> detected (terminal)
         |                           |  \--unknown payload--> invalid --cooldown--> ready
         +--camera_failed--> error   +--request_manual--> manual --valid entry--> detected
                               \--request_manual--> manual

The session never touches the camera or the decoder itself; the capture loop
(or a browser, or an uploaded image) feeds it payloads through `on_decode()`
and clock ticks through `tick()`. Scanner behaviour (decoder backend, cadence,
debounce, cooldown, manual fallback) comes from a named profile in
`scanner_profiles.yaml`.
"""
from __future__ import annotations

import logging
import pathlib
import threading
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import yaml

from models import Product
from validator import ProductValidator, ValidationResult

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    INVALID = "invalid"
    DETECTED = "detected"
    ERROR = "error"
    MANUAL = "manual"


# Next steps offered to the user in each state
NEXT_STEPS: Dict[ScanState, List[str]] = {
    ScanState.INITIALIZING: ["manual_entry"],
    ScanState.READY: ["manual_entry"],
    ScanState.INVALID: ["rescan", "manual_entry"],
    ScanState.DETECTED: [],
    ScanState.ERROR: ["retry_camera", "manual_entry"],
    ScanState.MANUAL: ["retry_camera"],
}


# ----------------------------- Profiles -------------------------------

@dataclass(frozen=True)
class SessionProfile:
    name: str = "camera"
    decoder: str = "auto"
    mode: str = "balanced"
    sample_interval_s: float = 0.3
    debounce_s: float = 0.5
    invalid_cooldown_s: float = 2.0
    manual_entry: bool = True
    width: int = 1280
    height: int = 720

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionProfile":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown profile keys: %s", ", ".join(sorted(unknown)))
        return cls(**{k: v for k, v in data.items() if k in known})


def load_profiles(path: str) -> Dict[str, SessionProfile]:
    """
    Load scanner profiles from a YAML file keyed by profile name:

        profiles:
          camera:
            decoder: auto
            sample_interval_s: 0.3
          kiosk-fast: {...}

    A missing file yields just the built-in default profile.
    """
    ppath = pathlib.Path(path)
    profiles: Dict[str, SessionProfile] = {"camera": SessionProfile()}
    if not ppath.exists():
        logger.info("No scanner profile file at %s; using defaults", ppath)
        return profiles
    data = yaml.safe_load(ppath.read_text(encoding="utf-8")) or {}
    for name, body in (data.get("profiles", data) or {}).items():
        profiles[name] = SessionProfile.from_dict({**(body or {}), "name": name})
    return profiles


def get_profile(path: str, name: str) -> SessionProfile:
    profiles = load_profiles(path)
    if name not in profiles:
        raise KeyError(f"Unknown scanner profile {name!r} (have: {', '.join(sorted(profiles))})")
    return profiles[name]


# ----------------------------- Session --------------------------------

StateListener = Callable[[ScanState, ScanState], None]


@dataclass
class SessionSnapshot:
    state: ScanState
    last_payload: Optional[str]
    product: Optional[Product]
    message: Optional[str]
    next_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "last_payload": self.last_payload,
            "product": self.product.to_dict() if self.product else None,
            "message": self.message,
            "next_steps": list(self.next_steps),
        }


class ScanSession:
    def __init__(
        self,
        validator: ProductValidator,
        profile: Optional[SessionProfile] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[StateListener] = None,
    ):
        self.validator = validator
        self.profile = profile or SessionProfile()
        self.clock = clock
        self._listeners: List[StateListener] = [on_change] if on_change else []
        self._lock = threading.RLock()

        self.state = ScanState.INITIALIZING
        self.last_payload: Optional[str] = None
        self.last_detection_at: Optional[float] = None
        self.rejected: Set[str] = set()
        self.product: Optional[Product] = None
        self.message: Optional[str] = None

        self._pending: Optional[str] = None
        self._invalid_since: Optional[float] = None
        self._invalid_payload: Optional[str] = None
        self._generation = 0
        self._closed = False

    # ---- bookkeeping ----
    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                state=self.state,
                last_payload=self.last_payload,
                product=self.product,
                message=self.message,
                next_steps=NEXT_STEPS[self.state],
            )

    def _transition(self, new: ScanState, message: Optional[str] = None) -> None:
        old = self.state
        self.state = new
        self.message = message
        logger.debug("Scan session %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Scan state listener failed")

    # ---- camera lifecycle ----
    def camera_ready(self) -> bool:
        with self._lock:
            if self._closed or self.state is not ScanState.INITIALIZING:
                return False
            self._transition(ScanState.READY)
            return True

    def camera_failed(self, error: BaseException) -> bool:
        with self._lock:
            if self._closed or self.state not in (ScanState.INITIALIZING, ScanState.READY, ScanState.INVALID):
                return False
            self._pending = None
            self._generation += 1  # drop any in-flight validation
            self._transition(ScanState.ERROR, str(error) or "Camera unavailable")
            return True

    def retry_camera(self) -> bool:
        with self._lock:
            if self._closed or self.state not in (ScanState.ERROR, ScanState.MANUAL):
                return False
            self._transition(ScanState.INITIALIZING)
            return True

    # ---- automatic path ----
    def on_decode(self, payload: Optional[str]) -> bool:
        """Feed one decode result. Returns True if it caused a state change."""
        with self._lock:
            self._tick_locked()
            if self._closed or self.state is not ScanState.READY or not payload:
                return False
            now = self.clock()
            if payload == self._pending or payload in self.rejected:
                return False
            if self.last_detection_at is not None and (now - self.last_detection_at) < self.profile.debounce_s:
                return False
            if self._pending is not None:
                # One validation in flight at a time
                return False
            self.last_detection_at = now
            self.last_payload = payload
            self._pending = payload
            token = self._generation

        result = self.validator.validate(payload)
        return self._finish_validation(token, payload, result)

    def _finish_validation(self, token: int, payload: str, result: ValidationResult) -> bool:
        with self._lock:
            if self._closed or token != self._generation:
                logger.debug("Dropping stale validation for %r", payload)
                return False
            self._pending = None
            if self.state is not ScanState.READY:
                return False
            if result.valid:
                self.product = result.product
                self._transition(ScanState.DETECTED)
            else:
                self.rejected.add(payload)
                self._invalid_since = self.clock()
                self._invalid_payload = payload
                self._transition(ScanState.INVALID, f"Invalid QR Code: {result.reason}")
            return True

    def tick(self) -> bool:
        """Advance time-based transitions (invalid -> ready after the cooldown)."""
        with self._lock:
            return self._tick_locked()

    def _tick_locked(self) -> bool:
        if self._closed or self.state is not ScanState.INVALID or self._invalid_since is None:
            return False
        if self.clock() - self._invalid_since < self.profile.invalid_cooldown_s:
            return False
        if self._invalid_payload is not None:
            self.rejected.discard(self._invalid_payload)
        self._invalid_since = None
        self._invalid_payload = None
        self._transition(ScanState.READY)
        return True

    # ---- manual path ----
    def request_manual(self) -> bool:
        with self._lock:
            if self._closed or not self.profile.manual_entry:
                return False
            if self.state not in (ScanState.INITIALIZING, ScanState.READY, ScanState.INVALID, ScanState.ERROR):
                return False
            self._pending = None
            self._generation += 1
            self._transition(ScanState.MANUAL)
            return True

    def submit_manual(self, payload: Optional[str]) -> ValidationResult:
        """Validate a typed payload. Manual entry goes through the same validator as the camera."""
        text = (payload or "").strip()
        with self._lock:
            if self._closed or self.state is not ScanState.MANUAL:
                return ValidationResult(False, reason="Manual entry is not active")
            if not text:
                self.message = "Enter a code"
                return ValidationResult(False, reason="Enter a code")
            token = self._generation

        result = self.validator.validate(text)
        with self._lock:
            if self._closed or token != self._generation or self.state is not ScanState.MANUAL:
                return ValidationResult(False, reason="Session closed")
            self.last_payload = text
            if result.valid:
                self.product = result.product
                self._transition(ScanState.DETECTED)
            else:
                self.message = f"Invalid QR Code: {result.reason}"
        return result

    # ---- teardown ----
    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._generation += 1
            self._pending = None
