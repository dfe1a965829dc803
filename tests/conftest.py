# Shared fixtures: an in-memory store seeded with one low-stock product,
# a controllable clock, a fake camera and a Flask test client.

from typing import Iterable, List, Optional

import pytest

from app import create_app
from memory_store import MemoryStore
from models import Product
from settings import Settings
from validator import ProductValidator


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCamera:
    """Stands in for cv2.VideoCapture.

    Yields `frames` in order; once they run out, keeps repeating the last one
    when `repeat_last` is set, otherwise reports a failed read.
    """

    def __init__(self, frames: Iterable, opened: bool = True, repeat_last: bool = False):
        self.frames: List = list(frames)
        self.opened = opened
        self.repeat_last = repeat_last
        self.reads = 0
        self.releases = 0

    def isOpened(self) -> bool:
        return self.opened

    def read(self):
        if self.reads < len(self.frames):
            frame = self.frames[self.reads]
        elif self.repeat_last and self.frames:
            frame = self.frames[-1]
        else:
            return False, None
        self.reads += 1
        return True, frame

    def set(self, prop, value) -> bool:
        return True

    def release(self) -> None:
        self.releases += 1


def camera_factory_for(camera: FakeCamera):
    def _factory(index: int, width: Optional[int], height: Optional[int]):
        return camera

    return _factory


@pytest.fixture
def product() -> Product:
    return Product(id="p1", name="Widget", barcode_data="QR-123", current_stock=3, minimum_threshold=5)


@pytest.fixture
def store(product) -> MemoryStore:
    return MemoryStore([product])


@pytest.fixture
def validator(store) -> ProductValidator:
    return ProductValidator(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app(store):
    app = create_app(store=store, settings=Settings(store="memory"))
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
