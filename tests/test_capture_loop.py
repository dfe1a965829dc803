import threading
import time

import pytest

from Code_Scanner import CaptureLoop, FrameDecoder, ImageDecoder, resolve_backend
from conftest import FakeCamera, camera_factory_for
from errors import CameraUnavailable, DecoderUnavailable
from qr_labels import render_qr, render_qr_png


def _loop(camera, decoder, on_result, **kw):
    return CaptureLoop(
        decoder,
        on_result,
        sample_interval_s=0.01,
        camera_factory=camera_factory_for(camera),
        **kw,
    )


def test_results_arrive_in_sample_order_then_error_on_stream_end():
    camera = FakeCamera(["f0", "f1", "f2"])
    payloads = {"f1": "QR-123"}
    results, errors = [], []
    done = threading.Event()

    def _on_error(exc):
        errors.append(exc)
        done.set()

    loop = _loop(camera, payloads.get, results.append, on_error=_on_error)
    loop.start()
    assert loop.running
    assert done.wait(2.0)
    loop.stop()

    assert results == [None, "QR-123", None]
    assert len(errors) == 1
    assert isinstance(errors[0], CameraUnavailable)
    assert camera.releases == 1
    assert not loop.running


def test_read_failure_releases_camera_without_stop():
    camera = FakeCamera(["f0"])
    failed = threading.Event()
    loop = _loop(camera, lambda f: None, lambda p: None, on_error=lambda exc: failed.set())
    loop.start()

    assert failed.wait(2.0)
    assert camera.releases == 1
    assert not loop.running

    loop.stop()
    assert camera.releases == 1


def test_restart_while_old_decode_is_stuck_keeps_one_sampler():
    camera = FakeCamera(["f0"], repeat_last=True)
    gate = threading.Event()
    entered = threading.Event()
    callers = []

    def _decoder(frame):
        callers.append(threading.current_thread())
        if len(callers) == 1:
            entered.set()
            gate.wait(5.0)
        return None

    loop = _loop(camera, _decoder, lambda p: None)
    loop.start()
    assert entered.wait(2.0)
    old_worker = callers[0]

    loop.stop()  # gives up on the join while the decode is blocked
    loop.start()
    gate.set()
    time.sleep(0.2)
    loop.stop()

    assert callers.count(old_worker) == 1
    assert len(callers) > 1
    assert camera.releases == 2


def test_camera_that_will_not_open_is_released_and_reported():
    camera = FakeCamera([], opened=False)
    loop = _loop(camera, lambda f: None, lambda p: None)
    with pytest.raises(CameraUnavailable):
        loop.start()
    assert camera.releases == 1
    assert not loop.running


def test_stop_is_idempotent_and_safe_before_start():
    camera = FakeCamera(["f0"], repeat_last=True)
    loop = _loop(camera, lambda f: None, lambda p: None)
    loop.stop()
    loop.start()
    loop.stop()
    loop.stop()
    assert camera.releases == 1


def test_decoder_exceptions_count_as_nothing_found():
    camera = FakeCamera(["f0"])

    def _broken(frame):
        raise RuntimeError("bad frame")

    loop = _loop(camera, _broken, lambda p: None)
    loop._cap = camera  # drive one sample by hand
    assert loop.sample_once() is None
    assert loop.last_frame == "f0"


def test_sample_once_without_camera_returns_none():
    loop = CaptureLoop(lambda f: "x", lambda p: None)
    assert loop.sample_once() is None


def test_stop_from_inside_the_callback_does_not_deadlock():
    camera = FakeCamera(["f0"], repeat_last=True)
    seen = threading.Event()
    holder = {}

    def _on_result(payload):
        holder["loop"].stop()
        seen.set()

    loop = _loop(camera, lambda f: "QR-123", _on_result)
    holder["loop"] = loop
    loop.start()
    assert seen.wait(2.0)
    assert camera.releases == 1
    assert not loop.running


def test_context_manager_releases_camera():
    camera = FakeCamera(["f0"], repeat_last=True)
    with _loop(camera, lambda f: None, lambda p: None) as loop:
        assert loop.running
    assert camera.releases == 1


def test_failed_read_raises_camera_unavailable():
    camera = FakeCamera([])
    loop = _loop(camera, lambda f: None, lambda p: None)
    loop._cap = camera
    with pytest.raises(CameraUnavailable, match="Failed to read from camera"):
        loop.sample_once()


# ------------------------------ decoders ------------------------------

def test_frame_decoder_reads_a_generated_label():
    decoder = FrameDecoder()
    assert decoder(render_qr("QR-123", size=400)) == "QR-123"


def test_frame_decoder_blank_frame_has_no_payload():
    import numpy as np

    decoder = FrameDecoder(mode="fast")
    assert decoder(np.full((240, 320), 255, dtype=np.uint8)) is None


def test_image_decoder_reads_png_bytes():
    assert ImageDecoder().decode_bytes(render_qr_png("QR-1718000000000-abc123", size=400)) == (
        "QR-1718000000000-abc123"
    )


def test_image_decoder_rejects_garbage():
    with pytest.raises(ValueError):
        ImageDecoder().decode_bytes(b"not an image")


def test_unknown_backend_is_unavailable():
    with pytest.raises(DecoderUnavailable):
        resolve_backend("laser")
