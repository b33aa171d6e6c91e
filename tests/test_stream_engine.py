import asyncio
import time

import numpy as np

import stream_engine
from stream_engine import StreamEngine


class DummyCap:
    created = []

    def __init__(self, src):
        self.src = src
        self.released = False
        self.reads = 0
        DummyCap.created.append(self)

    def isOpened(self):
        return self.src != "rtsp://bad" and not self.released

    def read(self):
        self.reads += 1
        if self.src == "rtsp://flaky":
            return False, None
        return True, np.full((4, 4, 3), self.reads % 255, dtype=np.uint8)

    def set(self, prop, value):
        pass

    def release(self):
        self.released = True


def _patch(monkeypatch):
    DummyCap.created = []
    monkeypatch.setattr(stream_engine.cv2, "VideoCapture", DummyCap)


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_open_failure_releases_capture(monkeypatch):
    _patch(monkeypatch)
    engine = StreamEngine("rtsp://bad")
    assert engine.start() is False
    assert DummyCap.created[0].released
    engine.destroy()


def test_read_returns_latest_frame_and_destroy_stops_thread(monkeypatch):
    _patch(monkeypatch)
    engine = StreamEngine("rtsp://cam/1", read_interval=0.001)
    assert engine.start()
    frame = asyncio.run(engine.read(timeout=1.0))
    assert frame is not None and frame.shape == (4, 4, 3)
    assert engine.has_recent_frame(freshness=1.0)

    thread = engine._thread
    engine.destroy()
    thread.join(timeout=2.0)
    assert not thread.is_alive()
    assert engine.destroyed
    assert DummyCap.created[0].released
    assert engine.start() is False


def test_destroy_is_idempotent(monkeypatch):
    _patch(monkeypatch)
    engine = StreamEngine("rtsp://cam/1", read_interval=0.001)
    engine.start()
    engine.destroy()
    engine.destroy()
    assert engine.destroyed


def test_reopen_after_repeated_read_failures(monkeypatch):
    _patch(monkeypatch)
    engine = StreamEngine("rtsp://flaky")
    engine._reopen_after_failures = 3
    assert engine.start()
    try:
        assert _wait_for(lambda: len(DummyCap.created) >= 2)
        assert DummyCap.created[0].released
        assert asyncio.run(engine.read(timeout=0.05)) is None
    finally:
        engine.destroy()
