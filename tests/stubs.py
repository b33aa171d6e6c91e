"""Test doubles shared by the playback tests."""

import asyncio
import time

import numpy as np


class FakeTimer:
    def __init__(self, clock, due, fn):
        self.clock = clock
        self.due = due
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class VirtualClock:
    """Scheduler ที่เดินเวลาด้วยมือผ่าน ``advance(ms)`` แทนการรอจริง"""

    def __init__(self):
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def schedule(self, delay_ms, fn):
        timer = FakeTimer(self, self.now + delay_ms, fn)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, ms):
        target = self.now + ms
        while True:
            due = [t for t in self.pending() if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            timer.fired = True
            timer.fn()
        self.now = target


class RecordingSink:
    def __init__(self, src="rtsp://cam/1", play_result=None, play_error=None):
        self.src = src
        self.paused = True
        self.calls: list[str] = []
        self._play_result = play_result
        self._play_error = play_error

    def play(self):
        self.calls.append("play")
        if self._play_error is not None:
            raise self._play_error
        self.paused = False
        return self._play_result

    def pause(self):
        self.calls.append("pause")
        self.paused = True

    def load(self):
        self.calls.append("load")

    def count(self, name):
        return self.calls.count(name)


class RecordingEngine:
    def __init__(self, error=None):
        self.destroy_calls = 0
        self._error = error

    def destroy(self):
        self.destroy_calls += 1
        if self._error is not None:
            raise self._error


def make_controller(**kwargs):
    from src.playback.stream_controller import create_stream_controller

    clock = kwargs.pop("clock", None) or VirtualClock()
    sink = kwargs.pop("sink", None) or RecordingSink()
    statuses = []
    kwargs.setdefault("on_status_change", statuses.append)
    controller = create_stream_controller(
        sink, "rtsp://cam/1", scheduler=clock, **kwargs
    )
    return controller, sink, clock, statuses


class FakeStreamEngine:
    """แทน ``StreamEngine`` ใน app: ไม่เปิดกล้องจริง คืนเฟรมสีดำขนาดเล็ก

    ``rtsp://bad`` เปิดไม่สำเร็จเสมอ ``first_frame_delay`` หน่วงเฟรมแรก
    ``start_delay`` ทำให้ ``start()`` ช้าเหมือนรอ RTSP handshake
    """

    open_ok = True
    first_frame_delay = 0.0
    start_delay = 0.0
    instances: list["FakeStreamEngine"] = []

    def __init__(self, src, width=None, height=None, read_interval=0.0):
        self.src = src
        self.destroyed = False
        self.destroy_calls = 0
        self.reads = 0
        self.created_at = time.monotonic()
        FakeStreamEngine.instances.append(self)

    def start(self):
        if self.start_delay:
            time.sleep(self.start_delay)
        return self.open_ok and self.src != "rtsp://bad"

    async def read(self, timeout=0.1):
        self.reads += 1
        if self.reads == 1 and self.first_frame_delay:
            await asyncio.sleep(self.first_frame_delay)
        await asyncio.sleep(0.005)
        if self.destroyed:
            return None
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def destroy(self):
        self.destroy_calls += 1
        self.destroyed = True
