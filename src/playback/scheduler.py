"""Cancellable delayed actions on the asyncio event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol


class ScheduledAction(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> ScheduledAction: ...


class LoopScheduler:
    """Run ``fn`` once after ``delay_ms`` on an asyncio loop.

    ใช้ loop ที่กำลังรันอยู่ ณ ตอน schedule ถ้าไม่มีจะใช้ loop ที่ส่งเข้ามา
    ตอนสร้าง การเรียกจาก thread อื่นจะถูกส่งเข้า loop ผ่าน
    ``call_soon_threadsafe``
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._logger = logging.getLogger("scheduler")

    def _resolve_loop(self) -> tuple[asyncio.AbstractEventLoop, bool]:
        try:
            return asyncio.get_running_loop(), True
        except RuntimeError:
            pass
        if self._loop is None:
            raise RuntimeError("LoopScheduler needs a running loop or an explicit loop")
        return self._loop, False

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> ScheduledAction:
        loop, in_loop = self._resolve_loop()
        delay = max(float(delay_ms), 0.0) / 1000.0
        if in_loop:
            return loop.call_later(delay, fn)
        return _ThreadSafeAction(loop, delay, fn)


class _ThreadSafeAction:
    """Timer armed from outside the loop thread."""

    def __init__(
        self, loop: asyncio.AbstractEventLoop, delay: float, fn: Callable[[], None]
    ) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False
        self._loop = loop
        loop.call_soon_threadsafe(self._arm, delay, fn)

    def _arm(self, delay: float, fn: Callable[[], None]) -> None:
        if self._cancelled:
            return
        self._handle = self._loop.call_later(delay, fn)

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._disarm)
