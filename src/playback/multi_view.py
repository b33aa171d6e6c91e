"""Multi-view stream registry with tier limits and staggered start-up."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from src.playback.tier_policy import DEFAULT_TIER, max_concurrent_streams

DEFAULT_STAGGER_DELAY_MS = 100

_logger = logging.getLogger("multi_view")


@dataclass
class StreamEntry:
    camera: dict[str, Any]
    engine: Any = None
    status: str = "idle"
    error: Optional[BaseException] = None


@dataclass
class InitResult:
    camera: dict[str, Any]
    success: bool
    error: Optional[BaseException] = field(default=None)


def stream_limit(tier: str = DEFAULT_TIER) -> int:
    return max_concurrent_streams(tier)


def would_exceed_limit(current_count: int, tier: str = DEFAULT_TIER) -> bool:
    return current_count >= stream_limit(tier)


def validate_stream_limit(stream_count: int, tier: str) -> bool:
    return stream_count <= max_concurrent_streams(tier)


async def staggered_initialize(
    cameras: list[dict[str, Any]],
    init_fn: Callable[[dict[str, Any]], Awaitable[Any]],
    delay_ms: float = DEFAULT_STAGGER_DELAY_MS,
    on_progress: Optional[Callable[[int, dict[str, Any]], None]] = None,
    on_error: Optional[Callable[[dict[str, Any], BaseException], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[InitResult]:
    """เริ่มสตรีมทีละตัวโดยเว้นช่วง ``delay_ms`` เพื่อกัน CPU spike

    ตัวแรกเริ่มทันที error ของกล้องตัวหนึ่งไม่หยุดตัวถัดไป
    ถ้า ``cancel_event`` ถูก set จะหยุดก่อนเริ่มกล้องตัวถัดไป
    """
    results: list[InitResult] = []
    for index, camera in enumerate(cameras):
        if cancel_event is not None and cancel_event.is_set():
            break
        if index > 0 and delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)
        if cancel_event is not None and cancel_event.is_set():
            break
        try:
            await init_fn(camera)
        except Exception as exc:
            _logger.warning("stream init failed for camera %s: %s", camera.get("id"), exc)
            results.append(InitResult(camera, False, exc))
            if on_error is not None:
                on_error(camera, exc)
            continue
        results.append(InitResult(camera, True))
        if on_progress is not None:
            on_progress(index, camera)
    return results


class MultiViewManager:
    """Registry ของสตรีมที่เปิดอยู่ จำกัดจำนวนตาม tier ของ client ที่เปิด

    กล้องแต่ละตัวอาจมี key ``client`` เพื่อนับ limit แยกราย client
    ถ้าไม่ระบุ client จะนับรวมทุกสตรีม
    """

    def __init__(
        self,
        max_streams: int | None = None,
        tier: str = DEFAULT_TIER,
        stagger_delay_ms: float = DEFAULT_STAGGER_DELAY_MS,
    ) -> None:
        self.tier = tier
        self.stagger_delay_ms = stagger_delay_ms
        self._max_streams_override = max_streams
        self._streams: dict[Any, StreamEntry] = {}
        self._initializing = False
        self._cancel_event: asyncio.Event | None = None

    def get_max_streams(self, tier: str | None = None) -> int:
        if self._max_streams_override is not None:
            return self._max_streams_override
        return stream_limit(tier or self.tier)

    def can_add_stream(
        self, camera_id: Any, tier: str | None = None, client: Any = None
    ) -> bool:
        if camera_id in self._streams:
            return False
        return self.get_stream_count(client) < self.get_max_streams(tier)

    def add_stream(self, camera: dict[str, Any], tier: str | None = None) -> bool:
        camera_id = camera.get("id")
        if not self.can_add_stream(camera_id, tier, camera.get("client")):
            return False
        self._streams[camera_id] = StreamEntry(camera=camera)
        return True

    def _destroy_engine(self, camera_id: Any, entry: StreamEntry) -> None:
        if entry.engine is None:
            return
        try:
            entry.engine.destroy()
        except Exception:
            _logger.exception("failed to destroy engine for camera %s", camera_id)
        entry.engine = None

    def remove_stream(self, camera_id: Any) -> bool:
        entry = self._streams.pop(camera_id, None)
        if entry is None:
            return False
        self._destroy_engine(camera_id, entry)
        return True

    def get_active_streams(self) -> list[dict[str, Any]]:
        return [entry.camera for entry in self._streams.values()]

    def get_stream_count(self, client: Any = None) -> int:
        if client is None:
            return len(self._streams)
        return sum(
            1 for entry in self._streams.values() if entry.camera.get("client") == client
        )

    def has_streams(self) -> bool:
        return bool(self._streams)

    def is_at_capacity(self, tier: str | None = None, client: Any = None) -> bool:
        return self.get_stream_count(client) >= self.get_max_streams(tier)

    def update_stream_status(
        self, camera_id: Any, status: str, error: Optional[BaseException] = None
    ) -> None:
        entry = self._streams.get(camera_id)
        if entry is not None:
            entry.status = status
            entry.error = error

    def set_engine(self, camera_id: Any, engine: Any) -> None:
        entry = self._streams.get(camera_id)
        if entry is not None:
            entry.engine = engine

    def get_stream_info(self, camera_id: Any) -> StreamEntry | None:
        return self._streams.get(camera_id)

    @property
    def initializing(self) -> bool:
        return self._initializing

    async def initialize_all(
        self,
        init_fn: Callable[[dict[str, Any]], Awaitable[Any]],
        cameras: list[dict[str, Any]] | None = None,
    ) -> list[InitResult]:
        """เริ่มกล้องแบบเว้นช่วง ``stagger_delay_ms``

        ถ้าไม่ระบุ ``cameras`` จะใช้สตรีมที่ลงทะเบียนไว้แล้วทั้งหมด ระหว่างที่รอบหนึ่งยังไม่จบ
        การเรียกซ้ำจะคืน ``[]`` ทันที
        """
        if self._initializing:
            return []
        self._initializing = True
        self._cancel_event = asyncio.Event()

        def _mark_error(camera: dict[str, Any], exc: BaseException) -> None:
            self.update_stream_status(camera.get("id"), "error", exc)

        try:
            return await staggered_initialize(
                self.get_active_streams() if cameras is None else list(cameras),
                init_fn,
                delay_ms=self.stagger_delay_ms,
                on_error=_mark_error,
                cancel_event=self._cancel_event,
            )
        finally:
            self._initializing = False
            self._cancel_event = None

    def cancel_initialization(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()

    def cleanup(self) -> None:
        self.cancel_initialization()
        for camera_id, entry in list(self._streams.items()):
            self._destroy_engine(camera_id, entry)
            entry.status = "destroyed"
        self._streams.clear()
