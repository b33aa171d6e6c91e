"""Per-tile playback state machine.

A controller decides whether one tile's live stream should be relaying frames.
It reacts to explicit play/pause requests and to visibility changes, pausing an
off-screen stream only after a tier-dependent grace period so that brief scroll
or tab flicker does not thrash the camera connection.

States::

    IDLE --initialize--> LOADING --set_playing--> PLAYING <--resume/set_playing-- PAUSED
    any non-DESTROYED --pause--> PAUSED
    any --destroy--> DESTROYED (terminal)

Every public method is total: calls in the wrong state, or after ``destroy()``,
are ignored without raising so UI handlers can call them unconditionally.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from src.playback.scheduler import LoopScheduler, ScheduledAction, Scheduler
from src.playback.tier_policy import DEFAULT_TIER, pause_delay_for_tier


class StreamStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    DESTROYED = "destroyed"


StatusCallback = Callable[[StreamStatus], None]


@dataclass(frozen=True)
class StreamControllerConfig:
    pause_delay_ms: float
    auto_resume: bool = True
    on_status_change: Optional[StatusCallback] = None


class StreamController:
    def __init__(
        self,
        video_sink: Any,
        stream_url: str,
        config: StreamControllerConfig,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.stream_url = stream_url
        self.config = config
        self._sink = video_sink
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._logger = logging.getLogger("stream_controller")
        self._log_prefix = f"[stream:{stream_url}]"

        self._status = StreamStatus.IDLE
        self._engine: Any = None
        self._pending_pause: ScheduledAction | None = None
        # generation ของ timer ปัจจุบัน; ถ้า fire มาพร้อม generation เก่าให้ทิ้ง
        self._pause_generation = 0
        self._paused_by_visibility = False
        self._visible = True

    # -------- state helpers --------
    def _set_status(self, status: StreamStatus) -> None:
        if self._status is status:
            return
        self._status = status
        self._logger.debug("%s status -> %s", self._log_prefix, status.value)
        callback = self.config.on_status_change
        if callback is None:
            return
        try:
            callback(status)
        except Exception:
            self._logger.exception(
                "%s on_status_change raised for %s", self._log_prefix, status.value
            )

    def _cancel_pending_pause(self) -> None:
        self._pause_generation += 1
        action = self._pending_pause
        self._pending_pause = None
        if action is None:
            return
        try:
            action.cancel()
        except Exception:
            self._logger.exception("%s failed to cancel scheduled pause", self._log_prefix)

    def _schedule_pause(self) -> None:
        if self._pending_pause is not None:
            # ตั้งเวลาไว้แล้ว ใช้ deadline เดิม
            return
        self._pause_generation += 1
        generation = self._pause_generation
        try:
            self._pending_pause = self._scheduler.schedule(
                self.config.pause_delay_ms, lambda: self._on_pause_timer(generation)
            )
        except Exception:
            self._logger.exception("%s unable to schedule visibility pause", self._log_prefix)
            self._pending_pause = None

    def _on_pause_timer(self, generation: int) -> None:
        if generation != self._pause_generation:
            return
        self._pending_pause = None
        if self._status is not StreamStatus.PLAYING:
            return
        self._call_sink("pause")
        self._paused_by_visibility = True
        self._set_status(StreamStatus.PAUSED)

    def _call_sink(self, method: str) -> Any:
        sink = self._sink
        if sink is None:
            return None
        try:
            return getattr(sink, method)()
        except Exception as exc:
            self._logger.warning("%s video sink %s() failed: %s", self._log_prefix, method, exc)
            return None

    def _play_sink(self) -> None:
        result = self._call_sink("play")
        if result is None or not inspect.isawaitable(result):
            return
        if asyncio.isfuture(result):
            result.add_done_callback(self._on_play_settled)
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # ไม่มี loop ให้รอผล play(); ปิด coroutine ทิ้งเพื่อไม่ให้เตือน never awaited
            if inspect.iscoroutine(result):
                result.close()
            self._logger.warning("%s play() awaitable dropped: no running loop", self._log_prefix)
            return
        future = asyncio.ensure_future(result)
        future.add_done_callback(self._on_play_settled)

    def _on_play_settled(self, future: "asyncio.Future[Any]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            # autoplay/decoder ปฏิเสธ ไม่ย้อนสถานะ ปล่อยให้ media engine จัดการเอง
            self._logger.warning("%s play() rejected: %s", self._log_prefix, exc)

    # -------- public API --------
    def initialize(self, media_engine_handle: Any) -> None:
        if self._status is not StreamStatus.IDLE:
            return
        self._engine = media_engine_handle
        self._set_status(StreamStatus.LOADING)

    def set_playing(self) -> None:
        if self._status not in (StreamStatus.LOADING, StreamStatus.PAUSED):
            return
        self._cancel_pending_pause()
        self._paused_by_visibility = False
        self._set_status(StreamStatus.PLAYING)

    def pause(self) -> None:
        if self._status is StreamStatus.DESTROYED:
            return
        self._cancel_pending_pause()
        self._paused_by_visibility = False
        if self._status is StreamStatus.PAUSED:
            return
        self._call_sink("pause")
        self._set_status(StreamStatus.PAUSED)

    def resume(self) -> None:
        if self._status is not StreamStatus.PAUSED:
            return
        self._paused_by_visibility = False
        self._play_sink()
        self._set_status(StreamStatus.PLAYING)

    def set_visibility(self, visible: bool) -> None:
        if self._status is StreamStatus.DESTROYED:
            return
        visible = bool(visible)
        self._visible = visible
        if not visible:
            if self._status is StreamStatus.PLAYING:
                self._schedule_pause()
            return

        if self._pending_pause is not None:
            self._cancel_pending_pause()
            return
        if (
            self._status is StreamStatus.PAUSED
            and self._paused_by_visibility
            and self.config.auto_resume
        ):
            self.resume()

    def destroy(self) -> None:
        if self._status is StreamStatus.DESTROYED:
            return
        self._cancel_pending_pause()
        engine = self._engine
        self._engine = None
        if engine is not None:
            try:
                engine.destroy()
            except Exception:
                self._logger.exception("%s media engine destroy failed", self._log_prefix)
        sink = self._sink
        if sink is not None:
            # ปลด sink ออกจากสตรีม แต่ไม่ทำลาย sink (เจ้าของคือ rendering layer)
            self._call_sink("pause")
            try:
                sink.src = ""
            except Exception as exc:
                self._logger.warning("%s unable to clear sink src: %s", self._log_prefix, exc)
            self._call_sink("load")
        self._paused_by_visibility = False
        self._set_status(StreamStatus.DESTROYED)

    # -------- reads --------
    def get_status(self) -> StreamStatus:
        return self._status

    def is_visible(self) -> bool:
        return self._visible

    def is_active(self) -> bool:
        return self._status is not StreamStatus.DESTROYED

    def has_pending_pause(self) -> bool:
        return self._pending_pause is not None

    def get_state(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "stream_url": self.stream_url,
            "visible": self._visible,
            "paused_by_visibility": self._paused_by_visibility,
            "pause_pending": self._pending_pause is not None,
            "pause_delay_ms": self.config.pause_delay_ms,
            "auto_resume": self.config.auto_resume,
        }


def create_stream_controller(
    video_sink: Any,
    stream_url: str,
    pause_delay_ms: float | None = None,
    auto_resume: bool = True,
    on_status_change: Optional[StatusCallback] = None,
    device_tier: str = DEFAULT_TIER,
    scheduler: Optional[Scheduler] = None,
) -> StreamController:
    """Build a controller; ``pause_delay_ms`` defaults from the device tier."""
    if pause_delay_ms is None:
        pause_delay_ms = pause_delay_for_tier(device_tier)
    config = StreamControllerConfig(
        pause_delay_ms=pause_delay_ms,
        auto_resume=bool(auto_resume),
        on_status_change=on_status_change,
    )
    return StreamController(video_sink, stream_url, config, scheduler=scheduler)
