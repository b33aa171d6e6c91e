# stream_engine.py
import cv2
import time
import threading
import asyncio
import logging
from typing import Optional
from queue import Queue, Empty
from contextlib import contextmanager


@contextmanager
def silent():
    try:
        yield
    except Exception:
        pass


class StreamEngine:
    """
    Media engine ของ tile หนึ่งช่อง: เปิด stream URL ด้วย cv2.VideoCapture
    แล้วอ่านเฟรมใน thread แยก เก็บเฉพาะเฟรมล่าสุด

    ``destroy()`` ต้องถูกเรียกครั้งเดียวโดยเจ้าของ (StreamController)
    """

    def __init__(
        self,
        src,
        width: Optional[int] = None,
        height: Optional[int] = None,
        read_interval: float = 0.0,
    ) -> None:
        self.src = src
        self.width = width
        self.height = height
        self.read_interval = read_interval

        self._cap = None
        self._logger = logging.getLogger("stream_engine")
        self._log_prefix = f"[engine:{src}]"

        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._q: Queue = Queue(maxsize=1)
        self._fail_count = 0
        self._last_frame_at = 0.0
        self._destroyed = False
        self._reopen_after_failures = 100

        self._logger.info("%s initializing stream engine", self._log_prefix)

    def _open(self) -> bool:
        cap = cv2.VideoCapture(self.src)
        self._cap = cap
        with silent():
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        if self.width:
            with silent():
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.width))
        if self.height:
            with silent():
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.height))
        return bool(cap.isOpened())

    def _release(self) -> None:
        cap = self._cap
        self._cap = None
        if cap is not None:
            with silent():
                cap.release()

    def start(self) -> bool:
        if self._destroyed:
            return False
        if self._cap is None or not self._cap.isOpened():
            if not self._open():
                self._logger.error("%s unable to open stream", self._log_prefix)
                self._release()
                return False

        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()
        return True

    def _run(self) -> None:
        try:
            while not self._stop_evt.is_set():
                cap = self._cap
                if cap is None or not cap.isOpened():
                    self._fail_count += 1
                    if self._fail_count in (1, 10) or self._fail_count % 25 == 0:
                        self._logger.warning(
                            "%s capture not opened; consecutive failures=%d",
                            self._log_prefix,
                            self._fail_count,
                        )
                    time.sleep(0.05)
                    continue
                ok, frame = cap.read()
                if not ok or frame is None:
                    self._fail_count += 1
                    if self._fail_count in (1, 10) or self._fail_count % 25 == 0:
                        self._logger.warning(
                            "%s read returned empty frame; consecutive failures=%d",
                            self._log_prefix,
                            self._fail_count,
                        )
                    if self._fail_count >= self._reopen_after_failures:
                        # RTSP หลุดนาน ลองเปิดใหม่
                        self._logger.warning("%s reopening stream", self._log_prefix)
                        self._release()
                        if not self._stop_evt.is_set():
                            self._open()
                        self._fail_count = 0
                    time.sleep(0.01)
                    continue

                self._fail_count = 0
                self._last_frame_at = time.monotonic()
                if self._q.full():
                    with silent():
                        _ = self._q.get_nowait()
                with silent():
                    self._q.put_nowait(frame)

                if self.read_interval > 0:
                    time.sleep(self.read_interval)
        finally:
            # thread เป็นคนปิด capture เองเพื่อไม่ให้ destroy() ต้องรอ join
            self._release()

    async def read(self, timeout: float = 0.1):
        """อ่านเฟรมล่าสุดแบบ non-blocking; คืน ``None`` เมื่อรอเกินกำหนด"""
        try:
            return self._q.get_nowait()
        except Empty:
            pass
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(0.03)
            try:
                return self._q.get_nowait()
            except Empty:
                continue
        return None

    def last_frame_timestamp(self) -> float:
        return self._last_frame_at

    def has_recent_frame(self, freshness: float = 0.5) -> bool:
        if self._last_frame_at <= 0.0:
            return False
        return time.monotonic() - self._last_frame_at <= freshness

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._stop_evt.set()
        if self._thread is None or not self._thread.is_alive():
            self._release()
        self._thread = None
        while True:
            try:
                _ = self._q.get_nowait()
            except Empty:
                break
        self._logger.info("%s stream engine destroyed", self._log_prefix)
