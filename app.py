from quart import Quart, websocket, request, jsonify, Response
import asyncio
import cv2
import numpy as np
import argparse
import contextlib
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from stream_engine import StreamEngine
from src.packages.app_config import AppConfig
from src.playback.multi_view import MultiViewManager
from src.playback.stream_controller import (
    StreamController,
    StreamStatus,
    create_stream_controller,
)
from src.playback.tier_policy import (
    TIERS,
    animation_config,
    pause_delay_for_tier,
    tier_from_client_hints,
)
from src.playback.visibility import get_shared_visibility_observer
from src.utils.logger import close_logger, get_logger

# === Config ===
APP_CONFIG = AppConfig().load_toml_config()
VIEWER_CONFIG: dict[str, Any] = APP_CONFIG["viewer"]
STREAM_CONFIG: dict[str, Any] = APP_CONFIG["stream"]

STREAM_MAX_FRAME_DELAY = float(os.getenv("STREAM_MAX_FRAME_DELAY", "1.5") or 1.5)
STREAM_SEND_TIMEOUT = float(os.getenv("STREAM_SEND_TIMEOUT", "0.6") or 0.6)
MAX_STATUS_HISTORY = 50

_TILE_LOGGER = get_logger("viewer_tiles")
_STREAM_LOGGER = get_logger("websocket_stream")

app = Quart(__name__)


# =========================
# Video sink
# =========================
@dataclass(slots=True)
class FramePacket:
    payload: bytes
    created_at: float


def _replace_with_latest(queue: asyncio.Queue, item: Any) -> None:
    """ทิ้งของค้างใน *queue* ทั้งหมดก่อนใส่ *item* ให้ผู้ชมได้เฉพาะเฟรมล่าสุด"""
    with contextlib.suppress(asyncio.QueueEmpty):
        while True:
            queue.get_nowait()
    queue.put_nowait(item)


class FrameRelay:
    """Video sink ของ tile: ดึงเฟรมจาก media engine เข้ารหัส JPEG แล้วส่งเข้า queue

    ``play()`` เป็น coroutine; ถ้าไม่มี engine ให้เล่นจะ raise เหมือน
    ``HTMLMediaElement.play()`` ที่ reject
    """

    def __init__(
        self,
        tile_id: str,
        engine: Any = None,
        jpeg_quality: int = 80,
        on_playing: Any = None,
    ) -> None:
        self.tile_id = tile_id
        self.engine = engine
        self.src = str(getattr(engine, "src", "") or "")
        self.jpeg_quality = int(jpeg_quality)
        self.on_playing = on_playing
        self.queue: asyncio.Queue[FramePacket | None] = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task | None = None

    @property
    def paused(self) -> bool:
        return self._task is None or self._task.done()

    async def play(self) -> None:
        if self.engine is None or not self.src:
            raise RuntimeError(f"tile {self.tile_id}: no stream attached")
        if getattr(self.engine, "destroyed", False):
            raise RuntimeError(f"tile {self.tile_id}: media engine destroyed")
        if self.paused:
            self._task = asyncio.create_task(self._pump())

    def pause(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    def load(self) -> None:
        _drain_queue(self.queue)
        if not self.src:
            # ไม่มีแหล่งแล้ว ส่ง sentinel ให้ websocket ปิดการเชื่อมต่อ
            self.queue.put_nowait(None)

    def _encode(self, frame: Any) -> bytes | None:
        ok, buffer = cv2.imencode(
            ".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]
        )
        if not ok or buffer is None:
            return None
        return buffer.tobytes()

    async def _pump(self) -> None:
        delivered = False
        try:
            while True:
                frame = await self.engine.read()
                if frame is None:
                    await asyncio.sleep(0.01)
                    continue
                if isinstance(frame, np.ndarray) and frame.size == 0:
                    await asyncio.sleep(0.01)
                    continue
                try:
                    payload = await asyncio.to_thread(self._encode, frame)
                except Exception as exc:
                    _STREAM_LOGGER.warning("tile=%s encode failed: %s", self.tile_id, exc)
                    payload = None
                if payload is None:
                    await asyncio.sleep(0.01)
                    continue
                _replace_with_latest(
                    self.queue, FramePacket(payload=payload, created_at=time.monotonic())
                )
                if not delivered:
                    delivered = True
                    if self.on_playing is not None:
                        self.on_playing()
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            pass


def _drain_queue(queue: asyncio.Queue[Any] | None) -> None:
    """Remove all pending items from *queue* if it exists."""
    if queue is None:
        return
    with contextlib.suppress(asyncio.QueueEmpty):
        while True:
            queue.get_nowait()


# === Runtime state ===
@dataclass
class Tile:
    tile_id: str
    controller: StreamController
    relay: FrameRelay
    tier: str
    client: str | None = None
    mounted_at: float = field(default_factory=time.time)


tiles: dict[str, Tile] = {}
tile_locks: dict[str, asyncio.Lock] = {}
status_history: dict[str, deque] = {}

visibility_observer = get_shared_visibility_observer(
    threshold=float(VIEWER_CONFIG.get("visibility_threshold", 0.1))
)
multi_view = MultiViewManager(
    max_streams=VIEWER_CONFIG.get("max_streams"),
    stagger_delay_ms=float(VIEWER_CONFIG.get("stagger_delay_ms", 100)),
)


def get_tile_lock(tile_id: str) -> asyncio.Lock:
    return tile_locks.setdefault(tile_id, asyncio.Lock())


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return False


def resolve_request_tier(data: dict[str, Any], headers: Any) -> str:
    configured = str(VIEWER_CONFIG.get("device_tier") or "auto").strip().lower()
    if "tier" not in data and configured in TIERS:
        return configured
    return tier_from_client_hints(headers, data)


def _status_callback(tile_id: str):
    history = status_history.setdefault(tile_id, deque(maxlen=MAX_STATUS_HISTORY))
    tile_logger = get_logger("viewer_tiles", tile_id)

    def _on_status(status: StreamStatus) -> None:
        history.append({"status": status.value, "at": time.time()})
        multi_view.update_stream_status(tile_id, status.value)
        tile_logger.info("status=%s", status.value)

    return _on_status


def _first_frame_callback(controller: StreamController):
    def _on_first_frame() -> None:
        controller.set_playing()
        if not controller.is_visible():
            # ซ่อนตั้งแต่ตอน LOADING; multiplexer ไม่ส่ง False ซ้ำ
            controller.set_visibility(False)

    return _on_first_frame


def tile_payload(tile: Tile) -> dict[str, Any]:
    state = tile.controller.get_state()
    state["stream_status"] = state.pop("status")
    return {
        "tile_id": tile.tile_id,
        "tier": tile.tier,
        "client": tile.client,
        "mounted_at": tile.mounted_at,
        **state,
        "history": list(status_history.get(tile.tile_id, ())),
    }


# =========================
# Mount / unmount
# =========================
async def mount_tile(
    tile_id: str,
    stream_url: str,
    *,
    tier: str,
    client: str | None = None,
    pause_delay_ms: float | None = None,
    auto_resume: bool | None = None,
) -> tuple[dict[str, Any], int]:
    async with get_tile_lock(tile_id):
        if tile_id in tiles:
            return {"status": "already_mounted", "tile_id": tile_id}, 200

        camera = {"id": tile_id, "stream_url": stream_url, "client": client}
        if not multi_view.add_stream(camera, tier=tier):
            return (
                {
                    "status": "stream_limit",
                    "tile_id": tile_id,
                    "max_streams": multi_view.get_max_streams(tier),
                },
                409,
            )

        engine = StreamEngine(
            stream_url, read_interval=float(STREAM_CONFIG.get("read_interval", 0.0))
        )
        started = await asyncio.to_thread(engine.start)
        if not started:
            engine.destroy()
            multi_view.remove_stream(tile_id)
            _TILE_LOGGER.warning("tile=%s unable to open %s", tile_id, stream_url)
            return {"status": "open_failed", "tile_id": tile_id}, 400

        if pause_delay_ms is None:
            pause_delay_ms = VIEWER_CONFIG.get("pause_delay_ms")
        if auto_resume is None:
            auto_resume = bool(VIEWER_CONFIG.get("auto_resume", True))

        relay = FrameRelay(
            tile_id, engine, jpeg_quality=int(STREAM_CONFIG.get("jpeg_quality", 80))
        )
        controller = create_stream_controller(
            relay,
            stream_url,
            pause_delay_ms=pause_delay_ms,
            auto_resume=auto_resume,
            on_status_change=_status_callback(tile_id),
            device_tier=tier,
        )
        relay.on_playing = _first_frame_callback(controller)
        controller.initialize(engine)
        tile = Tile(
            tile_id=tile_id, controller=controller, relay=relay, tier=tier, client=client
        )
        tiles[tile_id] = tile
        visibility_observer.observe(tile_id, controller.set_visibility)
        try:
            await relay.play()
        except Exception as exc:
            _TILE_LOGGER.warning("tile=%s autoplay failed: %s", tile_id, exc)
        return {**tile_payload(tile), "status": "mounted"}, 200


async def unmount_tile(tile_id: str) -> tuple[dict[str, Any], int]:
    async with get_tile_lock(tile_id):
        tile = tiles.pop(tile_id, None)
        if tile is None:
            status = "not_found"
        else:
            visibility_observer.unobserve(tile_id)
            tile.controller.destroy()
            multi_view.remove_stream(tile_id)
            status_history.pop(tile_id, None)
            close_logger("viewer_tiles", tile_id)
            status = "unmounted"
    return {"status": status, "tile_id": tile_id}, 200 if status == "unmounted" else 404


async def mount_batch(
    cameras: list[dict[str, Any]], *, tier: str, client: str | None = None
) -> tuple[dict[str, Any], int]:
    """Mount หลาย tile โดยเว้นช่วง ``stagger_delay_ms`` ระหว่างกล้อง

    กล้องที่ยังไม่ได้เริ่มตอนถูก cancel จะได้สถานะ ``cancelled``
    """
    if multi_view.initializing:
        return {"status": "batch_in_progress"}, 409
    results: dict[str, dict[str, Any]] = {}

    async def _mount_one(camera: dict[str, Any]) -> None:
        resp, code = await mount_tile(
            camera["id"],
            camera["stream_url"],
            tier=tier,
            client=client,
            pause_delay_ms=camera.get("pause_delay_ms"),
            auto_resume=camera.get("auto_resume"),
        )
        results[camera["id"]] = resp
        if code >= 400:
            raise RuntimeError(resp["status"])

    await multi_view.initialize_all(_mount_one, cameras=cameras)
    return {
        "status": "ok",
        "tiles": [
            results.get(camera["id"], {"status": "cancelled", "tile_id": camera["id"]})
            for camera in cameras
        ],
    }, 200


async def unmount_all() -> None:
    multi_view.cancel_initialization()
    await asyncio.gather(
        *[unmount_tile(tile_id) for tile_id in list(tiles)], return_exceptions=True
    )
    visibility_observer.disconnect()
    multi_view.cleanup()


@app.after_serving
async def _shutdown_cleanup():
    await unmount_all()


# =========================
# Routes
# =========================
@app.get("/_healthz")
async def _healthz():
    return "ok", 200


def _client_key(data: dict[str, Any]) -> str | None:
    client_id = str(data.get("client_id") or "").strip()
    return client_id or request.remote_addr or None


def _mount_options(data: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    pause_delay_ms = data.get("pause_delay_ms")
    if pause_delay_ms is not None:
        try:
            pause_delay_ms = float(pause_delay_ms)
        except (TypeError, ValueError):
            return {}, "invalid_pause_delay"
        if pause_delay_ms <= 0:
            return {}, "invalid_pause_delay"
    auto_resume = data.get("auto_resume")
    if auto_resume is not None:
        auto_resume = _truthy(auto_resume)
    return {"pause_delay_ms": pause_delay_ms, "auto_resume": auto_resume}, None


@app.route("/api/tiles", methods=["GET"])
async def list_tiles():
    return jsonify({
        "tiles": [tile_payload(tile) for tile in tiles.values()],
        "observed": visibility_observer.get_observed_count(),
        "max_streams": multi_view.get_max_streams(),
        "initializing": multi_view.initializing,
        "document_hidden": bool(getattr(visibility_observer.primitive, "document_hidden", False)),
    })


@app.route("/api/tiles", methods=["POST"])
async def mount_many():
    data = await request.get_json(silent=True) or {}
    entries = data.get("tiles")
    if not isinstance(entries, list) or not entries:
        return jsonify({"status": "missing_tiles"}), 400
    cameras = []
    for entry in entries:
        if not isinstance(entry, dict):
            return jsonify({"status": "invalid_tile", "tile_id": None}), 400
        tile_id = str(entry.get("tile_id") or "").strip()
        stream_url = str(entry.get("stream_url") or "").strip()
        if not tile_id or not stream_url:
            return jsonify({"status": "invalid_tile", "tile_id": tile_id or None}), 400
        options, error = _mount_options(entry)
        if error:
            return jsonify({"status": error, "tile_id": tile_id}), 400
        cameras.append({"id": tile_id, "stream_url": stream_url, **options})
    tier = resolve_request_tier(data, request.headers)
    resp, status = await mount_batch(cameras, tier=tier, client=_client_key(data))
    return jsonify(resp), status


@app.route("/api/tiles/<string:tile_id>", methods=["POST"])
async def mount(tile_id: str):
    data = await request.get_json(silent=True) or {}
    stream_url = str(data.get("stream_url") or "").strip()
    if not stream_url:
        return jsonify({"status": "missing_stream_url", "tile_id": tile_id}), 400
    options, error = _mount_options(data)
    if error:
        return jsonify({"status": error, "tile_id": tile_id}), 400
    tier = resolve_request_tier(data, request.headers)
    resp, status = await mount_tile(
        tile_id, stream_url, tier=tier, client=_client_key(data), **options
    )
    return jsonify(resp), status


@app.route("/api/tiles/<string:tile_id>", methods=["GET"])
async def tile_status(tile_id: str):
    tile = tiles.get(tile_id)
    if tile is None:
        return jsonify({"status": "not_found", "tile_id": tile_id}), 404
    return jsonify(tile_payload(tile))


@app.route("/api/tiles/<string:tile_id>", methods=["DELETE"])
async def unmount(tile_id: str):
    resp, status = await unmount_tile(tile_id)
    return jsonify(resp), status


@app.route("/api/tiles/<string:tile_id>/visibility", methods=["POST"])
async def report_visibility(tile_id: str):
    data = await request.get_json(silent=True) or {}
    if "ratio" in data:
        try:
            ratio = float(data["ratio"])
        except (TypeError, ValueError):
            return jsonify({"status": "invalid_ratio", "tile_id": tile_id}), 400
    elif "visible" in data:
        ratio = 1.0 if _truthy(data["visible"]) else 0.0
    else:
        return jsonify({"status": "missing_visibility", "tile_id": tile_id}), 400
    if not visibility_observer.primitive.report(tile_id, ratio):
        return jsonify({"status": "not_found", "tile_id": tile_id}), 404
    tile = tiles.get(tile_id)
    state = tile_payload(tile) if tile is not None else {}
    return jsonify({"tile_id": tile_id, **state, "status": "ok"})


@app.route("/api/visibility", methods=["POST"])
async def report_document_visibility():
    data = await request.get_json(silent=True) or {}
    hidden = _truthy(data.get("hidden"))
    visibility_observer.primitive.set_document_hidden(hidden)
    return jsonify({"status": "ok", "document_hidden": hidden})


@app.route("/api/tiles/<string:tile_id>/pause", methods=["POST"])
async def pause_tile(tile_id: str):
    tile = tiles.get(tile_id)
    if tile is None:
        return jsonify({"status": "not_found", "tile_id": tile_id}), 404
    tile.controller.pause()
    return jsonify({**tile_payload(tile), "status": "ok"})


@app.route("/api/tiles/<string:tile_id>/resume", methods=["POST"])
async def resume_tile(tile_id: str):
    tile = tiles.get(tile_id)
    if tile is None:
        return jsonify({"status": "not_found", "tile_id": tile_id}), 404
    tile.controller.resume()
    return jsonify({**tile_payload(tile), "status": "ok"})


@app.route("/api/tiles/<string:tile_id>/snapshot")
async def tile_snapshot(tile_id: str):
    tile = tiles.get(tile_id)
    if tile is None:
        return "Tile not mounted", 404
    frame = await tile.relay.engine.read()
    if frame is None:
        return "Camera error", 500
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), 80])
    if not ok:
        return "Encode error", 500
    return Response(buffer.tobytes(), mimetype="image/jpeg")


@app.route("/api/animation", methods=["GET"])
async def animation_settings():
    data = {key: request.args[key] for key in ("tier", "ram", "cores", "mobile") if key in request.args}
    tier = resolve_request_tier(data, request.headers)
    force_disable = _truthy(request.args.get("reduced_motion"))
    return jsonify({
        "tier": tier,
        "pause_delay_ms": pause_delay_for_tier(tier),
        **animation_config(tier, force_disable),
    })


# =========================
# WebSockets
# =========================
async def _stream_queue_over_websocket(
    queue: asyncio.Queue[FramePacket | None],
    ws: Any = websocket,
) -> None:
    """Relay frames from *queue* to the active websocket connection.

    เฟรมที่ค้างนานเกิน ``STREAM_MAX_FRAME_DELAY`` จะถูกทิ้ง ``None`` ใน queue
    หมายถึง tile ถูก unmount ให้ปิดการเชื่อมต่อ
    """
    with contextlib.suppress(RuntimeError):
        await ws.accept()
    close_sent = False
    try:
        while True:
            packet = await queue.get()
            if packet is None:
                await ws.close(code=1000)
                close_sent = True
                break
            if STREAM_MAX_FRAME_DELAY > 0:
                age = time.monotonic() - packet.created_at
                if age > STREAM_MAX_FRAME_DELAY:
                    continue
            try:
                if STREAM_SEND_TIMEOUT > 0:
                    await asyncio.wait_for(ws.send(packet.payload), timeout=STREAM_SEND_TIMEOUT)
                else:
                    await ws.send(packet.payload)
            except asyncio.TimeoutError:
                _STREAM_LOGGER.warning(
                    "websocket send timeout (%.2fs); closing stream", STREAM_SEND_TIMEOUT
                )
                with contextlib.suppress(Exception):
                    await ws.close(code=1011, reason="send_timeout")
                    close_sent = True
                break
    finally:
        if not close_sent:
            with contextlib.suppress(Exception):
                await ws.close(1000)


@app.websocket("/ws/tiles/<string:tile_id>")
async def ws_tile(tile_id: str):
    tile = tiles.get(tile_id)
    if tile is None:
        await websocket.close(1008)
        return
    await _stream_queue_over_websocket(tile.relay.queue, websocket)


# =========================
# Entry
# =========================
if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the live viewer grid server")
    parser.add_argument("--port", type=int, default=5000, help="Port for the web server")
    parser.add_argument("--use-uvicorn", action="store_true", help="Run with uvicorn instead of built-in server")
    args = parser.parse_args()

    if args.use_uvicorn:
        import uvicorn
        uvicorn.run(
            "app:app",
            host="0.0.0.0",
            port=args.port,
            reload=False,
            lifespan="on",
            timeout_keep_alive=2,
            timeout_graceful_shutdown=2,
            workers=1,
        )
    else:
        app.run(port=args.port)
