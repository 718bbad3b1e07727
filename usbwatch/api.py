from __future__ import annotations
import asyncio, json, logging, time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect, Query, HTTPException

from usbwatch.config import MonitorConfig
from usbwatch.errors import DeviceNotFound, EnumerationFailure, MountResolutionFailure, StorageWriteFailure
from usbwatch.events import DEVICE_CONNECTED, DEVICE_DISCONNECTED
from usbwatch.models.device_record import DeviceRecord
from usbwatch.monitor import UsbMonitor

logger = logging.getLogger("usbwatch.api")

_monitor: Optional[UsbMonitor] = None
_started = time.monotonic()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_monitor() -> UsbMonitor:
    if _monitor is None:
        raise HTTPException(status_code=503, detail="USB monitor is not running")
    return _monitor


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Start a monitor for the app unless one was installed beforehand."""
    global _monitor
    owned = _monitor is None
    if owned:
        _monitor = UsbMonitor(MonitorConfig.from_env())
        try:
            await _monitor.initialize()
        except Exception:
            logger.exception("Failed to initialize USB monitor")
            _monitor = None
            raise
    try:
        yield
    finally:
        if owned and _monitor is not None:
            await _monitor.close()
            _monitor = None


app = FastAPI(title="usbwatch API", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health():
    return {
        "success": True,
        "status": "healthy",
        "timestamp": _now(),
        "uptime": time.monotonic() - _started,
    }


@app.get("/api/devices")
async def list_devices():
    devices = [device.to_dict() for device in _require_monitor().list_devices()]
    return {"success": True, "data": devices, "count": len(devices), "timestamp": _now()}


@app.post("/api/devices/refresh")
async def refresh_devices():
    monitor = _require_monitor()
    try:
        await monitor.refresh_device_list()
    except EnumerationFailure as exc:
        logger.error("Error refreshing devices: %s", exc)
        raise HTTPException(status_code=500, detail=f"Failed to refresh devices: {exc}")
    devices = [device.to_dict() for device in monitor.list_devices()]
    return {
        "success": True,
        "message": "Device list refreshed successfully",
        "data": devices,
        "count": len(devices),
        "timestamp": _now(),
    }


@app.get("/api/devices/{device_id}")
async def get_device(device_id: str):
    device = _require_monitor().get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail=f"No device found with ID: {device_id}")
    return {"success": True, "data": device.to_dict(), "timestamp": _now()}


@app.get("/api/devices/{device_id}/storage")
async def device_storage(device_id: str):
    """Resolve the mount point of a mass-storage device."""
    try:
        path = await _require_monitor().resolve_storage_path(device_id)
    except DeviceNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MountResolutionFailure as exc:
        raise HTTPException(status_code=409, detail=f"Could not locate USB storage: {exc}")
    return {"success": True, "data": {"deviceId": device_id, "path": path}, "timestamp": _now()}


@app.post("/api/devices/{device_id}/files")
async def write_device_file(
    device_id: str,
    filename: str = Body(..., embed=True, min_length=1),
    content: str = Body(..., embed=True),
):
    """Write a UTF-8 text file to the root of a mass-storage device."""
    try:
        written = await _require_monitor().write_file_to_device(device_id, filename, content)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except DeviceNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MountResolutionFailure as exc:
        raise HTTPException(status_code=409, detail=f"Could not locate USB storage: {exc}")
    except StorageWriteFailure as exc:
        logger.error("Error writing to USB: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return {"success": True, "data": written.to_dict(), "timestamp": _now()}


@app.get("/api/history")
async def history(limit: int = Query(50, ge=1, le=1000, description="Maximum entries to return")):
    entries = [entry.to_dict() for entry in _require_monitor().get_history(limit)]
    return {"success": True, "data": entries, "count": len(entries), "limit": limit, "timestamp": _now()}


@app.get("/api/status")
async def status():
    data = dict(_require_monitor().get_status())
    data["timestamp"] = _now()
    return {"success": True, "data": data}


@app.get("/api/stats")
async def stats():
    data = dict(_require_monitor().get_stats())
    data["timestamp"] = _now()
    return {"success": True, "data": data}


def _envelope(kind: str, **payload: Any) -> Dict[str, Any]:
    return {"type": kind, **payload, "timestamp": _now()}


async def _answer(ws: WebSocket, monitor: UsbMonitor, message: Dict[str, Any]) -> None:
    kind = message.get("type")
    if kind == "ping":
        await ws.send_json(_envelope("pong", data=message.get("data")))
    elif kind == "devices:get":
        await ws.send_json(_envelope("devices:list", devices=[d.to_dict() for d in monitor.list_devices()]))
    elif kind == "history:get":
        limit = message.get("limit") or 50
        try:
            limit = max(1, int(limit))
        except (TypeError, ValueError):
            limit = 50
        entries = [entry.to_dict() for entry in monitor.get_history(limit)]
        await ws.send_json(_envelope("history:list", history=entries, limit=limit))
    elif kind == "status:get":
        await ws.send_json(_envelope("status:update", status=monitor.get_status()))
    elif kind == "devices:refresh":
        try:
            await monitor.refresh_device_list()
        except EnumerationFailure as exc:
            await ws.send_json(_envelope("error", message="Failed to refresh devices", error=str(exc)))
            return
        await ws.send_json(_envelope("devices:refreshed", devices=[d.to_dict() for d in monitor.list_devices()]))
    else:
        await ws.send_json(_envelope("error", message=f"Unknown request type: {kind}"))


async def _pump(ws: WebSocket, queue: "asyncio.Queue[Dict[str, Any]]") -> None:
    while True:
        payload = await queue.get()
        await ws.send_json(payload)


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    monitor = _monitor
    if monitor is None:
        await ws.send_json(_envelope("error", message="USB monitor is not running"))
        await ws.close(code=1011)
        return

    queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

    def _forward(kind: str) -> Callable[[DeviceRecord], None]:
        def _push(record: DeviceRecord) -> None:
            queue.put_nowait(_envelope(kind, device=record.to_dict()))
        return _push

    unsubscribers: List[Callable[[], None]] = [
        monitor.bus.subscribe(DEVICE_CONNECTED, _forward("device:connected")),
        monitor.bus.subscribe(DEVICE_DISCONNECTED, _forward("device:disconnected")),
    ]
    sender: Optional[asyncio.Task] = None
    try:
        await ws.send_json(_envelope("devices:initial", devices=[d.to_dict() for d in monitor.list_devices()]))
        await ws.send_json(_envelope("history:initial", history=[e.to_dict() for e in monitor.get_history(20)]))
        await ws.send_json(_envelope("status:initial", status=monitor.get_status()))
        sender = asyncio.create_task(_pump(ws, queue))
        while True:
            raw = await ws.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError as exc:
                await ws.send_json(_envelope("error", message=f"Invalid JSON: {exc}"))
                continue
            if not isinstance(message, dict):
                await ws.send_json(_envelope("error", message="Requests must be JSON objects"))
                continue
            await _answer(ws, monitor, message)
    except WebSocketDisconnect:
        return
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
        if sender is not None:
            sender.cancel()
            await asyncio.wait([sender])
            if not sender.cancelled() and sender.exception() is not None:
                logger.error("WebSocket sender failed", exc_info=sender.exception())
