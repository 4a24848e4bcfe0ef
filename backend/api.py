"""
HVAC Runtime API Endpoints
"""

import os
import sys

from fastapi import APIRouter, HTTPException, Query, Request, Response
from loguru import logger
from pydantic import BaseModel

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.hvac_runtime.exceptions import PersistenceFailure, VendorApiError
from core.hvac_runtime.models import DeviceSessionState

router = APIRouter()

APP_VERSION = "0.1.0"

# Services (set by app.py during startup)
engine = None
poller = None


class PollRequest(BaseModel):
    """Request body for a manual poll."""
    all_devices: bool = False


def _device_view(state: DeviceSessionState) -> dict:
    data = state.to_dict()
    data.pop("last_fingerprint", None)
    last_seen = engine.last_seen(state.device_id) if engine else None
    data["last_seen"] = last_seen.isoformat() if last_seen else None
    return data


async def _ingest(request: Request, source: str) -> Response:
    # Always acknowledge: a non-2xx answer makes the push service redeliver
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"{source}: body is not JSON ({e}), acknowledged and dropped")
        return Response(status_code=204)

    if engine is None:
        logger.warning(f"{source}: engine not running, event dropped")
        return Response(status_code=204)

    accepted = engine.ingest(body)
    logger.debug(f"{source}: accepted {accepted} event(s)")
    return Response(status_code=204)


@router.post("/webhook", status_code=204)
async def push_webhook(request: Request):
    """Pub/Sub push endpoint."""
    return await _ingest(request, "webhook")


@router.post("/nest/events", status_code=204)
async def nest_events(request: Request):
    """Alternate push endpoint (direct SDM events or event batches)."""
    return await _ingest(request, "nest/events")


@router.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if engine else "starting",
        "app": "HVAC Runtime Tracker",
        "version": APP_VERSION,
        "engine": engine.stats() if engine else None,
        "polling_enabled": poller is not None,
    }


@router.get("/api/devices")
async def get_devices():
    """Get every tracked device (in memory, plus persisted ones no longer in memory)."""
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")

    devices = {state.device_id: _device_view(state) for state in engine.machine.states()}
    try:
        for state in engine.store.list_device_states():
            devices.setdefault(state.device_id, _device_view(state))
    except PersistenceFailure as e:
        logger.warning(f"Store unavailable, listing in-memory devices only: {e}")

    return {
        "count": len(devices),
        "devices": [devices[key] for key in sorted(devices)],
    }


@router.get("/api/devices/{device_id}")
async def get_device(device_id: str):
    """Get the session state of one device."""
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")

    state = engine.machine.get_state(device_id)
    if state is None:
        try:
            state = engine.store.get_device_state(device_id)
        except PersistenceFailure as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
    if state is None:
        raise HTTPException(status_code=404, detail=f"Device not found: {device_id}")

    return _device_view(state)


@router.get("/api/devices/{device_id}/sessions")
async def get_device_sessions(device_id: str, limit: int = Query(50, ge=1, le=500)):
    """Get recent runtime sessions for a device, newest first.

    Args:
        device_id: Device identifier
        limit: Maximum number of sessions (default: 50)
    """
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")

    try:
        sessions = engine.store.list_sessions(device_id, limit=limit)
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    return {
        "device_id": device_id,
        "count": len(sessions),
        "sessions": [record.to_dict() for record in sessions],
    }


@router.post("/api/poll")
async def trigger_poll(request: PollRequest | None = None):
    """Poll stale devices now (or every device with all_devices=true)."""
    if not poller:
        raise HTTPException(status_code=503, detail="Polling not configured")

    all_devices = request.all_devices if request else False
    try:
        submitted = await poller.poll_once(all_devices=all_devices)
    except VendorApiError as e:
        logger.error(f"Manual poll failed: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e

    return {"success": True, "submitted": submitted}
