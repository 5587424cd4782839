from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, field_validator
import asyncio
import logging

from sigprobe.event_log import get_event_stats, get_probe_events
from sigprobe.models import DEFAULT_PORT, Direction, RunConfig, Transport, validate_host, validate_port
from sigprobe.runner import runner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/probe", tags=["probe"])

STREAM_POLL_SECONDS = 0.5


class StartPayload(BaseModel):
    host: str
    port: int = DEFAULT_PORT
    transport: str = "tcp"
    direction: str = "both"
    period_sec: int = 1
    reset_every_sec: int = 0
    reset_downtime_sec: int = 0

    @field_validator("host")
    @classmethod
    def check_host(cls, v):
        return validate_host(v)

    @field_validator("port")
    @classmethod
    def check_port(cls, v):
        return validate_port(v)

    @field_validator("transport")
    @classmethod
    def check_transport(cls, v):
        v = v.lower()
        if v not in {t.value for t in Transport}:
            raise ValueError("Transport must be 'tcp' or 'udp'")
        return v

    @field_validator("direction")
    @classmethod
    def check_direction(cls, v):
        v = v.lower()
        if v not in {d.value for d in Direction}:
            raise ValueError("Direction must be 'cts', 'stc' or 'both'")
        return v

    @field_validator("period_sec", "reset_every_sec", "reset_downtime_sec")
    @classmethod
    def check_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value must be >= 0")
        return v

    def to_config(self) -> RunConfig:
        return RunConfig.from_request(
            host=self.host,
            port=self.port,
            transport=self.transport,
            direction=self.direction,
            period_sec=self.period_sec,
            reset_every_sec=self.reset_every_sec,
            reset_downtime_sec=self.reset_downtime_sec,
        )


@router.post("/start")
async def start_probe(payload: StartPayload):
    try:
        config = payload.to_config()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    started = await runner.start(config)
    if not started:
        raise HTTPException(status_code=409, detail="A probe is already running")

    logger.info(f"Started {config.transport.value} probe to {config.endpoint}")
    return {"status": "ok", "message": config.describe(), "data": runner.status()}


@router.post("/stop")
async def stop_probe():
    stopped = await runner.stop()
    if stopped:
        logger.info("Probe stopped via API")
        return {"status": "ok", "message": "Probe stopped"}
    return {"status": "ok", "message": "No probe running"}


@router.get("/status")
def get_status():
    return {"status": "ok", "data": runner.status()}


@router.get("/events")
def get_events(limit: int = 100, level: str | None = None, category: str | None = None):
    """Recent probe events, newest first.

    Query params:
        limit: Max entries (1-1000)
        level: DEBUG, INFO, WARNING or ERROR
        category: CONNECT, TX, RX, RESET, BACKOFF or STATE
    """
    if not 1 <= limit <= 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    events = get_probe_events(limit=limit, level=level, category=category)
    return {"status": "ok", "events": events, "count": len(events)}


@router.get("/events/stats")
def get_events_stats():
    return {"status": "ok", "data": get_event_stats()}


@router.websocket("/stream")
async def stream_status(websocket: WebSocket):
    """WebSocket endpoint pushing the rolling status string.

    Sends the current status on connect and again whenever it changes,
    until the client disconnects.
    """
    await websocket.accept()
    logger.info("Status stream opened")

    last_version = -1
    try:
        while True:
            if runner.status_version != last_version:
                last_version = runner.status_version
                await websocket.send_json({
                    "running": runner.is_running,
                    "status": runner.last_status,
                })
            # Doubles as the poll interval and as disconnect detection
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=STREAM_POLL_SECONDS)
            except asyncio.TimeoutError:
                pass
    except WebSocketDisconnect:
        logger.info("Status stream client disconnected")
    except Exception as e:
        logger.error(f"Unexpected error in status stream: {e}")
        try:
            await websocket.close()
        except Exception:
            pass
    finally:
        logger.info("Status stream closed")
