# FastAPI Web Server for Survey Mission Control
# File: api_server.py

"""
Run with: uvicorn api_server:app --reload --port 8000
"""

from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadError
from pydantic.alias_generators import to_camel
from typing import List, Dict, Optional, Any
import json
import logging
from datetime import datetime

from main import (
    DroneStatus,
    EngineConfig,
    InvalidTransition,
    LogType,
    MissionStatus,
    NotFound,
    Telemetry,
    TransientStorageError,
    ValidationError,
)
from broadcaster import ObserverChannel
from orchestrator import MissionControlEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CamelModel(BaseModel):
    """Accepts camelCase (wire) or snake_case field names"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class DroneCreateRequest(CamelModel):
    name: str
    model: str
    serial_number: str
    battery_capacity: int = 100
    current_battery_level: float = Field(default=100.0, ge=0, le=100)
    status: DroneStatus = DroneStatus.AVAILABLE
    location: str = ""
    flight_hours: float = Field(default=0.0, ge=0)
    health_status: str = "good"

class DroneUpdateRequest(CamelModel):
    name: Optional[str] = None
    model: Optional[str] = None
    current_battery_level: Optional[float] = Field(default=None, ge=0, le=100)
    status: Optional[DroneStatus] = None
    location: Optional[str] = None
    health_status: Optional[str] = None

class MissionCreateRequest(CamelModel):
    name: str
    mission_type: str
    location: str
    area: float = Field(ge=0)
    status: MissionStatus = MissionStatus.PLANNED
    drone_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    flight_path: Optional[Dict[str, Any]] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    image_overlap: Optional[int] = None
    pattern_type: Optional[str] = None
    sensors: Optional[List[str]] = None
    waypoints: Optional[List[Dict[str, Any]]] = None
    data_collection_frequency: Optional[float] = None

class StatusUpdateRequest(CamelModel):
    status: str

class ProgressUpdateRequest(CamelModel):
    progress: float
    actual_path: Optional[Dict[str, Any]] = None

class LogCreateRequest(CamelModel):
    log_type: LogType = LogType.INFO
    message: str = Field(min_length=1)

class SimulatedLogRequest(CamelModel):
    message: Optional[str] = None

class TelemetryPayload(CamelModel):
    mission_id: int
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    altitude: Optional[float] = None
    speed: Optional[float] = None
    battery_level: Optional[float] = Field(default=None, ge=0, le=100)
    distance_traveled: Optional[float] = None
    signal_strength: Optional[int] = None

    def to_sample(self) -> Telemetry:
        return Telemetry(**self.model_dump())

# Observer channel inbound messages

class MissionSubscription(CamelModel):
    type: str
    mission_id: int

class TelemetryUpdate(CamelModel):
    type: str = "telemetry:update"
    telemetry: TelemetryPayload
    actual_path: Optional[Dict[str, Any]] = None

# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(engine: Optional[MissionControlEngine] = None) -> FastAPI:
    """Build the API around an engine (a fresh one from env config by default)"""
    engine = engine or MissionControlEngine(config=EngineConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        logger.info("Mission control API server started")
        yield
        await engine.stop()
        logger.info("Mission control API server stopped")

    app = FastAPI(
        title="Survey Mission Control API",
        description="Mission lifecycle engine with real-time update distribution",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFound, _error_handler(404))
    app.add_exception_handler(InvalidTransition, _error_handler(409))
    app.add_exception_handler(ValidationError, _error_handler(400))
    app.add_exception_handler(TransientStorageError, _error_handler(503))

    app.include_router(router)
    return app


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def get_engine(request: Request) -> MissionControlEngine:
    return request.app.state.engine

# ============================================================================
# DRONE ENDPOINTS
# ============================================================================

@router.get("/api/drones")
async def list_drones(request: Request):
    """List all drones"""
    drones = await get_engine(request).repository.list_drones()
    return {
        "count": len(drones),
        "drones": [d.to_dict() for d in drones]
    }

@router.get("/api/drones/{drone_id}")
async def get_drone(drone_id: int, request: Request):
    drone = await get_engine(request).repository.get_drone(drone_id)
    return drone.to_dict()

@router.post("/api/drones", status_code=201)
async def create_drone(body: DroneCreateRequest, request: Request):
    """Register a drone"""
    if body.status == DroneStatus.ON_MISSION:
        raise ValidationError("Drones enter On Mission only when a mission starts")

    engine = get_engine(request)
    drone = await engine.repository.create_drone(**body.model_dump())
    engine.broadcaster.broadcast_fleet_event({'type': 'drone:update', 'drone': drone.to_dict()})
    return drone.to_dict()

@router.patch("/api/drones/{drone_id}")
async def update_drone(drone_id: int, body: DroneUpdateRequest, request: Request):
    """Partial drone update; status On Mission is reserved for mission starts"""
    changes = body.model_dump(exclude_unset=True)
    if changes.get('status') == DroneStatus.ON_MISSION:
        raise ValidationError("Drones enter On Mission only when a mission starts")

    engine = get_engine(request)
    current = await engine.repository.get_drone(drone_id)
    if current.status == DroneStatus.ON_MISSION and 'status' in changes:
        raise ValidationError(f"Drone {drone_id} is on mission {current.last_mission}")

    drone = await engine.repository.update_drone(drone_id, **changes)
    engine.broadcaster.broadcast_fleet_event({'type': 'drone:update', 'drone': drone.to_dict()})
    return drone.to_dict()

@router.delete("/api/drones/{drone_id}")
async def delete_drone(drone_id: int, request: Request):
    engine = get_engine(request)
    drone = await engine.repository.get_drone(drone_id)
    if drone.status == DroneStatus.ON_MISSION:
        raise ValidationError(f"Drone {drone_id} is on mission {drone.last_mission}")
    await engine.repository.delete_drone(drone_id)
    return {"status": "deleted", "id": drone_id}

# ============================================================================
# MISSION ENDPOINTS
# ============================================================================

@router.get("/api/missions")
async def list_missions(request: Request):
    missions = await get_engine(request).repository.list_missions()
    return {
        "count": len(missions),
        "missions": [m.to_dict() for m in missions]
    }

@router.get("/api/missions/active")
async def list_active_missions(request: Request):
    """Missions currently In Progress"""
    missions = await get_engine(request).active_missions()
    return {
        "count": len(missions),
        "missions": [m.to_dict() for m in missions]
    }

@router.get("/api/missions/{mission_id}")
async def get_mission(mission_id: int, request: Request):
    mission = await get_engine(request).repository.get_mission(mission_id)
    return mission.to_dict()

@router.post("/api/missions", status_code=201)
async def create_mission(body: MissionCreateRequest, request: Request):
    """Create a Planned or Pending mission"""
    if body.status not in (MissionStatus.PLANNED, MissionStatus.PENDING):
        raise ValidationError(f"New missions must be Planned or Pending, got {body.status.value}")

    engine = get_engine(request)
    if body.drone_id is not None:
        await engine.repository.get_drone(body.drone_id)

    mission = await engine.repository.create_mission(**body.model_dump())
    return mission.to_dict()

@router.patch("/api/missions/{mission_id}/status")
async def update_mission_status(mission_id: int, body: StatusUpdateRequest, request: Request):
    mission = await get_engine(request).change_status(mission_id, body.status)
    return mission.to_dict()

@router.patch("/api/missions/{mission_id}/progress")
async def update_mission_progress(mission_id: int, body: ProgressUpdateRequest, request: Request):
    mission = await get_engine(request).update_progress(
        mission_id, body.progress, body.actual_path
    )
    return mission.to_dict()

# ============================================================================
# LOG & TELEMETRY ENDPOINTS
# ============================================================================

@router.get("/api/missions/{mission_id}/logs")
async def list_mission_logs(mission_id: int, request: Request):
    """Log entries, newest first"""
    engine = get_engine(request)
    await engine.repository.get_mission(mission_id)
    logs = await engine.repository.list_mission_logs(mission_id)
    return {
        "count": len(logs),
        "logs": [l.to_dict() for l in logs]
    }

@router.post("/api/missions/{mission_id}/logs", status_code=201)
async def create_mission_log(mission_id: int, body: LogCreateRequest, request: Request):
    log = await get_engine(request).append_log(mission_id, body.log_type, body.message)
    return log.to_dict()

@router.get("/api/missions/{mission_id}/telemetry")
async def list_mission_telemetry(mission_id: int, request: Request):
    """Telemetry samples, newest first"""
    engine = get_engine(request)
    await engine.repository.get_mission(mission_id)
    samples = await engine.repository.list_telemetry(mission_id)
    return {
        "count": len(samples),
        "telemetry": [t.to_dict() for t in samples]
    }

@router.post("/api/simulate/telemetry")
async def simulate_telemetry(request: Request):
    """Record a random on-path sample for a random active mission"""
    telemetry = await get_engine(request).simulate_telemetry()
    return {"message": "Simulated telemetry", "telemetry": telemetry.to_dict()}

@router.post("/api/simulate/log")
async def simulate_log(request: Request, body: Optional[SimulatedLogRequest] = None):
    log = await get_engine(request).simulate_log(body.message if body else None)
    return {"message": "Simulated log", "log": log.to_dict()}

# ============================================================================
# OBSERVER CHANNEL (WEBSOCKET)
# ============================================================================

def _error_event(message: str) -> Dict[str, str]:
    return {'type': 'error', 'message': message}


async def handle_channel_message(engine: MissionControlEngine, channel, raw: str):
    """
    Process one inbound frame; failures become an error event on this
    channel only
    """
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        channel.send(_error_event("Invalid JSON"))
        return

    if not isinstance(message, dict):
        channel.send(_error_event("Message must be a JSON object"))
        return

    message_type = message.get('type')

    try:
        if message_type == 'subscribe:mission':
            subscription = MissionSubscription.model_validate(message)
            await engine.broadcaster.subscribe(channel, subscription.mission_id)

        elif message_type == 'unsubscribe:mission':
            subscription = MissionSubscription.model_validate(message)
            engine.broadcaster.unsubscribe(channel, subscription.mission_id)

        elif message_type == 'telemetry:update':
            update = TelemetryUpdate.model_validate(message)
            stored = await engine.submit_telemetry(update.telemetry.to_sample(), update.actual_path)
            channel.send({'type': 'telemetry:ack', 'id': stored.id})

        else:
            logger.warning(f"Channel {channel.id}: unknown message type {message_type!r}")
            channel.send(_error_event(f"Unknown message type: {message_type}"))

    except PayloadError as e:
        logger.warning(f"Channel {channel.id}: invalid {message_type} payload")
        channel.send(_error_event(f"Invalid {message_type} payload: {e.error_count()} errors"))
    except (NotFound, InvalidTransition, ValidationError) as e:
        channel.send(_error_event(str(e)))
    except TransientStorageError as e:
        logger.error(f"Channel {channel.id}: storage failure on {message_type}: {e}")
        channel.send(_error_event("Storage unavailable, retry later"))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Observer channel: mission subscriptions and telemetry submission"""
    engine: MissionControlEngine = websocket.app.state.engine
    await websocket.accept()

    channel = ObserverChannel(websocket, max_pending=engine.config.channel_outbox_limit)
    engine.broadcaster.connect(channel)
    engine.record_channel_count()
    channel.start()

    try:
        missions = await engine.active_missions()
        channel.send({'type': 'missions:active', 'missions': [m.to_dict() for m in missions]})

        while not channel.closed:
            frame = await websocket.receive()
            if frame['type'] == 'websocket.disconnect':
                raise WebSocketDisconnect(frame.get('code', 1000))

            raw = frame.get('text')
            if raw is None:
                try:
                    raw = (frame.get('bytes') or b'').decode('utf-8')
                except UnicodeDecodeError:
                    channel.send(_error_event("Binary frame is not UTF-8 JSON"))
                    continue
            await handle_channel_message(engine, channel, raw)

    except WebSocketDisconnect:
        logger.info(f"Channel {channel.id} disconnected")
    except RuntimeError as e:
        # Receiving on a socket the liveness sweep already closed
        logger.debug(f"Channel {channel.id} closed: {e}")
    finally:
        engine.broadcaster.disconnect(channel)
        await channel.close()
        engine.record_channel_count()

# ============================================================================
# HEALTH CHECK & METRICS
# ============================================================================

@router.get("/")
async def root(request: Request):
    """API root endpoint"""
    return {
        "name": "Survey Mission Control API",
        "version": "1.0.0",
        "engine": get_engine(request).status,
        "docs": "/docs",
        "websocket": "/ws"
    }

@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    report = await get_engine(request).health_monitor.get_health_status()
    status_code = 503 if report['overall_status'] == 'unhealthy' else 200
    return JSONResponse(status_code=status_code, content=report)

@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(request: Request):
    """Prometheus text exposition"""
    return get_engine(request).metrics.export_prometheus()

@router.get("/api/status")
async def engine_status(request: Request):
    return await get_engine(request).get_status()


app = create_app()

if __name__ == "__main__":
    import uvicorn

    probe = app.state.engine.config.probe_interval
    uvicorn.run(app, host="0.0.0.0", port=8000,
                ws_ping_interval=probe, ws_ping_timeout=probe)
