# Survey Mission Control System - Mission Lifecycle Core
# File: main.py

"""
Core data models, configuration and the mission status state machine.

Run the server with: python main.py [--host 0.0.0.0] [--port 8000]
"""

import asyncio
from contextlib import asynccontextmanager
import math
import os
from datetime import datetime
from typing import List, Dict, Optional, Any, Callable
from enum import Enum
from dataclasses import dataclass, field
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# PART 1: CORE DATA MODELS
# ============================================================================

class DroneStatus(str, Enum):
    AVAILABLE = "Available"
    ON_MISSION = "On Mission"
    CHARGING = "Charging"
    MAINTENANCE = "Maintenance"
    TERMINATED = "Terminated"

class MissionStatus(str, Enum):
    PLANNED = "Planned"
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ABORTED = "Aborted"

class LogType(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    START = "START"
    END = "END"

TERMINAL_STATUSES = {MissionStatus.COMPLETED, MissionStatus.ABORTED}

EARTH_RADIUS_M = 6371000.0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class GeoPoint:
    lat: float
    lng: float

    def distance_to(self, other: 'GeoPoint') -> float:
        """Haversine distance in metres"""
        lat1, lat2 = math.radians(self.lat), math.radians(other.lat)
        dlat = lat2 - lat1
        dlng = math.radians(other.lng - self.lng)
        a = (math.sin(dlat / 2) ** 2 +
             math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2)
        return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


@dataclass
class FlightPath:
    """
    Ordered sequence of coordinates for a mission.

    Stored and sent on the wire as a GeoJSON LineString
    (``{"type": "LineString", "coordinates": [[lng, lat], ...]}``);
    inside the core it is always this validated variant.
    """
    points: List[GeoPoint] = field(default_factory=list)
    kind: str = "LineString"

    def __len__(self) -> int:
        return len(self.points)

    def prefix(self, count: int) -> 'FlightPath':
        """First ``count`` points as a new path"""
        return FlightPath(points=list(self.points[:max(count, 0)]), kind=self.kind)

    def length_m(self, upto: Optional[int] = None) -> float:
        """Path length in metres up to and including index ``upto``"""
        points = self.points if upto is None else self.points[:upto + 1]
        return sum(a.distance_to(b) for a, b in zip(points, points[1:]))

    @classmethod
    def from_geojson(cls, data: Any) -> 'FlightPath':
        """
        Parse a GeoJSON LineString

        Raises:
            InvalidPathError: if the payload is not a LineString of
                numeric ``[lng, lat]`` pairs
        """
        if isinstance(data, FlightPath):
            return data
        if not isinstance(data, dict) or data.get('type') != 'LineString':
            raise InvalidPathError("Path must be a GeoJSON LineString")

        coordinates = data.get('coordinates')
        if not isinstance(coordinates, list):
            raise InvalidPathError("LineString coordinates must be a list")

        points = []
        for index, pair in enumerate(coordinates):
            if (not isinstance(pair, (list, tuple)) or len(pair) < 2 or
                    not all(isinstance(c, (int, float)) and not isinstance(c, bool)
                            for c in pair[:2])):
                raise InvalidPathError(f"Invalid coordinate at index {index}")
            lng, lat = float(pair[0]), float(pair[1])
            if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
                raise InvalidPathError(f"Coordinate out of range at index {index}")
            points.append(GeoPoint(lat=lat, lng=lng))

        return cls(points=points)

    @classmethod
    def parse_stored(cls, data: Any) -> Optional['FlightPath']:
        """Lenient variant for stored paths: malformed input becomes None"""
        if data is None:
            return None
        try:
            return cls.from_geojson(data)
        except InvalidPathError as e:
            logger.warning(f"Ignoring malformed stored path: {e}")
            return None

    def to_geojson(self) -> Dict[str, Any]:
        return {
            'type': self.kind,
            'coordinates': [[p.lng, p.lat] for p in self.points]
        }


@dataclass
class Drone:
    id: int
    name: str
    model: str
    serial_number: str
    battery_capacity: int
    current_battery_level: float
    status: DroneStatus
    location: str
    flight_hours: float = 0.0
    health_status: str = "good"
    last_mission: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'model': self.model,
            'serialNumber': self.serial_number,
            'batteryCapacity': self.battery_capacity,
            'currentBatteryLevel': self.current_battery_level,
            'status': self.status.value,
            'location': self.location,
            'flightHours': round(self.flight_hours, 4),
            'healthStatus': self.health_status,
            'lastMission': self.last_mission
        }


@dataclass
class Mission:
    id: int
    name: str
    mission_type: str
    status: MissionStatus
    location: str
    area: float
    flight_path: Optional[FlightPath]
    drone_id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None  # seconds
    actual_path: Optional[FlightPath] = None
    progress: float = 0.0
    altitude: Optional[float] = None  # meters
    speed: Optional[float] = None  # m/s
    image_overlap: Optional[int] = None  # percent
    pattern_type: Optional[str] = None
    sensors: Optional[List[str]] = None
    waypoints: Optional[List[Dict[str, Any]]] = None
    data_collection_frequency: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'missionType': self.mission_type,
            'status': self.status.value,
            'location': self.location,
            'area': self.area,
            'droneId': self.drone_id,
            'createdAt': _iso(self.created_at),
            'scheduledAt': _iso(self.scheduled_at),
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
            'duration': self.duration,
            'flightPath': self.flight_path.to_geojson() if self.flight_path else None,
            'actualPath': self.actual_path.to_geojson() if self.actual_path else None,
            'progress': self.progress,
            'altitude': self.altitude,
            'speed': self.speed,
            'imageOverlap': self.image_overlap,
            'patternType': self.pattern_type,
            'sensors': self.sensors,
            'waypoints': self.waypoints,
            'dataCollectionFrequency': self.data_collection_frequency
        }


@dataclass
class Telemetry:
    mission_id: int
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    speed: Optional[float] = None
    battery_level: Optional[float] = None
    distance_traveled: Optional[float] = None
    signal_strength: Optional[int] = None
    id: Optional[int] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'missionId': self.mission_id,
            'timestamp': _iso(self.timestamp),
            'altitude': self.altitude,
            'speed': self.speed,
            'batteryLevel': self.battery_level,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'distanceTraveled': self.distance_traveled,
            'signalStrength': self.signal_strength
        }


@dataclass
class MissionLog:
    mission_id: int
    log_type: LogType
    message: str
    id: Optional[int] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'missionId': self.mission_id,
            'timestamp': _iso(self.timestamp),
            'logType': self.log_type.value,
            'message': self.message
        }

# ============================================================================
# PART 2: ERRORS
# ============================================================================

class MissionControlError(Exception):
    """Base class for mission control failures"""


class NotFound(MissionControlError):
    def __init__(self, kind: str, entity_id: Any):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class InvalidTransition(MissionControlError):
    def __init__(self, current: MissionStatus, target: MissionStatus,
                 reason: Optional[str] = None):
        message = f"Cannot transition mission from {current.value} to {target.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class ValidationError(MissionControlError):
    """Malformed telemetry, log or path payload"""


class InvalidPathError(ValidationError):
    pass


class TransientStorageError(MissionControlError):
    """Repository call failed; the caller may retry later"""

# ============================================================================
# PART 3: CONFIGURATION
# ============================================================================

def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Simulation constants and intervals for the mission control engine"""
    progress_interval: float = 3.0  # seconds
    drift_interval: float = 15.0
    dispatch_interval: float = 20.0
    probe_interval: float = 30.0
    channel_outbox_limit: int = 256  # queued events per observer

    progress_increment: float = 0.5
    completion_threshold: float = 99.5
    default_altitude: float = 80.0
    default_speed: float = 5.0
    telemetry_battery_floor: float = 25.0
    signal_strength_min: int = 80
    signal_strength_max: int = 100

    drift_max: float = 0.5
    drift_threshold: float = 0.3
    battery_floor: float = 10.0
    dispatch_min_battery: float = 50.0

    simulation_enabled: bool = True
    seed_demo_data: bool = True
    state_file: str = ""
    kafka_bootstrap_servers: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        """Build config from MISSION_* environment variables"""
        servers = os.getenv("MISSION_KAFKA_BOOTSTRAP_SERVERS", "")
        return cls(
            progress_interval=_env_float("MISSION_PROGRESS_INTERVAL", cls.progress_interval),
            drift_interval=_env_float("MISSION_DRIFT_INTERVAL", cls.drift_interval),
            dispatch_interval=_env_float("MISSION_DISPATCH_INTERVAL", cls.dispatch_interval),
            probe_interval=_env_float("MISSION_PROBE_INTERVAL", cls.probe_interval),
            channel_outbox_limit=int(_env_float("MISSION_CHANNEL_OUTBOX_LIMIT", cls.channel_outbox_limit)),
            progress_increment=_env_float("MISSION_PROGRESS_INCREMENT", cls.progress_increment),
            completion_threshold=_env_float("MISSION_COMPLETION_THRESHOLD", cls.completion_threshold),
            drift_max=_env_float("MISSION_DRIFT_MAX", cls.drift_max),
            drift_threshold=_env_float("MISSION_DRIFT_THRESHOLD", cls.drift_threshold),
            battery_floor=_env_float("MISSION_BATTERY_FLOOR", cls.battery_floor),
            dispatch_min_battery=_env_float("MISSION_DISPATCH_MIN_BATTERY", cls.dispatch_min_battery),
            simulation_enabled=_env_bool("MISSION_SIMULATION_ENABLED", cls.simulation_enabled),
            seed_demo_data=_env_bool("MISSION_SEED_DEMO_DATA", cls.seed_demo_data),
            state_file=os.getenv("MISSION_STATE_FILE", ""),
            kafka_bootstrap_servers=[s.strip() for s in servers.split(",") if s.strip()]
        )

# ============================================================================
# PART 4: PER-MISSION SERIALIZATION
# ============================================================================

class MissionLockTable:
    """
    asyncio locks keyed by mission id.

    An entry lives only while someone holds or waits on it, so lookups for
    unknown ids leave nothing behind.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, mission_id: int):
        """Use as ``async with locks.hold(id):``"""
        lock = self._locks.get(mission_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[mission_id] = lock
        self._users[mission_id] = self._users.get(mission_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[mission_id] -= 1
            if not self._users[mission_id]:
                del self._users[mission_id]
                del self._locks[mission_id]

    def __len__(self) -> int:
        return len(self._locks)

# ============================================================================
# PART 5: MISSION STATE MACHINE
# ============================================================================

ALLOWED_TRANSITIONS: Dict[MissionStatus, set] = {
    MissionStatus.PLANNED: {MissionStatus.PENDING},
    MissionStatus.PENDING: {MissionStatus.IN_PROGRESS},
    MissionStatus.IN_PROGRESS: {
        MissionStatus.COMPLETED,
        MissionStatus.ABORTED,
        MissionStatus.PAUSED
    },
    MissionStatus.PAUSED: {MissionStatus.IN_PROGRESS},
    MissionStatus.COMPLETED: set(),
    MissionStatus.ABORTED: set(),
}


@dataclass
class TransitionResult:
    mission: Mission
    drone: Optional[Drone] = None
    logs: List[MissionLog] = field(default_factory=list)


def parse_status(value: Any) -> MissionStatus:
    try:
        return MissionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown mission status: {value!r}")


class MissionStateMachine:
    """
    Validates and applies mission status transitions.

    Side effects (timestamps, duration, drone status and flight hours,
    audit log entries) are written through the repository. Every public
    call is serialized on the mission's lock; ``apply`` is for callers that
    already hold it.
    """

    def __init__(self, repository, locks: MissionLockTable,
                 clock: Callable[[], datetime] = datetime.now):
        self.repository = repository
        self.locks = locks
        self.clock = clock

    @staticmethod
    def can_transition(current: MissionStatus, target: MissionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, set())

    async def transition(self, mission_id: int, target: Any) -> TransitionResult:
        """
        Move a mission to ``target``

        Args:
            mission_id: Mission identifier
            target: MissionStatus or its string value

        Returns:
            TransitionResult with the updated mission

        Raises:
            NotFound: unknown mission id
            InvalidTransition: edge not in the transition table
        """
        async with self.locks.hold(mission_id):
            return await self.apply(mission_id, target)

    async def apply(self, mission_id: int, target: Any) -> TransitionResult:
        target = parse_status(target)
        mission = await self.repository.get_mission(mission_id)

        if not self.can_transition(mission.status, target):
            raise InvalidTransition(mission.status, target)

        now = self.clock()
        updates: Dict[str, Any] = {'status': target}
        drone = None
        pending_logs = []

        if target == MissionStatus.IN_PROGRESS:
            if mission.started_at is None:
                updates['started_at'] = now
            if mission.drone_id is not None:
                drone = await self._claim_drone(mission, target)
            if mission.status == MissionStatus.PAUSED:
                pending_logs.append((LogType.START, "Mission resumed"))
            else:
                pending_logs.append((LogType.START, "Mission initiated"))

        elif target in TERMINAL_STATUSES:
            updates['completed_at'] = now
            duration = None
            if mission.started_at is not None:
                duration = int((now - mission.started_at).total_seconds())
                updates['duration'] = duration
            if mission.drone_id is not None:
                drone = await self._release_drone(mission, duration)
            if target == MissionStatus.COMPLETED:
                pending_logs.append((LogType.INFO, "Mission completed"))
            else:
                pending_logs.append((LogType.WARN, "Mission aborted"))

        elif target == MissionStatus.PAUSED:
            pending_logs.append((LogType.INFO, "Mission paused"))

        updated = await self.repository.update_mission_fields(mission_id, **updates)

        logs = []
        for log_type, message in pending_logs:
            logs.append(await self.repository.append_mission_log(
                MissionLog(mission_id=mission_id, log_type=log_type, message=message)
            ))

        logger.info(f"Mission {mission_id}: {mission.status.value} -> {target.value}")
        return TransitionResult(mission=updated, drone=drone, logs=logs)

    async def _claim_drone(self, mission: Mission, target: MissionStatus) -> Optional[Drone]:
        try:
            drone = await self.repository.get_drone(mission.drone_id)
        except NotFound:
            logger.warning(f"Mission {mission.id} references missing drone {mission.drone_id}")
            return None

        already_ours = (drone.status == DroneStatus.ON_MISSION and
                        drone.last_mission == mission.id)
        if drone.status != DroneStatus.AVAILABLE and not already_ours:
            raise InvalidTransition(
                mission.status, target,
                reason=f"drone {drone.id} is {drone.status.value}"
            )

        return await self.repository.update_drone(
            drone.id,
            status=DroneStatus.ON_MISSION,
            last_mission=mission.id
        )

    async def _release_drone(self, mission: Mission, duration: Optional[int]) -> Optional[Drone]:
        try:
            drone = await self.repository.get_drone(mission.drone_id)
        except NotFound:
            logger.warning(f"Mission {mission.id} references missing drone {mission.drone_id}")
            return None

        # duration is the wall time since started_at; never started, nothing flown
        hours = duration / 3600 if duration is not None else 0.0
        return await self.repository.update_drone(
            drone.id,
            status=DroneStatus.AVAILABLE,
            flight_hours=drone.flight_hours + hours
        )

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Survey mission control server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    probe = EngineConfig.from_env().probe_interval
    uvicorn.run(
        "api_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        ws_ping_interval=probe,
        ws_ping_timeout=probe
    )


if __name__ == "__main__":
    main()
