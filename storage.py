# Mission Repository
# File: storage.py

"""
Repository interface consumed by the mission control core, plus the
in-memory implementation used by the server and the tests.
"""

import copy
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import List, Dict, Optional, Any, Callable
import logging

from main import (
    Drone,
    DroneStatus,
    FlightPath,
    LogType,
    Mission,
    MissionLog,
    MissionStatus,
    NotFound,
    Telemetry,
    ValidationError,
)

logger = logging.getLogger(__name__)

DRONE_FIELDS = {f.name for f in dataclass_fields(Drone)} - {'id'}
MISSION_FIELDS = {f.name for f in dataclass_fields(Mission)} - {'id'}

# ============================================================================
# REPOSITORY INTERFACE
# ============================================================================

class MissionRepository(ABC):
    """Narrow storage interface; the only suspension point of the core"""

    @abstractmethod
    async def get_drone(self, drone_id: int) -> Drone: ...

    @abstractmethod
    async def list_drones(self) -> List[Drone]: ...

    @abstractmethod
    async def update_drone(self, drone_id: int, **partial) -> Drone: ...

    @abstractmethod
    async def get_mission(self, mission_id: int) -> Mission: ...

    @abstractmethod
    async def list_missions(self) -> List[Mission]: ...

    @abstractmethod
    async def list_missions_by_status(self, status: MissionStatus) -> List[Mission]: ...

    @abstractmethod
    async def update_mission_fields(self, mission_id: int, **partial) -> Mission: ...

    @abstractmethod
    async def append_telemetry(self, sample: Telemetry) -> Telemetry: ...

    @abstractmethod
    async def append_mission_log(self, entry: MissionLog) -> MissionLog: ...

    # CRUD used by the REST layer and seeding

    @abstractmethod
    async def create_drone(self, **fields) -> Drone: ...

    @abstractmethod
    async def delete_drone(self, drone_id: int) -> None: ...

    @abstractmethod
    async def create_mission(self, **fields) -> Mission: ...

    @abstractmethod
    async def list_telemetry(self, mission_id: int) -> List[Telemetry]: ...

    @abstractmethod
    async def list_mission_logs(self, mission_id: int) -> List[MissionLog]: ...

# ============================================================================
# IN-MEMORY REPOSITORY
# ============================================================================

def _coerce_path(value: Any) -> Optional[FlightPath]:
    if value is None:
        return None
    return FlightPath.from_geojson(value)


class MemoryRepository(MissionRepository):
    """
    Dict-backed repository with auto-increment ids.

    Every read returns a deep copy so no caller can hold the stored object.
    When ``persist_path`` is set the full state is written as JSON after
    each mutation.
    """

    def __init__(self, persist_path: Optional[str] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.drones: Dict[int, Drone] = {}
        self.missions: Dict[int, Mission] = {}
        self.telemetry: Dict[int, Telemetry] = {}
        self.mission_logs: Dict[int, MissionLog] = {}
        self._next_ids = {'drone': 1, 'mission': 1, 'telemetry': 1, 'log': 1}
        self.state_lock = threading.Lock()
        self.persist_path = persist_path
        self.clock = clock

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    # --- drones -------------------------------------------------------------

    async def get_drone(self, drone_id: int) -> Drone:
        with self.state_lock:
            drone = self.drones.get(drone_id)
            if drone is None:
                raise NotFound("Drone", drone_id)
            return copy.deepcopy(drone)

    async def list_drones(self) -> List[Drone]:
        with self.state_lock:
            return [copy.deepcopy(d) for d in self.drones.values()]

    async def create_drone(self, **fields) -> Drone:
        unknown = set(fields) - DRONE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown drone fields: {sorted(unknown)}")
        fields['status'] = DroneStatus(fields.get('status', DroneStatus.AVAILABLE))
        self._check_battery(fields.get('current_battery_level', 0))

        with self.state_lock:
            drone = Drone(id=self._next_id('drone'), **fields)
            self.drones[drone.id] = drone
            result = copy.deepcopy(drone)
        self._persist_state()
        logger.info(f"Drone registered: {drone.id} ({drone.name})")
        return result

    async def update_drone(self, drone_id: int, **partial) -> Drone:
        unknown = set(partial) - DRONE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown drone fields: {sorted(unknown)}")
        if 'status' in partial:
            partial['status'] = DroneStatus(partial['status'])
        if 'current_battery_level' in partial:
            self._check_battery(partial['current_battery_level'])
        if partial.get('flight_hours', 0) < 0:
            raise ValidationError("Flight hours cannot be negative")

        with self.state_lock:
            drone = self.drones.get(drone_id)
            if drone is None:
                raise NotFound("Drone", drone_id)
            for key, value in partial.items():
                setattr(drone, key, value)
            result = copy.deepcopy(drone)
        self._persist_state()
        return result

    async def delete_drone(self, drone_id: int) -> None:
        with self.state_lock:
            if self.drones.pop(drone_id, None) is None:
                raise NotFound("Drone", drone_id)
        self._persist_state()
        logger.info(f"Drone removed: {drone_id}")

    @staticmethod
    def _check_battery(level: float):
        if not 0 <= level <= 100:
            raise ValidationError(f"Battery level must be within 0-100, got {level}")

    # --- missions -----------------------------------------------------------

    async def get_mission(self, mission_id: int) -> Mission:
        with self.state_lock:
            mission = self.missions.get(mission_id)
            if mission is None:
                raise NotFound("Mission", mission_id)
            return copy.deepcopy(mission)

    async def list_missions(self) -> List[Mission]:
        with self.state_lock:
            return [copy.deepcopy(m) for m in self.missions.values()]

    async def list_missions_by_status(self, status: MissionStatus) -> List[Mission]:
        status = MissionStatus(status)
        with self.state_lock:
            return [copy.deepcopy(m) for m in self.missions.values() if m.status == status]

    async def create_mission(self, **fields) -> Mission:
        unknown = set(fields) - MISSION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown mission fields: {sorted(unknown)}")
        fields['status'] = MissionStatus(fields.get('status', MissionStatus.PLANNED))
        fields['flight_path'] = _coerce_path(fields.get('flight_path'))
        fields['actual_path'] = _coerce_path(fields.get('actual_path'))
        fields.setdefault('created_at', self.clock())
        self._check_paths(fields['flight_path'], fields['actual_path'])

        with self.state_lock:
            mission = Mission(id=self._next_id('mission'), **fields)
            self.missions[mission.id] = mission
            result = copy.deepcopy(mission)
        self._persist_state()
        logger.info(f"Mission created: {mission.id} ({mission.name})")
        return result

    async def update_mission_fields(self, mission_id: int, **partial) -> Mission:
        unknown = set(partial) - MISSION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown mission fields: {sorted(unknown)}")
        if 'status' in partial:
            partial['status'] = MissionStatus(partial['status'])
        for key in ('flight_path', 'actual_path'):
            if key in partial:
                partial[key] = _coerce_path(partial[key])
        if 'progress' in partial and not 0 <= partial['progress'] <= 100:
            raise ValidationError(f"Progress must be within 0-100, got {partial['progress']}")

        with self.state_lock:
            mission = self.missions.get(mission_id)
            if mission is None:
                raise NotFound("Mission", mission_id)
            self._check_paths(
                partial.get('flight_path', mission.flight_path),
                partial.get('actual_path', mission.actual_path)
            )
            for key, value in partial.items():
                setattr(mission, key, value)
            result = copy.deepcopy(mission)
        self._persist_state()
        return result

    @staticmethod
    def _check_paths(flight_path: Optional[FlightPath], actual_path: Optional[FlightPath]):
        if actual_path is None:
            return
        planned = len(flight_path) if flight_path else 0
        if len(actual_path) > planned:
            raise ValidationError(
                f"Actual path has {len(actual_path)} points, planned path only {planned}"
            )

    # --- telemetry & logs ---------------------------------------------------

    async def append_telemetry(self, sample: Telemetry) -> Telemetry:
        with self.state_lock:
            if sample.mission_id not in self.missions:
                raise NotFound("Mission", sample.mission_id)
            stored = copy.deepcopy(sample)
            stored.id = self._next_id('telemetry')
            stored.timestamp = stored.timestamp or self.clock()
            self.telemetry[stored.id] = stored
            result = copy.deepcopy(stored)
        self._persist_state()
        return result

    async def list_telemetry(self, mission_id: int) -> List[Telemetry]:
        with self.state_lock:
            samples = [copy.deepcopy(t) for t in self.telemetry.values()
                       if t.mission_id == mission_id]
        return sorted(samples, key=lambda t: (t.timestamp, t.id), reverse=True)

    async def append_mission_log(self, entry: MissionLog) -> MissionLog:
        if not entry.message:
            raise ValidationError("Log message is required")
        with self.state_lock:
            if entry.mission_id not in self.missions:
                raise NotFound("Mission", entry.mission_id)
            stored = copy.deepcopy(entry)
            stored.log_type = LogType(stored.log_type)
            stored.id = self._next_id('log')
            stored.timestamp = stored.timestamp or self.clock()
            self.mission_logs[stored.id] = stored
            result = copy.deepcopy(stored)
        self._persist_state()
        return result

    async def list_mission_logs(self, mission_id: int) -> List[MissionLog]:
        with self.state_lock:
            logs = [copy.deepcopy(l) for l in self.mission_logs.values()
                    if l.mission_id == mission_id]
        return sorted(logs, key=lambda l: (l.timestamp, l.id), reverse=True)

    # --- persistence --------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """JSON-ready view of the full state"""
        with self.state_lock:
            return {
                'drones': [d.to_dict() for d in self.drones.values()],
                'missions': [m.to_dict() for m in self.missions.values()],
                'telemetry': [t.to_dict() for t in self.telemetry.values()],
                'missionLogs': [l.to_dict() for l in self.mission_logs.values()],
            }

    def _persist_state(self):
        """Write state snapshot to ``persist_path`` when enabled"""
        if not self.persist_path:
            return
        try:
            with open(self.persist_path, 'w') as f:
                json.dump(self.snapshot(), f, default=str, indent=2)
        except OSError as e:
            logger.error(f"State persistence error: {e}")
