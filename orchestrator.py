# Mission Control Engine - Server Context
# File: orchestrator.py

"""
The explicit server context: owns the repository, the mission lock table,
the state machine, the broadcaster and the periodic tasks. Built once at
process start and handed to every component that needs it.
"""

import asyncio
import random
from datetime import datetime
from typing import List, Dict, Optional, Any, Callable, Tuple
import logging

from main import (
    DroneStatus,
    EngineConfig,
    FlightPath,
    InvalidTransition,
    LogType,
    Mission,
    MissionLockTable,
    MissionLog,
    MissionStateMachine,
    MissionStatus,
    NotFound,
    Telemetry,
    TransitionResult,
    ValidationError,
)
from storage import MissionRepository, MemoryRepository
from broadcaster import Broadcaster, LivenessMonitor
from simulators import (
    FleetDriftSimulator,
    MissionAdvancer,
    MissionDispatcher,
    PeriodicTask,
    ProgressSimulator,
    RandomSelectionPolicy,
    SelectionPolicy,
    SimulatedAdvancer,
)
from monitoring import MetricsCollector, HealthMonitor
from kafka_integration import MissionKafkaBridge
from seed_data import seed_repository

logger = logging.getLogger(__name__)

# ============================================================================
# MISSION CONTROL ENGINE
# ============================================================================

class MissionControlEngine:
    """
    Central coordinator for mission lifecycle and update distribution.

    Every mutation of a mission's status, progress or path goes through the
    mission's lock in ``self.locks``; broadcasts are issued after the lock
    is released.
    """

    def __init__(self,
                 repository: Optional[MissionRepository] = None,
                 config: Optional[EngineConfig] = None,
                 advancer: Optional[MissionAdvancer] = None,
                 selection_policy: Optional[SelectionPolicy] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config or EngineConfig()
        self.repository = repository or MemoryRepository(
            persist_path=self.config.state_file or None,
            clock=clock
        )
        self.clock = clock
        self.rng = rng or random.Random()

        self.locks = MissionLockTable()
        self.state_machine = MissionStateMachine(self.repository, self.locks, clock=clock)
        self.metrics = MetricsCollector()
        self.broadcaster = Broadcaster(self.repository)
        self.broadcaster.add_listener(self._record_event)

        self.advancer = advancer or SimulatedAdvancer(self.config, self.rng)
        self.progress_simulator = ProgressSimulator(self, self.advancer)
        self.fleet_drift = FleetDriftSimulator(self, self.config, self.rng)
        self.dispatcher = MissionDispatcher(
            self, self.config, selection_policy or RandomSelectionPolicy(self.rng)
        )
        self.liveness = LivenessMonitor(self.broadcaster)

        self.periodic_tasks: List[PeriodicTask] = [
            PeriodicTask('progress', self.config.progress_interval,
                         self.progress_simulator.tick, self.metrics),
            PeriodicTask('fleet_drift', self.config.drift_interval,
                         self.fleet_drift.tick, self.metrics),
            PeriodicTask('dispatcher', self.config.dispatch_interval,
                         self.dispatcher.tick, self.metrics),
        ]
        self.liveness_task = PeriodicTask('liveness', self.config.probe_interval,
                                          self.liveness.probe, self.metrics)

        self.health_monitor = HealthMonitor(self)
        self.kafka_bridge: Optional[MissionKafkaBridge] = None

        self.status = "initialized"
        self.start_time: Optional[datetime] = None
        logger.info("Mission control engine initialized")

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    async def start(self):
        if self.status == "running":
            logger.warning("Engine already running")
            return

        if self.config.seed_demo_data:
            if not await self.repository.list_missions():
                await seed_repository(self.repository)

        if self.config.kafka_bootstrap_servers and self.kafka_bridge is None:
            try:
                self.kafka_bridge = MissionKafkaBridge.connect(
                    self.config.kafka_bootstrap_servers
                )
                self.broadcaster.add_listener(self.kafka_bridge.handle_event)
            except Exception as e:
                logger.error(f"Kafka mirror disabled: {e}")

        if self.config.simulation_enabled:
            for task in self.periodic_tasks:
                task.start()
        else:
            logger.info("Simulation disabled; periodic simulators not started")
        self.liveness_task.start()

        self.status = "running"
        self.start_time = self.clock()
        logger.info("Mission control engine started")

    async def stop(self):
        for task in self.periodic_tasks + [self.liveness_task]:
            await task.stop()

        for channel in self.broadcaster.channels:
            self.broadcaster.disconnect(channel)
            await channel.close(flush_timeout=0.5)

        if self.kafka_bridge:
            await asyncio.to_thread(self.kafka_bridge.close)
            self.kafka_bridge = None

        self.status = "stopped"
        logger.info("Mission control engine stopped")

    # ------------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------------

    async def change_status(self, mission_id: int, target: Any) -> Mission:
        """Transition a mission and broadcast the result"""
        result = await self.state_machine.transition(mission_id, target)
        await self.publish_transition(result)
        return result.mission

    async def publish_transition(self, result: TransitionResult,
                                 extra_logs: Optional[List[MissionLog]] = None):
        self.metrics.record_counter(
            'mission_transitions_total', labels={'status': result.mission.status.value}
        )
        await self.broadcaster.broadcast_mission_update(result.mission.id)
        for log in result.logs + (extra_logs or []):
            self.broadcaster.broadcast_mission_log(log)
        if result.drone is not None:
            self.broadcaster.broadcast_fleet_event(
                {'type': 'drone:update', 'drone': result.drone.to_dict()}
            )

    async def start_mission(self, mission_id: int, drone_id: int) -> Mission:
        """
        Assign a drone to a pending mission and put it in flight

        Raises:
            NotFound: unknown mission or drone
            InvalidTransition: mission not startable or drone not Available
        """
        async with self.locks.hold(mission_id):
            mission = await self.repository.get_mission(mission_id)
            if not self.state_machine.can_transition(mission.status, MissionStatus.IN_PROGRESS):
                raise InvalidTransition(mission.status, MissionStatus.IN_PROGRESS)

            drone = await self.repository.get_drone(drone_id)
            if drone.status != DroneStatus.AVAILABLE:
                raise InvalidTransition(
                    mission.status, MissionStatus.IN_PROGRESS,
                    reason=f"drone {drone.id} is {drone.status.value}"
                )

            await self.repository.update_mission_fields(mission_id, drone_id=drone_id)
            result = await self.state_machine.apply(mission_id, MissionStatus.IN_PROGRESS)
            started_log = await self.repository.append_mission_log(MissionLog(
                mission_id=mission_id,
                log_type=LogType.INFO,
                message=f"Mission started with drone {drone.name}"
            ))

        logger.info(f"Dispatched mission {mission_id} on drone {drone.name}")
        await self.publish_transition(result, extra_logs=[started_log])
        self.broadcaster.broadcast_fleet_event({'type': 'mission:started', 'missionId': mission_id})
        return result.mission

    # ------------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------------

    async def apply_progress(self, mission: Mission, new_progress: float,
                             actual_path: Optional[FlightPath]
                             ) -> Tuple[Mission, Optional[TransitionResult]]:
        """
        Persist progress and path, completing the mission at the threshold.

        Caller must hold the mission's lock. Progress never decreases and is
        clamped to 100.
        """
        progress = max(mission.progress, min(100.0, new_progress))
        updates: Dict[str, Any] = {'progress': progress}
        if actual_path is not None:
            updates['actual_path'] = actual_path

        mission = await self.repository.update_mission_fields(mission.id, **updates)

        completion = None
        if (mission.status == MissionStatus.IN_PROGRESS and
                progress >= self.config.completion_threshold):
            completion = await self.state_machine.apply(mission.id, MissionStatus.COMPLETED)
            mission = completion.mission
            logger.info(f"Mission {mission.id} reached {progress}% and completed")

        return mission, completion

    async def publish_progress(self, mission: Mission, logs: List[MissionLog],
                               completion: Optional[TransitionResult] = None):
        self.metrics.record_gauge('mission_progress', mission.progress,
                                  labels={'mission': str(mission.id)})
        await self.broadcaster.broadcast_mission_update(mission.id)
        for log in logs:
            self.broadcaster.broadcast_mission_log(log)
        if completion is not None:
            self.metrics.record_counter(
                'mission_transitions_total', labels={'status': MissionStatus.COMPLETED.value}
            )
            for log in completion.logs:
                self.broadcaster.broadcast_mission_log(log)
            if completion.drone is not None:
                self.broadcaster.broadcast_fleet_event(
                    {'type': 'drone:update', 'drone': completion.drone.to_dict()}
                )

    async def update_progress(self, mission_id: int, progress: float,
                              actual_path: Any = None) -> Mission:
        """Manual progress update (REST)"""
        if not 0 <= progress <= 100:
            raise ValidationError(f"Progress must be within 0-100, got {progress}")
        path = FlightPath.from_geojson(actual_path) if actual_path is not None else None

        async with self.locks.hold(mission_id):
            mission = await self.repository.get_mission(mission_id)
            if mission.is_terminal:
                raise ValidationError(f"Mission {mission_id} is {mission.status.value}")
            if progress < mission.progress:
                raise ValidationError(
                    f"Progress cannot decrease ({mission.progress} -> {progress})"
                )
            mission, completion = await self.apply_progress(mission, progress, path)

        await self.publish_progress(mission, [], completion)
        return mission

    # ------------------------------------------------------------------------
    # Telemetry & logs
    # ------------------------------------------------------------------------

    async def submit_telemetry(self, sample: Telemetry,
                               actual_path: Any = None) -> Telemetry:
        """
        Ingest an externally reported telemetry sample

        Args:
            sample: Telemetry for an existing mission
            actual_path: Optional GeoJSON LineString of the path flown so far

        Raises:
            NotFound: unknown mission
            ValidationError: malformed or over-long actual path
        """
        path = FlightPath.from_geojson(actual_path) if actual_path is not None else None

        async with self.locks.hold(sample.mission_id):
            mission = await self.repository.get_mission(sample.mission_id)
            if path is not None:
                planned = len(mission.flight_path) if mission.flight_path else 0
                if len(path) > planned:
                    raise ValidationError(
                        f"Actual path has {len(path)} points, planned path only {planned}"
                    )

            stored = await self.repository.append_telemetry(sample)
            self.metrics.record_counter('telemetry_samples_total', labels={'source': 'channel'})

            completion = None
            if mission.status == MissionStatus.IN_PROGRESS:
                mission, completion = await self.apply_progress(
                    mission,
                    mission.progress + self.config.progress_increment,
                    path
                )
            elif path is not None:
                logger.warning(
                    f"Telemetry for mission {mission.id} in {mission.status.value}; path ignored"
                )

        await self.publish_progress(mission, [], completion)
        return stored

    async def append_log(self, mission_id: int, log_type: Any, message: str) -> MissionLog:
        try:
            log_type = LogType(log_type)
        except ValueError:
            raise ValidationError(f"Unknown log type: {log_type!r}")

        log = await self.repository.append_mission_log(
            MissionLog(mission_id=mission_id, log_type=log_type, message=message)
        )
        self.broadcaster.broadcast_mission_log(log)
        return log

    async def active_missions(self) -> List[Mission]:
        return await self.repository.list_missions_by_status(MissionStatus.IN_PROGRESS)

    async def _pick_active_mission(self) -> Mission:
        missions = await self.active_missions()
        if not missions:
            raise NotFound("Mission", "with status In Progress")
        return self.rng.choice(missions)

    async def simulate_telemetry(self) -> Telemetry:
        """One random on-path sample for a random active mission"""
        mission = await self._pick_active_mission()
        path = mission.flight_path
        if not path or not mission.altitude:
            raise ValidationError(f"Mission {mission.id} missing valid flight path or altitude")

        index = self.rng.randrange(len(path))
        point = path.points[index]
        return await self.repository.append_telemetry(Telemetry(
            mission_id=mission.id,
            altitude=mission.altitude,
            speed=mission.speed or self.config.default_speed,
            battery_level=max(self.config.battery_floor, 100 - mission.progress),
            latitude=point.lat,
            longitude=point.lng,
            distance_traveled=round(path.length_m(index), 1),
            signal_strength=self.rng.randint(
                self.config.signal_strength_min, self.config.signal_strength_max
            )
        ))

    async def simulate_log(self, message: Optional[str] = None) -> MissionLog:
        mission = await self._pick_active_mission()
        return await self.append_log(mission.id, LogType.INFO, message or "Simulated log entry")

    # ------------------------------------------------------------------------
    # Status & metrics
    # ------------------------------------------------------------------------

    def _record_event(self, event: Dict[str, Any]):
        self.metrics.record_counter('broadcast_events_total',
                                    labels={'type': event.get('type', 'unknown')})

    def record_channel_count(self):
        self.metrics.record_gauge('connected_channels', len(self.broadcaster.channels))

    async def get_status(self) -> Dict[str, Any]:
        missions = await self.repository.list_missions()
        drones = await self.repository.list_drones()

        by_status: Dict[str, int] = {}
        for mission in missions:
            by_status[mission.status.value] = by_status.get(mission.status.value, 0) + 1

        fleet: Dict[str, int] = {}
        for drone in drones:
            fleet[drone.status.value] = fleet.get(drone.status.value, 0) + 1

        uptime = (self.clock() - self.start_time).total_seconds() if self.start_time else 0

        return {
            'status': self.status,
            'uptime_seconds': uptime,
            'simulation_enabled': self.config.simulation_enabled,
            'missions': {'total': len(missions), 'by_status': by_status},
            'drones': {'total': len(drones), 'by_status': fleet},
            'channels': len(self.broadcaster.channels),
            'periodic_tasks': {
                t.name: {'running': t.running, 'ticks': t.tick_count, 'last_error': t.last_error}
                for t in self.periodic_tasks + [self.liveness_task]
            },
            'kafka_enabled': self.kafka_bridge is not None
        }
