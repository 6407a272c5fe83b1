# Periodic Simulators - Progress, Fleet Drift, Dispatch
# File: simulators.py

"""
Periodic processes that drive missions and the fleet forward.

Each tick re-reads current state from the repository before mutating it
and processes items independently: a failure on one mission or drone is
logged and the tick carries on with the rest.
"""

import asyncio
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Callable, Awaitable
import logging

from main import (
    Drone,
    DroneStatus,
    EngineConfig,
    FlightPath,
    LogType,
    Mission,
    MissionLog,
    MissionStatus,
    Telemetry,
)

logger = logging.getLogger(__name__)

# ============================================================================
# PERIODIC TASK RUNNER
# ============================================================================

class PeriodicTask:
    """Run ``tick`` every ``interval`` seconds until stopped"""

    def __init__(self, name: str, interval: float,
                 tick: Callable[[], Awaitable[object]], metrics=None):
        self.name = name
        self.interval = interval
        self.tick = tick
        self.metrics = metrics
        self.tick_count = 0
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            logger.warning(f"Periodic task {self.name} already running")
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic-{self.name}")
        logger.info(f"Periodic task {self.name} started (every {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task {self.name} stopped")

    async def run_once(self):
        started = time.perf_counter()
        try:
            await self.tick()
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Abandon this tick; the next scheduled one retries
            self.last_error = str(e)
            logger.error(f"{self.name} tick failed: {e}")
            if self.metrics:
                self.metrics.record_counter('tick_errors_total', labels={'task': self.name})
        finally:
            self.tick_count += 1
            if self.metrics:
                self.metrics.record_histogram(
                    'tick_duration_ms',
                    (time.perf_counter() - started) * 1000,
                    labels={'task': self.name}
                )

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

# ============================================================================
# MISSION ADVANCEMENT STRATEGY
# ============================================================================

@dataclass
class Advance:
    """One step of a mission along its path"""
    new_progress: float
    actual_path: FlightPath
    telemetry: Optional[Telemetry] = None
    logs: List[MissionLog] = field(default_factory=list)
    path_index: int = 0


class MissionAdvancer(ABC):
    """Source of mission movement: the simulator or a real telemetry feed"""

    @abstractmethod
    def advance(self, mission: Mission) -> Optional[Advance]:
        """Next step for an in-progress mission, or None to leave it untouched"""


class SimulatedAdvancer(MissionAdvancer):
    """Walk the planned path at a fixed progress increment per tick"""

    def __init__(self, config: EngineConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()

    def advance(self, mission: Mission) -> Optional[Advance]:
        path = mission.flight_path
        if path is None or len(path) == 0:
            return None

        total = len(path)
        points_to_complete = math.floor(total * mission.progress / 100)
        next_point = min(points_to_complete + 1, total - 1)
        point = path.points[next_point]

        telemetry = Telemetry(
            mission_id=mission.id,
            altitude=mission.altitude or self.config.default_altitude,
            speed=mission.speed or self.config.default_speed,
            battery_level=max(self.config.telemetry_battery_floor, 100 - mission.progress),
            latitude=point.lat,
            longitude=point.lng,
            distance_traveled=round(path.length_m(next_point), 1),
            signal_strength=self.rng.randint(
                self.config.signal_strength_min,
                self.config.signal_strength_max
            )
        )

        new_progress = min(100.0, mission.progress + self.config.progress_increment)

        logs = []
        section = math.floor(new_progress / 25)
        if section > math.floor(mission.progress / 25):
            logs.append(MissionLog(
                mission_id=mission.id,
                log_type=LogType.INFO,
                message=f"Completed survey section {section}/4"
            ))

        return Advance(
            new_progress=new_progress,
            actual_path=path.prefix(next_point + 1),
            telemetry=telemetry,
            logs=logs,
            path_index=next_point
        )

# ============================================================================
# PROGRESS SIMULATOR
# ============================================================================

class ProgressSimulator:
    """Advance every in-progress mission one step per tick"""

    def __init__(self, engine, advancer: MissionAdvancer):
        self.engine = engine
        self.advancer = advancer

    async def tick(self) -> int:
        missions = await self.engine.repository.list_missions_by_status(MissionStatus.IN_PROGRESS)
        advanced = 0
        for mission in missions:
            try:
                if await self.advance_mission(mission.id) is not None:
                    advanced += 1
            except Exception as e:
                logger.error(f"Progress update failed for mission {mission.id}: {e}")
        return advanced

    async def advance_mission(self, mission_id: int) -> Optional[Mission]:
        """
        Move one mission along its path

        Returns:
            Updated mission, or None when the mission was skipped
        """
        engine = self.engine
        repository = engine.repository

        async with engine.locks.hold(mission_id):
            mission = await repository.get_mission(mission_id)
            if mission.status != MissionStatus.IN_PROGRESS:
                return None

            step = self.advancer.advance(mission)
            if step is None:
                return None

            if step.telemetry is not None:
                await repository.append_telemetry(step.telemetry)
                engine.metrics.record_counter('telemetry_samples_total', labels={'source': 'simulator'})

            logs = [await repository.append_mission_log(entry) for entry in step.logs]
            mission, completion = await engine.apply_progress(
                mission, step.new_progress, step.actual_path
            )

        await engine.publish_progress(mission, logs, completion)
        return mission

# ============================================================================
# FLEET DRIFT SIMULATOR
# ============================================================================

class FleetDriftSimulator:
    """Slowly drain idle drones' batteries"""

    def __init__(self, engine, config: EngineConfig, rng: Optional[random.Random] = None):
        self.engine = engine
        self.config = config
        self.rng = rng or random.Random()

    async def tick(self) -> int:
        drones = await self.engine.repository.list_drones()
        drained = 0
        for drone in drones:
            if drone.status != DroneStatus.AVAILABLE or drone.current_battery_level <= 0:
                continue
            try:
                if await self.drain(drone.id) is not None:
                    drained += 1
            except Exception as e:
                logger.error(f"Battery drift failed for drone {drone.id}: {e}")
        return drained

    async def drain(self, drone_id: int) -> Optional[Drone]:
        repository = self.engine.repository
        drone = await repository.get_drone(drone_id)
        if drone.status != DroneStatus.AVAILABLE or drone.current_battery_level <= 0:
            return None

        amount = self.rng.random() * self.config.drift_max
        if amount <= self.config.drift_threshold:
            return None

        level = drone.current_battery_level
        floor = min(self.config.battery_floor, level)
        new_level = max(floor, round(level - amount, 2), 0.0)
        if new_level >= level:
            return None

        drone = await repository.update_drone(drone_id, current_battery_level=new_level)
        self.engine.broadcaster.broadcast_fleet_event({'type': 'drone:update', 'drone': drone.to_dict()})
        return drone

# ============================================================================
# MISSION DISPATCHER
# ============================================================================

class SelectionPolicy(ABC):
    """Choose which pending mission starts on which qualifying drone"""

    @abstractmethod
    def select(self, missions: List[Mission], drones: List[Drone]) -> Tuple[Mission, Drone]:
        ...


class RandomSelectionPolicy(SelectionPolicy):
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def select(self, missions: List[Mission], drones: List[Drone]) -> Tuple[Mission, Drone]:
        return self.rng.choice(missions), self.rng.choice(drones)


class MissionDispatcher:
    """Start a pending mission whenever nothing is flying"""

    def __init__(self, engine, config: EngineConfig, policy: Optional[SelectionPolicy] = None):
        self.engine = engine
        self.config = config
        self.policy = policy or RandomSelectionPolicy()

    async def tick(self) -> Optional[Mission]:
        repository = self.engine.repository

        active = await repository.list_missions_by_status(MissionStatus.IN_PROGRESS)
        if active:
            return None

        pending = await repository.list_missions_by_status(MissionStatus.PENDING)
        if not pending:
            return None

        drones = [
            d for d in await repository.list_drones()
            if d.status == DroneStatus.AVAILABLE
            and d.current_battery_level > self.config.dispatch_min_battery
        ]
        if not drones:
            logger.info(f"{len(pending)} pending missions but no drone is ready")
            return None

        mission, drone = self.policy.select(pending, drones)
        return await self.engine.start_mission(mission.id, drone.id)
