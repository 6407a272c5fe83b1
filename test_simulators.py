# Progress, fleet drift and dispatch tests
# File: test_simulators.py

import asyncio
import random

import pytest

from main import (
    DroneStatus,
    EngineConfig,
    MissionStatus,
    NotFound,
    Telemetry,
    TransientStorageError,
)
from storage import MemoryRepository
from orchestrator import MissionControlEngine
from simulators import PeriodicTask, SelectionPolicy, SimulatedAdvancer
from conftest import FakeChannel, FixedRandom, YieldingRepository, add_drone, add_mission

S = MissionStatus


# ============================================================================
# ADVANCER
# ============================================================================

def test_advancer_ten_point_path_at_seventy_percent(repository):
    async def scenario():
        mission = await add_mission(repository, status=S.IN_PROGRESS, progress=70)
        advancer = SimulatedAdvancer(EngineConfig(), random.Random(3))

        step = advancer.advance(mission)

        point = mission.flight_path.points[8]
        assert step.path_index == 8
        assert step.new_progress == 70.5
        assert len(step.actual_path) == 9
        assert step.actual_path.points[-1] == point
        assert (step.telemetry.latitude, step.telemetry.longitude) == (point.lat, point.lng)
        assert step.telemetry.battery_level == 30
        assert step.telemetry.altitude == 80
        assert step.telemetry.speed == 5
        assert 80 <= step.telemetry.signal_strength <= 100
        assert step.telemetry.distance_traveled == round(mission.flight_path.length_m(8), 1)
        assert step.logs == []
    asyncio.run(scenario())


def test_advancer_logs_section_crossing(repository):
    async def scenario():
        mission = await add_mission(repository, status=S.IN_PROGRESS, progress=74.5,
                                    altitude=40, speed=3)
        step = SimulatedAdvancer(EngineConfig()).advance(mission)
        assert step.new_progress == 75
        assert [l.message for l in step.logs] == ["Completed survey section 3/4"]
        assert step.telemetry.altitude == 40
        assert step.telemetry.speed == 3
        assert step.telemetry.battery_level == 25.5
    asyncio.run(scenario())


def test_advancer_stays_on_last_point(repository):
    async def scenario():
        mission = await add_mission(repository, points=4, status=S.IN_PROGRESS, progress=99)
        step = SimulatedAdvancer(EngineConfig()).advance(mission)
        assert step.path_index == 3
        assert len(step.actual_path) == 4
    asyncio.run(scenario())


def test_advancer_skips_missing_path(repository):
    async def scenario():
        mission = await add_mission(repository, points=0, status=S.IN_PROGRESS)
        assert SimulatedAdvancer(EngineConfig()).advance(mission) is None
    asyncio.run(scenario())

# ============================================================================
# PROGRESS SIMULATOR
# ============================================================================

def test_progress_tick_appends_one_sample(engine, repository):
    async def scenario():
        mission = await add_mission(repository, status=S.IN_PROGRESS, progress=70)

        assert await engine.progress_simulator.tick() == 1

        updated = await repository.get_mission(mission.id)
        samples = await repository.list_telemetry(mission.id)
        assert updated.progress == 70.5
        assert len(updated.actual_path) == 9
        assert len(samples) == 1
        assert samples[0].latitude == mission.flight_path.points[8].lat
    asyncio.run(scenario())


def test_progress_never_decreases(engine, repository):
    async def scenario():
        mission = await add_mission(repository, status=S.IN_PROGRESS, progress=10)
        seen = []
        for _ in range(6):
            await engine.progress_simulator.tick()
            current = await repository.get_mission(mission.id)
            seen.append(current.progress)
            assert len(current.actual_path) <= len(current.flight_path)
        assert seen == sorted(seen)
        assert seen[-1] == 13
    asyncio.run(scenario())


def test_completion_happens_in_the_same_tick(engine, repository, clock):
    async def scenario():
        drone = await add_drone(repository, status="On Mission", flight_hours=5.0)
        mission = await add_mission(
            repository, status=S.IN_PROGRESS, progress=99.7,
            drone_id=drone.id, started_at=clock.now
        )
        await repository.update_drone(drone.id, last_mission=mission.id)
        watcher = FakeChannel("watcher")
        bystander = FakeChannel("bystander")
        engine.broadcaster.connect(bystander)
        await engine.broadcaster.subscribe(watcher, mission.id)
        clock.advance(90)

        await engine.progress_simulator.tick()

        finished = await repository.get_mission(mission.id)
        released = await repository.get_drone(drone.id)
        assert finished.status == S.COMPLETED
        assert finished.progress == 100
        assert finished.duration == 90
        assert released.status == DroneStatus.AVAILABLE
        assert released.flight_hours == pytest.approx(5.0 + 90 / 3600)

        # the broadcast after the tick already carries the completed state
        updates = watcher.of_type('mission:update')
        assert updates[-1]['mission']['status'] == "Completed"
        assert [e['log']['message'] for e in watcher.of_type('mission:log')] == [
            "Completed survey section 4/4", "Mission completed"
        ]
        assert bystander.of_type('mission:update') == []
        assert bystander.of_type('drone:update')[0]['drone']['status'] == "Available"
    asyncio.run(scenario())


def test_skips_missions_without_path(engine, repository):
    async def scenario():
        mission = await add_mission(repository, points=0, status=S.IN_PROGRESS, progress=20)
        assert await engine.progress_simulator.tick() == 0
        assert (await repository.get_mission(mission.id)).progress == 20
        assert await repository.list_telemetry(mission.id) == []
    asyncio.run(scenario())


class FlakyRepository(MemoryRepository):
    """Telemetry writes for one mission always fail"""

    def __init__(self, broken_mission_id, **kwargs):
        super().__init__(**kwargs)
        self.broken_mission_id = broken_mission_id

    async def append_telemetry(self, sample):
        if sample.mission_id == self.broken_mission_id:
            raise TransientStorageError("write timed out")
        return await super().append_telemetry(sample)


def test_one_failing_mission_does_not_stop_the_rest(config):
    repository = FlakyRepository(broken_mission_id=1)
    engine = MissionControlEngine(repository=repository, config=config)

    async def scenario():
        broken = await add_mission(repository, name="broken", status=S.IN_PROGRESS, progress=10)
        healthy = await add_mission(repository, name="healthy", status=S.IN_PROGRESS, progress=10)
        assert broken.id == 1

        assert await engine.progress_simulator.tick() == 1

        assert (await repository.get_mission(broken.id)).progress == 10
        assert (await repository.get_mission(healthy.id)).progress == 10.5
    asyncio.run(scenario())

# ============================================================================
# FLEET DRIFT
# ============================================================================

def test_drift_never_drains_below_floor(repository, config, clock):
    engine = MissionControlEngine(repository=repository, config=config,
                                  rng=FixedRandom(0.98), clock=clock)

    async def scenario():
        drone = await add_drone(repository, battery=15)
        levels = []
        for _ in range(30):
            await engine.fleet_drift.tick()
            levels.append((await repository.get_drone(drone.id)).current_battery_level)
        assert min(levels) == 10
        assert levels == sorted(levels, reverse=True)
    asyncio.run(scenario())


def test_drift_skips_small_draws_and_busy_drones(engine, repository):
    async def scenario():
        idle = await add_drone(repository, name="idle", battery=50)
        charging = await add_drone(repository, name="charging", battery=50, status="Charging")

        engine.fleet_drift.rng = FixedRandom(0.5)  # 0.25 drain, under threshold
        assert await engine.fleet_drift.tick() == 0

        engine.fleet_drift.rng = FixedRandom(0.9)  # 0.45 drain
        assert await engine.fleet_drift.tick() == 1
        assert (await repository.get_drone(idle.id)).current_battery_level == 49.55
        assert (await repository.get_drone(charging.id)).current_battery_level == 50
    asyncio.run(scenario())


def test_drift_never_raises_low_battery(engine, repository):
    async def scenario():
        drone = await add_drone(repository, battery=4)
        engine.fleet_drift.rng = FixedRandom(0.9)
        await engine.fleet_drift.tick()
        assert (await repository.get_drone(drone.id)).current_battery_level == 4
    asyncio.run(scenario())


def test_drift_is_a_fleet_event(engine, repository):
    async def scenario():
        drone = await add_drone(repository, battery=80)
        channels = [FakeChannel("a"), FakeChannel("b")]
        for channel in channels:
            engine.broadcaster.connect(channel)
        engine.fleet_drift.rng = FixedRandom(0.8)

        await engine.fleet_drift.tick()

        for channel in channels:
            event = channel.of_type('drone:update')[0]
            assert event['drone']['id'] == drone.id
            assert event['drone']['currentBatteryLevel'] == 79.6
    asyncio.run(scenario())

# ============================================================================
# DISPATCHER
# ============================================================================

def test_dispatcher_idle_while_missions_fly(engine, repository):
    async def scenario():
        await add_drone(repository, battery=90)
        await add_mission(repository, status=S.IN_PROGRESS)
        await add_mission(repository, status=S.IN_PROGRESS)
        assert await engine.dispatcher.tick() is None

        pending = await add_mission(repository, status=S.PENDING)
        assert await engine.dispatcher.tick() is None
        assert (await repository.get_mission(pending.id)).status == S.PENDING
    asyncio.run(scenario())


def test_dispatcher_waits_while_any_mission_flies(engine, repository):
    async def scenario():
        await add_drone(repository, battery=90)
        await add_mission(repository, status=S.IN_PROGRESS)
        pending = await add_mission(repository, status=S.PENDING)
        assert await engine.dispatcher.tick() is None
        assert (await repository.get_mission(pending.id)).status == S.PENDING
    asyncio.run(scenario())


def test_dispatcher_needs_a_charged_available_drone(engine, repository):
    async def scenario():
        await add_drone(repository, name="low", battery=50)
        await add_drone(repository, name="busy", battery=90, status="Maintenance")
        await add_mission(repository, status=S.PENDING)
        assert await engine.dispatcher.tick() is None
    asyncio.run(scenario())


class FirstChoicePolicy(SelectionPolicy):
    def __init__(self):
        self.offered = None

    def select(self, missions, drones):
        self.offered = ([m.name for m in missions], [d.name for d in drones])
        return missions[0], drones[0]


def test_dispatcher_starts_pending_mission(repository, config, clock):
    policy = FirstChoicePolicy()
    engine = MissionControlEngine(repository=repository, config=config,
                                  selection_policy=policy, clock=clock)

    async def scenario():
        await add_drone(repository, name="Mavic-3", battery=25, status="Charging")
        await add_drone(repository, name="EVO-2", battery=45)
        ready = await add_drone(repository, name="Mavic-2", battery=94)
        await add_mission(repository, name="Roof Inspection", status=S.PLANNED)
        pending = await add_mission(repository, name="Construction Progress", status=S.PENDING)
        channel = FakeChannel()
        engine.broadcaster.connect(channel)
        await engine.broadcaster.subscribe(channel, pending.id)

        started = await engine.dispatcher.tick()

        assert policy.offered == (["Construction Progress"], ["Mavic-2"])
        assert started.status == S.IN_PROGRESS
        assert started.drone_id == ready.id
        assert started.started_at == clock.now
        assert (await repository.get_drone(ready.id)).status == DroneStatus.ON_MISSION

        messages = [l.message for l in await repository.list_mission_logs(pending.id)]
        assert "Mission started with drone Mavic-2" in messages
        assert "Mission initiated" in messages

        assert channel.of_type('mission:started') == [{'type': 'mission:started', 'missionId': pending.id}]
        assert channel.of_type('mission:update')[-1]['mission']['status'] == "In Progress"
        assert channel.of_type('drone:update')[0]['drone']['status'] == "On Mission"
    asyncio.run(scenario())

# ============================================================================
# PERIODIC TASK
# ============================================================================

def test_periodic_task_survives_failing_tick(engine):
    calls = []

    async def tick():
        calls.append(1)
        raise TransientStorageError("database unavailable")

    task = PeriodicTask('flaky', 0.01, tick, engine.metrics)

    async def scenario():
        task.start()
        await asyncio.sleep(0.1)
        assert task.running
        await task.stop()

    asyncio.run(scenario())
    assert len(calls) >= 2
    assert task.last_error == "database unavailable"
    assert engine.metrics.get_counter('tick_errors_total', {'task': 'flaky'}) == len(calls)
    assert engine.metrics.get_histogram_stats('tick_duration_ms', {'task': 'flaky'})['count'] == len(calls)

# ============================================================================
# TICK VS TELEMETRY
# ============================================================================

def yielding_engine(config, clock):
    return MissionControlEngine(repository=YieldingRepository(clock=clock), config=config,
                                rng=FixedRandom(0.0), clock=clock)


def test_tick_and_telemetry_both_advance(config, clock):
    engine = yielding_engine(config, clock)
    repository = engine.repository

    async def scenario():
        mission = await add_mission(repository, status=S.IN_PROGRESS, progress=10)
        sample = Telemetry(mission_id=mission.id, latitude=37.778, longitude=-122.419)

        await asyncio.gather(
            engine.progress_simulator.advance_mission(mission.id),
            engine.submit_telemetry(sample)
        )

        updated = await repository.get_mission(mission.id)
        assert updated.progress == 11
        assert len(await repository.list_telemetry(mission.id)) == 2
        assert len(engine.locks) == 0
    asyncio.run(scenario())


def test_tick_and_telemetry_complete_once(config, clock):
    engine = yielding_engine(config, clock)
    repository = engine.repository

    async def scenario():
        drone = await add_drone(repository, status="On Mission", flight_hours=2.0)
        mission = await add_mission(
            repository, status=S.IN_PROGRESS, progress=99.0,
            drone_id=drone.id, started_at=clock.now
        )
        await repository.update_drone(drone.id, last_mission=mission.id)
        clock.advance(1800)
        sample = Telemetry(mission_id=mission.id, latitude=37.778, longitude=-122.419)

        await asyncio.gather(
            engine.progress_simulator.advance_mission(mission.id),
            engine.submit_telemetry(sample)
        )

        finished = await repository.get_mission(mission.id)
        messages = [l.message for l in await repository.list_mission_logs(mission.id)]
        assert finished.status == S.COMPLETED
        assert messages.count("Mission completed") == 1
        assert (await repository.get_drone(drone.id)).flight_hours == pytest.approx(2.5)
    asyncio.run(scenario())


def test_telemetry_for_unknown_missions_leaves_no_locks(engine):
    async def scenario():
        for mission_id in range(500, 600):
            with pytest.raises(NotFound):
                await engine.submit_telemetry(
                    Telemetry(mission_id=mission_id, latitude=0.0, longitude=0.0)
                )
        assert len(engine.locks) == 0
    asyncio.run(scenario())
