# Repository and path model tests
# File: test_storage.py

import asyncio
import json

import pytest

from main import (
    FlightPath,
    InvalidPathError,
    LogType,
    MissionLog,
    MissionStatus,
    NotFound,
    Telemetry,
    ValidationError,
)
from storage import MemoryRepository
from conftest import add_drone, add_mission, line_string


def test_reads_return_copies(repository):
    async def scenario():
        drone = await add_drone(repository)
        drone.current_battery_level = 1
        stored = await repository.get_drone(drone.id)
        assert stored.current_battery_level == 94

        mission = await add_mission(repository)
        mission.flight_path.points.clear()
        assert len((await repository.get_mission(mission.id)).flight_path) == 10
    asyncio.run(scenario())


def test_unknown_ids_raise_not_found(repository):
    async def scenario():
        with pytest.raises(NotFound):
            await repository.get_drone(1)
        with pytest.raises(NotFound):
            await repository.update_mission_fields(1, progress=5)
        with pytest.raises(NotFound):
            await repository.append_telemetry(Telemetry(mission_id=9, latitude=0, longitude=0))
        with pytest.raises(NotFound):
            await repository.delete_drone(3)
    asyncio.run(scenario())


def test_battery_and_field_validation(repository):
    async def scenario():
        with pytest.raises(ValidationError):
            await add_drone(repository, battery=120)
        drone = await add_drone(repository)
        with pytest.raises(ValidationError):
            await repository.update_drone(drone.id, current_battery_level=-1)
        with pytest.raises(ValidationError):
            await repository.update_drone(drone.id, wingspan=3)
        with pytest.raises(ValidationError):
            await repository.update_drone(drone.id, flight_hours=-2)
    asyncio.run(scenario())


def test_actual_path_cannot_exceed_planned(repository):
    async def scenario():
        mission = await add_mission(repository, points=3)
        await repository.update_mission_fields(mission.id, actual_path=line_string(3))
        with pytest.raises(ValidationError):
            await repository.update_mission_fields(mission.id, actual_path=line_string(4))
        assert len((await repository.get_mission(mission.id)).actual_path) == 3
    asyncio.run(scenario())


def test_progress_range_enforced(repository):
    async def scenario():
        mission = await add_mission(repository)
        with pytest.raises(ValidationError):
            await repository.update_mission_fields(mission.id, progress=100.5)
    asyncio.run(scenario())


def test_list_missions_by_status(repository):
    async def scenario():
        await add_mission(repository, name="a")
        await add_mission(repository, name="b", status=MissionStatus.IN_PROGRESS)
        active = await repository.list_missions_by_status("In Progress")
        assert [m.name for m in active] == ["b"]
    asyncio.run(scenario())


def test_logs_and_telemetry_newest_first(repository, clock):
    async def scenario():
        mission = await add_mission(repository)
        for message in ("first", "second", "third"):
            await repository.append_mission_log(
                MissionLog(mission_id=mission.id, log_type=LogType.INFO, message=message)
            )
            await repository.append_telemetry(
                Telemetry(mission_id=mission.id, latitude=37.7, longitude=-122.4, speed=1)
            )
            clock.advance(1)

        logs = await repository.list_mission_logs(mission.id)
        assert [l.message for l in logs] == ["third", "second", "first"]
        samples = await repository.list_telemetry(mission.id)
        assert [t.id for t in samples] == [3, 2, 1]
    asyncio.run(scenario())


def test_log_message_required(repository):
    async def scenario():
        mission = await add_mission(repository)
        with pytest.raises(ValidationError):
            await repository.append_mission_log(
                MissionLog(mission_id=mission.id, log_type=LogType.INFO, message="")
            )
    asyncio.run(scenario())


def test_state_file_written_after_mutation(tmp_path):
    path = tmp_path / "state.json"
    repository = MemoryRepository(persist_path=str(path))

    async def scenario():
        await add_drone(repository, name="EVO-1")
        await add_mission(repository, points=2)

    asyncio.run(scenario())
    state = json.loads(path.read_text())
    assert state['drones'][0]['name'] == "EVO-1"
    assert state['missions'][0]['flightPath']['type'] == "LineString"


@pytest.mark.parametrize("payload", [
    {'type': 'Polygon', 'coordinates': []},
    {'type': 'LineString', 'coordinates': [[1.0]]},
    {'type': 'LineString', 'coordinates': [["a", "b"]]},
    {'type': 'LineString', 'coordinates': [[200.0, 10.0]]},
    {'type': 'LineString'},
    "LINESTRING(1 2)",
])
def test_malformed_paths_rejected(payload):
    with pytest.raises(InvalidPathError):
        FlightPath.from_geojson(payload)
    assert FlightPath.parse_stored(payload) is None


def test_path_geometry():
    path = FlightPath.from_geojson(line_string(4))
    assert len(path) == 4
    assert path.to_geojson() == line_string(4)
    assert len(path.prefix(2)) == 2
    assert path.length_m(0) == 0
    # 0.0005 deg of longitude at ~37.8N is ~44 m
    assert 40 < path.length_m(1) < 48
    assert path.length_m(3) == pytest.approx(3 * path.length_m(1), rel=1e-3)
