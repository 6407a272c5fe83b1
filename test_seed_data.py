# Demo data loader tests
# File: test_seed_data.py

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from main import DroneStatus, EngineConfig, MissionStatus
from orchestrator import MissionControlEngine
from api_server import create_app
from seed_data import load_seed_file, push_to_server, seed_repository, snake_case


def test_snake_case():
    assert snake_case("currentBatteryLevel") == "current_battery_level"
    assert snake_case("name") == "name"


def test_seed_repository(repository, clock):
    async def scenario():
        counts = await seed_repository(repository, clock=clock)
        assert counts == {'drones': 6, 'missions': 5, 'missionLogs': 8, 'telemetry': 1}

        survey = await repository.get_mission(1)
        assert survey.status == MissionStatus.IN_PROGRESS
        assert survey.started_at == clock.now
        assert len(survey.actual_path) == 9
        assert len(survey.flight_path) == 15

        flying = await repository.list_drones()
        on_mission = [d for d in flying if d.status == DroneStatus.ON_MISSION]
        assert [d.last_mission for d in on_mission] == [1, 2, 3]

        planned = await repository.list_missions_by_status(MissionStatus.PLANNED)
        assert {m.drone_id for m in planned} == {4}
    asyncio.run(scenario())


def test_load_seed_file(tmp_path):
    path = tmp_path / "seed.json"
    path.write_text(json.dumps({'drones': [], 'missions': []}))
    assert load_seed_file(str(path)) == {'drones': [], 'missions': []}

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps([1, 2]))
    with pytest.raises(ValueError):
        load_seed_file(str(bad))


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body


class FakeSession:
    """Records requests; every create succeeds with the next id"""

    def __init__(self):
        self.calls = []
        self.next_id = 100

    def post(self, url, json=None, timeout=None):
        self.calls.append(('POST', url, json))
        self.next_id += 1
        return FakeResponse(201, {**json, 'id': self.next_id})

    def patch(self, url, json=None, timeout=None):
        self.calls.append(('PATCH', url, json))
        return FakeResponse(200, json)


def test_push_to_server_call_sequence():
    session = FakeSession()
    stats = push_to_server("http://mission-control:8000/", session=session)

    assert stats['drones'] == {'success': 6, 'failed': 0}
    assert stats['missions'] == {'success': 5, 'failed': 0}
    assert stats['missionLogs'] == {'success': 8, 'failed': 0}

    drone_posts = [body for method, url, body in session.calls if url.endswith("/api/drones")]
    assert "On Mission" not in {body['status'] for body in drone_posts}

    # first mission: create, Pending, In Progress, then progress with path
    survey = session.calls[6:10]
    assert survey[0][1] == "http://mission-control:8000/api/missions"
    assert survey[0][2]['droneId'] == 101
    assert 'progress' not in survey[0][2]
    assert [c[2] for c in survey[1:3]] == [{'status': 'Pending'}, {'status': 'In Progress'}]
    assert survey[3][2]['progress'] == 75
    assert len(survey[3][2]['actualPath']['coordinates']) == 9


def test_push_to_live_app():
    engine = MissionControlEngine(config=EngineConfig(simulation_enabled=False, seed_demo_data=False))
    with TestClient(create_app(engine)) as client:
        stats = push_to_server("http://testserver", session=client)
        assert sum(s['failed'] for s in stats.values()) == 0

        active = client.get("/api/missions/active").json()
        assert active['count'] == 3
        survey = client.get("/api/missions/1").json()
        assert survey['progress'] == 75
        assert client.get("/api/drones/1").json()['status'] == "On Mission"
        assert client.get("/api/drones/4").json()['status'] == "Available"
