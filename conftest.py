# Shared test fixtures
# File: conftest.py

import asyncio
import random
from datetime import datetime, timedelta

import pytest

from main import EngineConfig, MissionStatus
from storage import MemoryRepository
from orchestrator import MissionControlEngine


class FixedRandom(random.Random):
    """random() always returns ``value``; integer draws stay seeded"""

    def __init__(self, value: float = 0.0, seed: int = 7):
        super().__init__(seed)
        self.value = value

    def random(self):
        return self.value


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 6, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeChannel:
    """Records events instead of writing to a socket"""

    def __init__(self, name: str = "test"):
        self.id = name
        self.events = []
        self.closed = False
        self.terminated = False

    def send(self, event) -> bool:
        if self.closed:
            return False
        self.events.append(event)
        return True

    async def terminate(self, code: int = 1001):
        self.closed = True
        self.terminated = True

    async def close(self, flush_timeout: float = 1.0):
        self.closed = True

    def of_type(self, event_type: str):
        return [e for e in self.events if e.get('type') == event_type]


class YieldingRepository(MemoryRepository):
    """Suspends inside reads and writes so concurrent callers interleave"""

    async def get_mission(self, mission_id):
        await asyncio.sleep(0)
        return await super().get_mission(mission_id)

    async def get_drone(self, drone_id):
        await asyncio.sleep(0)
        return await super().get_drone(drone_id)

    async def update_mission_fields(self, mission_id, **partial):
        await asyncio.sleep(0)
        return await super().update_mission_fields(mission_id, **partial)


def line_string(count: int, lng: float = -122.4190, lat: float = 37.7780):
    """GeoJSON LineString with ``count`` points heading east"""
    return {
        'type': 'LineString',
        'coordinates': [[round(lng + i * 0.0005, 6), lat] for i in range(count)]
    }


async def add_drone(repository, name: str = "Mavic-2", battery: float = 94,
                    status: str = "Available", **extra):
    return await repository.create_drone(
        name=name, model="DJI Mavic 3", serial_number=f"SN-{name}",
        battery_capacity=100, current_battery_level=battery,
        status=status, location="Main Hangar", **extra
    )


async def add_mission(repository, name: str = "Survey", points: int = 10,
                      status: MissionStatus = MissionStatus.PLANNED, **extra):
    return await repository.create_mission(
        name=name, mission_type="Site Survey", status=status,
        location="Campus", area=1000,
        flight_path=line_string(points) if points else None,
        **extra
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository(clock):
    return MemoryRepository(clock=clock)


@pytest.fixture
def config():
    return EngineConfig(simulation_enabled=False, seed_demo_data=False)


@pytest.fixture
def engine(repository, config, clock):
    return MissionControlEngine(
        repository=repository, config=config,
        rng=FixedRandom(0.0), clock=clock
    )
