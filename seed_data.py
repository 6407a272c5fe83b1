#!/usr/bin/env python3
# Demo Data - Seed the repository or a running server
# File: seed_data.py

"""
Demo fleet and missions.

Loaded straight into a repository at engine start (``seed_repository``) or
pushed to a running server over REST (``push_to_server``).
Usage: python seed_data.py [json_file] [--url http://localhost:8000]
"""

import json
import re
import sys
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List
import logging

import requests

from main import DroneStatus, LogType, MissionLog, MissionStatus, Telemetry

logger = logging.getLogger(__name__)

# API Configuration
BASE_URL = "http://localhost:8000"

# Seed records use the wire (camelCase) shape; ``droneId`` and ``missionId``
# are 1-based positions in the ``drones`` and ``missions`` lists.
DEMO_DATA: Dict[str, List[Dict[str, Any]]] = {
    "drones": [
        {"name": "Mavic-1", "model": "DJI Mavic 3", "serialNumber": "DR-123",
         "batteryCapacity": 100, "currentBatteryLevel": 67, "status": "On Mission",
         "location": "West Building Complex, San Francisco, CA",
         "flightHours": 142.5, "healthStatus": "good"},
        {"name": "EVO-1", "model": "Autel EVO II", "serialNumber": "DR-456",
         "batteryCapacity": 100, "currentBatteryLevel": 35, "status": "On Mission",
         "location": "East Solar Farm, Phoenix, AZ",
         "flightHours": 89.2, "healthStatus": "good"},
        {"name": "Skydio-1", "model": "Skydio X2", "serialNumber": "DR-789",
         "batteryCapacity": 100, "currentBatteryLevel": 28, "status": "On Mission",
         "location": "Main Warehouse, Seattle, WA",
         "flightHours": 178.3, "healthStatus": "good"},
        {"name": "Mavic-2", "model": "DJI Mavic 3", "serialNumber": "DR-124",
         "batteryCapacity": 100, "currentBatteryLevel": 94, "status": "Available",
         "location": "Main Hangar, San Francisco, CA",
         "flightHours": 156.7, "healthStatus": "good"},
        {"name": "Mavic-3", "model": "DJI Mavic 3", "serialNumber": "DR-125",
         "batteryCapacity": 100, "currentBatteryLevel": 25, "status": "Charging",
         "location": "Charging Station 2, San Francisco, CA",
         "flightHours": 134.2, "healthStatus": "fair"},
        {"name": "Anafi-1", "model": "Parrot Anafi", "serialNumber": "DR-012",
         "batteryCapacity": 100, "currentBatteryLevel": 0, "status": "Maintenance",
         "location": "Maintenance Bay, San Francisco, CA",
         "flightHours": 89.7, "healthStatus": "poor"},
    ],
    "missions": [
        {
            "name": "North Campus Survey", "missionType": "Site Survey",
            "status": "In Progress", "location": "West Building Complex, San Francisco, CA",
            "area": 12500, "droneId": 1, "altitude": 80, "speed": 5,
            "imageOverlap": 75, "patternType": "Grid", "progress": 75,
            "flightPath": {"type": "LineString", "coordinates": [
                [-122.4190, 37.7780], [-122.4185, 37.7780], [-122.4185, 37.7775],
                [-122.4180, 37.7775], [-122.4180, 37.7770], [-122.4175, 37.7770],
                [-122.4175, 37.7765], [-122.4170, 37.7765], [-122.4170, 37.7760],
                [-122.4165, 37.7760], [-122.4165, 37.7755], [-122.4160, 37.7755],
                [-122.4160, 37.7750], [-122.4155, 37.7750], [-122.4150, 37.7750]
            ]},
            "actualPath": {"type": "LineString", "coordinates": [
                [-122.4190, 37.7780], [-122.4185, 37.7780], [-122.4185, 37.7775],
                [-122.4180, 37.7775], [-122.4180, 37.7770], [-122.4175, 37.7770],
                [-122.4175, 37.7765], [-122.4170, 37.7765], [-122.4168, 37.7762]
            ]},
        },
        {
            "name": "Solar Panel Inspection", "missionType": "Inspection",
            "status": "In Progress", "location": "East Solar Farm, Phoenix, AZ",
            "area": 8000, "droneId": 2, "altitude": 40, "speed": 3,
            "imageOverlap": 80, "patternType": "Grid", "progress": 35,
            "flightPath": {"type": "LineString", "coordinates": [
                [-112.0740, 33.4484], [-112.0735, 33.4484], [-112.0735, 33.4480],
                [-112.0730, 33.4480], [-112.0730, 33.4476]
            ]},
        },
        {
            "name": "Perimeter Security Check", "missionType": "Security",
            "status": "In Progress", "location": "Main Warehouse, Seattle, WA",
            "area": 5000, "droneId": 3, "altitude": 30, "speed": 4,
            "imageOverlap": 70, "patternType": "Perimeter", "progress": 15,
            "flightPath": {"type": "LineString", "coordinates": [
                [-122.3320, 47.6062], [-122.3315, 47.6062], [-122.3315, 47.6058],
                [-122.3320, 47.6058], [-122.3320, 47.6062]
            ]},
        },
        {
            "name": "Roof Inspection", "missionType": "Inspection",
            "status": "Planned", "location": "South Building, Chicago, IL",
            "area": 2000, "droneId": 4, "scheduledInDays": 1,
            "altitude": 40, "speed": 3, "imageOverlap": 75, "patternType": "Grid",
            "flightPath": {"type": "LineString", "coordinates": [
                [-87.6298, 41.8781], [-87.6293, 41.8781], [-87.6293, 41.8778],
                [-87.6298, 41.8778], [-87.6298, 41.8781]
            ]},
        },
        {
            "name": "Construction Progress", "missionType": "Site Survey",
            "status": "Planned", "location": "New Office Site, Denver, CO",
            "area": 10000, "droneId": 4, "scheduledInDays": 5,
            "altitude": 60, "speed": 4, "imageOverlap": 70, "patternType": "Crosshatch",
            "flightPath": {"type": "LineString", "coordinates": [
                [-104.9903, 39.7392], [-104.9898, 39.7392], [-104.9898, 39.7388],
                [-104.9903, 39.7388], [-104.9903, 39.7392]
            ]},
        },
    ],
    "missionLogs": [
        {"missionId": 1, "logType": "START", "message": "Mission initiated"},
        {"missionId": 1, "logType": "INFO", "message": "Starting survey section 1"},
        {"missionId": 1, "logType": "INFO", "message": "Completed survey section 1/4"},
        {"missionId": 1, "logType": "INFO", "message": "Starting survey section 2"},
        {"missionId": 1, "logType": "INFO", "message": "Completed survey section 2/4"},
        {"missionId": 1, "logType": "INFO", "message": "Starting survey section 3"},
        {"missionId": 1, "logType": "WARN", "message": "Wind speed increased to 6 m/s"},
        {"missionId": 1, "logType": "INFO", "message": "Completed survey section 3/4"},
    ],
    "telemetry": [
        {"missionId": 1, "altitude": 78, "speed": 4.8, "batteryLevel": 67,
         "latitude": 37.7762, "longitude": -122.4168,
         "distanceTraveled": 483, "signalStrength": 92},
    ],
}

# ============================================================================
# HELPERS
# ============================================================================

def snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def load_seed_file(path: str) -> Dict[str, Any]:
    """Read seed data in the DEMO_DATA shape from a JSON file"""
    with open(path, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict) or 'drones' not in data:
        raise ValueError(f"{path}: expected an object with a 'drones' list")
    return data

# ============================================================================
# DIRECT REPOSITORY SEEDING
# ============================================================================

async def seed_repository(repository, data: Optional[Dict[str, Any]] = None,
                          clock=datetime.now) -> Dict[str, int]:
    """
    Write seed data into a repository

    Args:
        repository: MissionRepository implementation
        data: Seed data, DEMO_DATA by default
        clock: Time source for scheduled/started timestamps

    Returns:
        Count of created records per kind
    """
    data = data or DEMO_DATA
    now = clock()

    drone_ids = []
    for record in data.get('drones', []):
        fields = {snake_case(k): v for k, v in record.items()}
        drone = await repository.create_drone(**fields)
        drone_ids.append(drone.id)

    mission_ids = []
    for record in data.get('missions', []):
        fields = {snake_case(k): v for k, v in record.items()}
        days = fields.pop('scheduled_in_days', 0)
        position = fields.pop('drone_id', None)
        fields['drone_id'] = drone_ids[position - 1] if position else None
        fields['scheduled_at'] = now + timedelta(days=days)
        if fields.get('status') == MissionStatus.IN_PROGRESS.value:
            fields['started_at'] = now

        mission = await repository.create_mission(**fields)
        mission_ids.append(mission.id)

        if mission.status == MissionStatus.IN_PROGRESS and mission.drone_id:
            drone = await repository.get_drone(mission.drone_id)
            if drone.status == DroneStatus.ON_MISSION:
                await repository.update_drone(drone.id, last_mission=mission.id)

    for record in data.get('missionLogs', []):
        await repository.append_mission_log(MissionLog(
            mission_id=mission_ids[record['missionId'] - 1],
            log_type=LogType(record['logType']),
            message=record['message']
        ))

    for record in data.get('telemetry', []):
        fields = {snake_case(k): v for k, v in record.items()}
        fields['mission_id'] = mission_ids[fields['mission_id'] - 1]
        await repository.append_telemetry(Telemetry(**fields))

    counts = {
        'drones': len(drone_ids),
        'missions': len(mission_ids),
        'missionLogs': len(data.get('missionLogs', [])),
        'telemetry': len(data.get('telemetry', []))
    }
    logger.info(f"Seeded repository: {counts}")
    return counts

# ============================================================================
# REST LOADER
# ============================================================================

class DataLoader:
    """Load seed data into a running server via its REST API"""

    def __init__(self, base_url: str = BASE_URL, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.stats = {
            'drones': {'success': 0, 'failed': 0},
            'missions': {'success': 0, 'failed': 0},
            'missionLogs': {'success': 0, 'failed': 0}
        }

    def check_server(self) -> bool:
        """Check if API server is running"""
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=2)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def _post(self, path: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self.session.post(f"{self.base_url}{path}", json=body, timeout=10)
        if response.status_code in (200, 201):
            return response.json()
        logger.warning(f"POST {path} failed: {response.status_code} {response.text}")
        return None

    def _patch(self, path: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self.session.patch(f"{self.base_url}{path}", json=body, timeout=10)
        if response.status_code == 200:
            return response.json()
        logger.warning(f"PATCH {path} failed: {response.status_code} {response.text}")
        return None

    def load_drones(self, drones: List[Dict[str, Any]]) -> List[Optional[int]]:
        ids = []
        for record in drones:
            body = dict(record)
            # Drones flying a seeded mission are claimed when it starts
            if body.get('status') == DroneStatus.ON_MISSION.value:
                body['status'] = DroneStatus.AVAILABLE.value
            try:
                created = self._post("/api/drones", body)
            except requests.RequestException as e:
                logger.error(f"Drone {record.get('name')}: {e}")
                created = None
            self.stats['drones']['success' if created else 'failed'] += 1
            ids.append(created['id'] if created else None)
        return ids

    def load_missions(self, missions: List[Dict[str, Any]],
                      drone_ids: List[Optional[int]]) -> List[Optional[int]]:
        ids = []
        for record in missions:
            body = {k: v for k, v in record.items()
                    if k not in ('status', 'progress', 'actualPath', 'scheduledInDays')}
            position = record.get('droneId')
            body['droneId'] = drone_ids[position - 1] if position else None
            body['scheduledAt'] = (
                datetime.now() + timedelta(days=record.get('scheduledInDays', 0))
            ).isoformat()

            try:
                created = self._post("/api/missions", body)
                if created and record.get('status') == MissionStatus.IN_PROGRESS.value:
                    path = f"/api/missions/{created['id']}"
                    self._patch(f"{path}/status", {'status': MissionStatus.PENDING.value})
                    self._patch(f"{path}/status", {'status': MissionStatus.IN_PROGRESS.value})
                    if record.get('progress'):
                        self._patch(f"{path}/progress", {
                            'progress': record['progress'],
                            'actualPath': record.get('actualPath')
                        })
            except requests.RequestException as e:
                logger.error(f"Mission {record.get('name')}: {e}")
                created = None

            self.stats['missions']['success' if created else 'failed'] += 1
            ids.append(created['id'] if created else None)
        return ids

    def load_logs(self, logs: List[Dict[str, Any]], mission_ids: List[Optional[int]]):
        for record in logs:
            mission_id = mission_ids[record['missionId'] - 1]
            created = None
            if mission_id is not None:
                try:
                    created = self._post(f"/api/missions/{mission_id}/logs", {
                        'logType': record['logType'],
                        'message': record['message']
                    })
                except requests.RequestException as e:
                    logger.error(f"Log for mission {mission_id}: {e}")
            self.stats['missionLogs']['success' if created else 'failed'] += 1

    def load_all(self, data: Dict[str, Any]) -> Dict[str, Dict[str, int]]:
        drone_ids = self.load_drones(data.get('drones', []))
        mission_ids = self.load_missions(data.get('missions', []), drone_ids)
        self.load_logs(data.get('missionLogs', []), mission_ids)
        logger.info(f"Loaded seed data into {self.base_url}: {self.stats}")
        return self.stats


def push_to_server(base_url: str = BASE_URL, data: Optional[Dict[str, Any]] = None,
                   session: Optional[requests.Session] = None) -> Dict[str, Dict[str, int]]:
    """Create the seed drones, missions and logs on a running server"""
    return DataLoader(base_url, session).load_all(data or DEMO_DATA)


def main():
    import argparse

    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Load demo data into a running server")
    parser.add_argument("json_file", nargs="?")
    parser.add_argument("--url", default=BASE_URL)
    args = parser.parse_args()

    loader = DataLoader(args.url)
    if not loader.check_server():
        logger.error(f"API server is not reachable at {args.url}")
        sys.exit(1)

    data = load_seed_file(args.json_file) if args.json_file else DEMO_DATA
    stats = loader.load_all(data)
    failed = sum(s['failed'] for s in stats.values())
    sys.exit(1 if failed else 0)

if __name__ == "__main__":
    main()
