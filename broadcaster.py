# Subscription Registry, Broadcaster and Observer Channels
# File: broadcaster.py

"""
Fan-out of mission and fleet state changes to connected observers.

The registry only knows that a channel has ``send(event)``; transport
details live in ObserverChannel, which wraps a WebSocket with a FIFO outbox
drained by a single writer task.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime
from typing import List, Dict, Set, Optional, Any, Callable
import logging

from main import MissionLog, NotFound

logger = logging.getLogger(__name__)

# ============================================================================
# OBSERVER CHANNEL
# ============================================================================

class ObserverChannel:
    """One connected observer"""

    def __init__(self, websocket, channel_id: Optional[str] = None, max_pending: int = 256):
        self.websocket = websocket
        self.id = channel_id or f"CH-{uuid.uuid4().hex[:8].upper()}"
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.connected_at = datetime.now()
        self.closed = False
        self.overflowed = False
        self._writer: Optional[asyncio.Task] = None

    def start(self):
        self._writer = asyncio.create_task(self._drain(), name=f"writer-{self.id}")

    def send(self, event: Dict[str, Any]) -> bool:
        """Queue an event; delivery order per channel is queue order"""
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            # slow reader; the liveness sweep terminates it
            logger.warning(f"Channel {self.id} outbox full ({self.outbox.maxsize}), closing")
            self.overflowed = True
            self.closed = True
            return False
        return True

    async def _drain(self):
        while True:
            event = await self.outbox.get()
            try:
                await self.websocket.send_json(event)
            except Exception as e:
                logger.warning(f"Channel {self.id} send failed: {e}")
                self.closed = True
                return
            finally:
                self.outbox.task_done()

    async def close(self, flush_timeout: float = 1.0):
        """Stop the writer after flushing whatever is queued"""
        self.closed = True
        if self._writer and not self._writer.done():
            try:
                await asyncio.wait_for(self.outbox.join(), timeout=flush_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Channel {self.id} closed with undelivered events")
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def terminate(self, code: int = 1001):
        """Forcibly drop an unresponsive connection"""
        self.closed = True
        if self._writer and not self._writer.done():
            self._writer.cancel()
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Channel {self.id} close error: {e}")
        logger.info(f"Channel {self.id} terminated")

# ============================================================================
# SUBSCRIPTION REGISTRY
# ============================================================================

class SubscriptionRegistry:
    """Channel <-> mission id index, kept in both directions"""

    def __init__(self):
        self._by_channel: Dict[Any, Set[int]] = {}
        self._by_mission: Dict[int, Set[Any]] = defaultdict(set)

    def connect(self, channel):
        self._by_channel.setdefault(channel, set())

    def add(self, channel, mission_id: int) -> bool:
        """Returns True if the subscription is new"""
        watched = self._by_channel.setdefault(channel, set())
        if mission_id in watched:
            return False
        watched.add(mission_id)
        self._by_mission[mission_id].add(channel)
        return True

    def remove(self, channel, mission_id: int) -> bool:
        watched = self._by_channel.get(channel)
        if not watched or mission_id not in watched:
            return False
        watched.discard(mission_id)
        watchers = self._by_mission.get(mission_id)
        if watchers is not None:
            watchers.discard(channel)
            if not watchers:
                del self._by_mission[mission_id]
        return True

    def disconnect(self, channel) -> Set[int]:
        """Drop the channel and all its subscriptions"""
        watched = self._by_channel.pop(channel, set())
        for mission_id in watched:
            watchers = self._by_mission.get(mission_id)
            if watchers is not None:
                watchers.discard(channel)
                if not watchers:
                    del self._by_mission[mission_id]
        return watched

    def channels_for(self, mission_id: int) -> List[Any]:
        return list(self._by_mission.get(mission_id, ()))

    def missions_for(self, channel) -> Set[int]:
        return set(self._by_channel.get(channel, ()))

    @property
    def channels(self) -> List[Any]:
        return list(self._by_channel)

    def __len__(self) -> int:
        return len(self._by_channel)

# ============================================================================
# BROADCASTER
# ============================================================================

class Broadcaster:
    """Push mission updates to subscribers and fleet events to everyone"""

    def __init__(self, repository, registry: Optional[SubscriptionRegistry] = None):
        self.repository = repository
        self.registry = registry or SubscriptionRegistry()
        self.listeners: List[Callable[[Dict[str, Any]], None]] = []

    def add_listener(self, listener: Callable[[Dict[str, Any]], None]):
        """Receive a copy of every outbound event"""
        self.listeners.append(listener)

    @property
    def channels(self) -> List[Any]:
        return self.registry.channels

    def connect(self, channel):
        self.registry.connect(channel)
        logger.info(f"Observer connected ({len(self.registry)} total)")

    def disconnect(self, channel):
        watched = self.registry.disconnect(channel)
        logger.info(f"Observer disconnected, dropped {len(watched)} subscriptions")

    async def subscribe(self, channel, mission_id: int):
        """
        Watch a mission and push its current state to this channel only

        Raises:
            NotFound: unknown mission id
        """
        mission = await self.repository.get_mission(mission_id)
        self.registry.add(channel, mission_id)
        channel.send({'type': 'mission:update', 'mission': mission.to_dict()})

    def unsubscribe(self, channel, mission_id: int):
        self.registry.remove(channel, mission_id)

    async def broadcast_mission_update(self, mission_id: int) -> int:
        """Send current mission state to its watchers; returns delivery count"""
        try:
            mission = await self.repository.get_mission(mission_id)
        except NotFound:
            return 0
        event = {'type': 'mission:update', 'mission': mission.to_dict()}
        return self._deliver(self.registry.channels_for(mission_id), event)

    def broadcast_mission_log(self, log: MissionLog) -> int:
        event = {'type': 'mission:log', 'log': log.to_dict()}
        return self._deliver(self.registry.channels_for(log.mission_id), event)

    def broadcast_fleet_event(self, event: Dict[str, Any]) -> int:
        return self._deliver(self.registry.channels, event)

    def _deliver(self, channels: List[Any], event: Dict[str, Any]) -> int:
        delivered = 0
        for channel in channels:
            if channel.send(event):
                delivered += 1

        for listener in self.listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Broadcast listener error for {event.get('type')}: {e}")

        return delivered

# ============================================================================
# LIVENESS PROBE
# ============================================================================

class LivenessMonitor:
    """
    Sweep channels that can no longer deliver: writer failed or outbox
    overflowed. Silent peers are detected by the WebSocket protocol ping
    (uvicorn ``ws_ping_interval``/``ws_ping_timeout``), which ends their
    receive loop.
    """

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def probe(self) -> List[Any]:
        terminated = []
        for channel in self.broadcaster.channels:
            if channel.closed:
                await channel.terminate()
                self.broadcaster.disconnect(channel)
                terminated.append(channel)

        if terminated:
            logger.warning(f"Terminated {len(terminated)} unresponsive channels")
        return terminated
