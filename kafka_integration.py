# Kafka Event Mirror
# File: kafka_integration.py

"""
Optional mirror of every broadcast event onto Kafka topics, so downstream
consumers (analytics, archiving) see the same stream observers do.
"""

import json
import logging
import queue
import threading
from typing import Dict, List, Optional, Any
from datetime import datetime

logger = logging.getLogger(__name__)

try:
    from kafka import KafkaProducer
    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    logger.warning("Kafka not installed. Run: pip install kafka-python")

# ============================================================================
# KAFKA TOPICS
# ============================================================================

class KafkaTopics:
    """Kafka topic definitions for mission control events"""

    # Mission Topics
    MISSION_UPDATES = "mission.state.updates"
    MISSION_LOGS = "mission.log.entries"
    MISSION_LIFECYCLE = "mission.lifecycle.events"

    # Fleet Topics
    DRONE_UPDATES = "fleet.drone.updates"

    # Everything else the broadcaster emits
    SYSTEM_EVENTS = "mission_control.system.events"

# ============================================================================
# KAFKA PRODUCER
# ============================================================================

class KafkaEventProducer:
    """Thin wrapper over KafkaProducer with JSON values and string keys"""

    def __init__(self, bootstrap_servers: List[str], client_id: str = "mission-control",
                 producer=None):
        """
        Initialize Kafka producer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            client_id: Client identifier for this producer
            producer: Pre-built producer (anything with send/flush/close)
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = producer
        self.sent_count = 0
        self.error_count = 0

        if self.producer is None:
            if not KAFKA_AVAILABLE:
                raise ImportError("Kafka not available. Install with: pip install kafka-python")
            self._connect()

    def _connect(self):
        """Establish connection to Kafka brokers"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,  # keep per-key order
                compression_type='gzip',
                max_block_ms=5000  # bound send() when broker metadata is missing
            )
            logger.info(f"Kafka producer connected: {self.bootstrap_servers}")
        except Exception as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise

    def publish(self, topic: str, message: Dict, key: Optional[str] = None):
        """
        Send message to Kafka topic

        Args:
            topic: Kafka topic name
            message: Message data
            key: Optional message key for partitioning
        """
        try:
            self.producer.send(topic, value=message, key=key)
            self.sent_count += 1
        except Exception as e:
            # broker and serialization failures alike; the mirror is best effort
            self.error_count += 1
            logger.error(f"Failed to send message to {topic}: {e}")

    def flush(self, timeout: int = None):
        if self.producer:
            self.producer.flush(timeout=timeout)
            logger.debug("Producer flushed")

    def close(self):
        """Close producer connection"""
        if self.producer:
            self.producer.close()
            logger.info("Kafka producer closed")

# ============================================================================
# BROADCASTER -> KAFKA BRIDGE
# ============================================================================

class MissionKafkaBridge:
    """
    Broadcaster listener routing outbound events to Kafka topics.

    ``handle_event`` runs on the event loop and only enqueues; a worker
    thread owns the producer, so a stalled broker never blocks broadcasts.
    """

    def __init__(self, producer: KafkaEventProducer, max_pending: int = 1000):
        self.producer = producer
        self.queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self.dropped_count = 0
        self.running = True
        self.thread = threading.Thread(target=self._publish_loop, daemon=True,
                                       name="kafka-mirror")
        self.thread.start()

    @classmethod
    def connect(cls, bootstrap_servers: List[str]) -> 'MissionKafkaBridge':
        return cls(KafkaEventProducer(bootstrap_servers))

    def route(self, event: Dict[str, Any]):
        """Topic and partition key for an outbound event"""
        event_type = event.get('type')

        if event_type == 'mission:update':
            return KafkaTopics.MISSION_UPDATES, str(event['mission']['id'])
        if event_type == 'mission:log':
            return KafkaTopics.MISSION_LOGS, str(event['log']['missionId'])
        if event_type == 'mission:started':
            return KafkaTopics.MISSION_LIFECYCLE, str(event['missionId'])
        if event_type == 'drone:update':
            return KafkaTopics.DRONE_UPDATES, str(event['drone']['id'])
        return KafkaTopics.SYSTEM_EVENTS, None

    def handle_event(self, event: Dict[str, Any]):
        topic, key = self.route(event)
        message = {
            'event': event,
            'timestamp': datetime.now().isoformat()
        }
        try:
            self.queue.put_nowait((topic, key, message))
        except queue.Full:
            self.dropped_count += 1
            logger.warning(f"Kafka mirror backlog full, dropped {event.get('type')}")

    def _publish_loop(self):
        while True:
            item = self.queue.get()
            if item is None:
                break
            topic, key, message = item
            self.producer.publish(topic, message, key=key)
            logger.debug(f"Mirrored {message['event'].get('type')} to {topic}")

    def close(self, timeout: float = 5.0):
        """Drain the backlog, then flush and close the producer"""
        if self.running:
            self.running = False
            self.queue.put(None)
            self.thread.join(timeout=timeout)
        self.producer.flush()
        self.producer.close()
        logger.info("Kafka mirror stopped")
