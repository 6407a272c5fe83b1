# Monitoring & Metrics
# File: monitoring.py

"""
Metrics collection, health checks and Prometheus export for the mission
control engine
"""

import asyncio
import time
import psutil
import statistics
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Callable
from collections import deque, defaultdict
from dataclasses import dataclass, field
import threading
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class MetricPoint:
    """Single metric data point"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Collect and aggregate engine metrics"""

    def __init__(self, retention_minutes: int = 60):
        """
        Initialize metrics collector

        Args:
            retention_minutes: How long to retain metric data
        """
        self.retention_minutes = retention_minutes
        self.metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """Add to a monotonically increasing counter"""
        with self.lock:
            key = self._make_key(name, labels)
            self.counters[key] += value
            self.metrics[key].append(MetricPoint(
                timestamp=datetime.now(),
                value=self.counters[key],
                labels=labels or {}
            ))

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        """Set a value that can go up or down"""
        with self.lock:
            key = self._make_key(name, labels)
            self.gauges[key] = value
            self.metrics[key].append(MetricPoint(
                timestamp=datetime.now(),
                value=value,
                labels=labels or {}
            ))

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """
        Record an observation (tick latencies, payload sizes)

        Args:
            name: Metric name
            value: Observed value
            labels: Optional labels for grouping
        """
        with self.lock:
            key = self._make_key(name, labels)
            self.histograms[key].append(value)

            # Keep last 1000 values
            if len(self.histograms[key]) > 1000:
                self.histograms[key] = self.histograms[key][-1000:]

            self.metrics[key].append(MetricPoint(
                timestamp=datetime.now(),
                value=value,
                labels=labels or {}
            ))

    def get_metric(self, name: str, labels: Dict = None) -> List[MetricPoint]:
        """Time series points within the retention period"""
        key = self._make_key(name, labels)
        with self.lock:
            cutoff = datetime.now() - timedelta(minutes=self.retention_minutes)
            return [point for point in self.metrics[key] if point.timestamp > cutoff]

    def get_counter(self, name: str, labels: Dict = None) -> int:
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Histogram statistics (min, max, mean, median, percentiles)

        Args:
            name: Metric name, or an already built key
            labels: Optional labels filter
        """
        key = self._make_key(name, labels)
        values = self.histograms.get(key, [])

        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'mean': 0,
                    'median': 0, 'p50': 0, 'p95': 0, 'p99': 0}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            'count': count,
            'min': sorted_values[0],
            'max': sorted_values[-1],
            'mean': statistics.mean(sorted_values),
            'median': statistics.median(sorted_values),
            'p50': sorted_values[count // 2],
            'p95': sorted_values[int(count * 0.95)] if count > 20 else sorted_values[-1],
            'p99': sorted_values[int(count * 0.99)] if count > 100 else sorted_values[-1]
        }

    def _make_key(self, name: str, labels: Dict = None) -> str:
        if not labels:
            return name
        label_str = ','.join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        with self.lock:
            histogram_keys = list(self.histograms.keys())
            summary = {
                'counters': dict(self.counters),
                'gauges': dict(self.gauges),
            }
        summary['histograms'] = {key: self.get_histogram_stats(key) for key in histogram_keys}
        summary['timestamp'] = datetime.now().isoformat()
        return summary

    def export_prometheus(self) -> str:
        """Metrics in Prometheus text exposition format"""
        metrics = self.get_all_metrics()
        output = []
        declared = set()

        def declare(clean_name: str, kind: str):
            if clean_name not in declared:
                output.append(f"# TYPE {clean_name} {kind}")
                declared.add(clean_name)

        for name, value in sorted(metrics['counters'].items()):
            declare(name.split('{')[0], 'counter')
            output.append(f"{name} {value}")

        for name, value in sorted(metrics['gauges'].items()):
            declare(name.split('{')[0], 'gauge')
            output.append(f"{name} {value}")

        for name, stats in sorted(metrics['histograms'].items()):
            if stats['count'] == 0:
                continue
            clean_name, _, label_str = name.partition('{')
            label_str = label_str.rstrip('}')
            prefix = f"{label_str}," if label_str else ""
            suffix = f"{{{label_str}}}" if label_str else ""
            declare(clean_name, 'summary')
            output.append(f"{clean_name}_count{suffix} {stats['count']}")
            output.append(f"{clean_name}_sum{suffix} {stats['mean'] * stats['count']}")
            for quantile, key in (("0.5", 'p50'), ("0.95", 'p95'), ("0.99", 'p99')):
                output.append(f'{clean_name}{{{prefix}quantile="{quantile}"}} {stats[key]}')

        return "\n".join(output) + "\n"

    def reset(self):
        with self.lock:
            self.metrics.clear()
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
        logger.info("Metrics reset")

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Run named health checks against the engine"""

    def __init__(self, engine):
        self.engine = engine
        self.checks: Dict[str, Callable] = {}
        self._setup_default_checks()

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Sync or async callable returning HealthCheck or bool
        """
        self.checks[name] = check_fn

    def _setup_default_checks(self):
        self.register_check('engine', self._check_engine)
        self.register_check('periodic_tasks', self._check_periodic_tasks)
        self.register_check('repository', self._check_repository)
        self.register_check('system_resources', self._check_system_resources)

    async def run_checks(self) -> List[HealthCheck]:
        results = []

        for name, check_fn in self.checks.items():
            start_time = time.time()
            try:
                if asyncio.iscoroutinefunction(check_fn):
                    result = await check_fn()
                else:
                    result = check_fn()
                latency = (time.time() - start_time) * 1000

                if isinstance(result, HealthCheck):
                    result.latency_ms = latency
                    results.append(result)
                else:
                    results.append(HealthCheck(
                        component=name,
                        status='healthy' if result else 'unhealthy',
                        timestamp=datetime.now(),
                        latency_ms=latency
                    ))
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(
                    component=name,
                    status='unhealthy',
                    timestamp=datetime.now(),
                    details={'error': str(e)}
                ))

        return results

    async def get_health_status(self) -> Dict:
        results = await self.run_checks()

        overall_status = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall_status = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall_status = 'degraded'

        report = {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }
        return report

    def _check_engine(self) -> HealthCheck:
        status = self.engine.status
        return HealthCheck(
            component='engine',
            status='healthy' if status == 'running' else 'unhealthy',
            timestamp=datetime.now(),
            details={'status': status, 'channels': len(self.engine.broadcaster.channels)}
        )

    def _check_periodic_tasks(self) -> HealthCheck:
        tasks = self.engine.periodic_tasks
        stopped = [t.name for t in tasks if not t.running]
        failing = {t.name: t.last_error for t in tasks if t.last_error}

        if not self.engine.config.simulation_enabled:
            status = 'healthy'
        elif stopped:
            status = 'unhealthy'
        elif failing:
            status = 'degraded'
        else:
            status = 'healthy'

        return HealthCheck(
            component='periodic_tasks',
            status=status,
            timestamp=datetime.now(),
            details={
                'simulation_enabled': self.engine.config.simulation_enabled,
                'stopped': stopped,
                'failing': failing,
                'ticks': {t.name: t.tick_count for t in tasks}
            }
        )

    async def _check_repository(self) -> HealthCheck:
        missions = await self.engine.repository.list_missions()
        drones = await self.engine.repository.list_drones()
        return HealthCheck(
            component='repository',
            status='healthy',
            timestamp=datetime.now(),
            details={'missions': len(missions), 'drones': len(drones)}
        )

    def _check_system_resources(self) -> HealthCheck:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory_percent = psutil.virtual_memory().percent

        if cpu_percent > 95 or memory_percent > 95:
            status = 'unhealthy'
        elif cpu_percent > 80 or memory_percent > 80:
            status = 'degraded'
        else:
            status = 'healthy'

        return HealthCheck(
            component='system_resources',
            status=status,
            timestamp=datetime.now(),
            details={'cpu_percent': cpu_percent, 'memory_percent': memory_percent}
        )
