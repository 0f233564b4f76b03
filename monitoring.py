# Monitoring & Metrics Dashboard
# File: monitoring.py

"""
Metrics and health for the fleet engine.

MetricsCollector is a small thread-safe store of counters, gauges and
histograms keyed by name + labels. EngineMetrics wires it to the
orchestrator: mission/command events from the event router, tick latency,
fleet gauges, psutil process/system stats, and Prometheus text export.
"""

import os
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
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

@dataclass
class HealthCheck:
    """Result of one component check"""
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
    """Counters, gauges and histograms with a bounded time series per key"""

    HISTOGRAM_WINDOW = 1000

    def __init__(self, retention_minutes: int = 60):
        self.retention_minutes = retention_minutes
        self.series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.HISTOGRAM_WINDOW))
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """Add to a monotonically increasing counter"""
        with self.lock:
            key = self._make_key(name, labels)
            self.counters[key] += value
            self.series[key].append(MetricPoint(datetime.now(), self.counters[key], labels or {}))

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        with self.lock:
            key = self._make_key(name, labels)
            self.gauges[key] = value
            self.series[key].append(MetricPoint(datetime.now(), value, labels or {}))

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Observe one value (latencies, batch sizes); only the last 1000 are kept"""
        with self.lock:
            key = self._make_key(name, labels)
            self.histograms[key].append(value)
            self.series[key].append(MetricPoint(datetime.now(), value, labels or {}))

    def get_metric(self, name: str, labels: Dict = None) -> List[MetricPoint]:
        """Time series for a key, limited to the retention window"""
        key = self._make_key(name, labels)
        cutoff = datetime.now() - timedelta(minutes=self.retention_minutes)
        with self.lock:
            return [point for point in self.series.get(key, ()) if point.timestamp > cutoff]

    def get_counter(self, name: str, labels: Dict = None) -> int:
        with self.lock:
            return self.counters.get(self._make_key(name, labels), 0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        with self.lock:
            values = list(self.histograms.get(self._make_key(name, labels), ()))
        return self._summarize(values)

    @staticmethod
    def _summarize(values: List[float]) -> Dict:
        if not values:
            return {'count': 0, 'sum': 0, 'min': 0, 'max': 0, 'mean': 0,
                    'median': 0, 'p50': 0, 'p95': 0, 'p99': 0}

        ordered = sorted(values)
        count = len(ordered)
        return {
            'count': count,
            'sum': sum(ordered),
            'min': ordered[0],
            'max': ordered[-1],
            'mean': statistics.mean(ordered),
            'median': statistics.median(ordered),
            'p50': ordered[count // 2],
            'p95': ordered[int(count * 0.95)] if count > 20 else ordered[-1],
            'p99': ordered[int(count * 0.99)] if count > 100 else ordered[-1]
        }

    @staticmethod
    def _make_key(name: str, labels: Dict = None) -> str:
        # name{k1=v1,k2=v2}, labels sorted
        if not labels:
            return name
        label_str = ','.join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        with self.lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            histograms = {key: list(values) for key, values in self.histograms.items()}

        return {
            'counters': counters,
            'gauges': gauges,
            'histograms': {key: self._summarize(values) for key, values in histograms.items()},
            'timestamp': datetime.now().isoformat()
        }


# ============================================================================
# ENGINE METRICS
# ============================================================================

class EngineMetrics:
    """Metrics and health checks for a FleetOrchestrator"""

    def __init__(self, orchestrator, collect_interval: float = 10.0):
        """
        Args:
            orchestrator: FleetOrchestrator instance (needs event_router,
                status, start_time and get_status())
            collect_interval: Seconds between background gauge refreshes
        """
        self.orchestrator = orchestrator
        self.collector = MetricsCollector()
        self.collect_interval = collect_interval
        self.process = psutil.Process(os.getpid())
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.checks: Dict[str, Callable[[], HealthCheck]] = {
            'engine': self._check_engine,
            'event_router': self._check_event_router,
            'system_resources': self._check_system_resources,
        }

        self._subscribe()

    def _subscribe(self):
        router = self.orchestrator.event_router
        router.subscribe('mission.*', self._on_mission_event)
        router.subscribe('command.*', self._on_command_event)
        router.add_error_handler(self._on_handler_error)

    def _on_mission_event(self, event):
        # mission.started -> started
        outcome = event.type.split('.', 1)[1]
        labels = {'outcome': outcome}
        if outcome == 'failed' and event.data.get('failure_reason'):
            labels['reason'] = event.data['failure_reason']
        self.collector.record_counter('fleet_missions_total', labels=labels)

    def _on_command_event(self, event):
        self.collector.record_counter(
            'fleet_commands_total',
            labels={'command': event.data.get('command', 'unknown'), 'result': 'applied'}
        )

    def _on_handler_error(self, error: Exception):
        self.collector.record_counter('event_handler_errors_total',
                                      labels={'error': type(error).__name__})

    # ------------------------------------------------------------------------
    # Recording hooks called by the orchestrator
    # ------------------------------------------------------------------------

    def record_tick(self, duration_ms: float, drones: int):
        self.collector.record_histogram('engine_tick_duration_ms', duration_ms)
        self.collector.record_counter('engine_ticks_total')
        self.collector.record_gauge('engine_tick_drones', drones)

    def record_command_rejected(self, command: str, code: str):
        self.collector.record_counter('fleet_commands_total',
                                      labels={'command': command, 'result': code})

    def refresh_fleet_gauges(self):
        fleet = self.orchestrator.get_status()['fleet_stats']
        self.collector.record_gauge('fleet_drones_total', fleet['total'])
        self.collector.record_gauge('fleet_drones_in_mission', fleet['by_status'].get('in-mission', 0))
        self.collector.record_gauge('fleet_battery_average', fleet['average_battery'])
        self.collector.record_gauge('fleet_missions_active', fleet['active_missions'])
        for status, count in fleet['by_status'].items():
            self.collector.record_gauge('fleet_drones_by_status', count, labels={'status': status})

    def refresh_system_gauges(self):
        with self.process.oneshot():
            self.collector.record_gauge('process_cpu_percent', self.process.cpu_percent())
            self.collector.record_gauge('process_memory_rss_bytes', self.process.memory_info().rss)
            self.collector.record_gauge('process_threads', self.process.num_threads())
        self.collector.record_gauge('system_cpu_percent', psutil.cpu_percent())
        self.collector.record_gauge('system_memory_percent', psutil.virtual_memory().percent)

    # ------------------------------------------------------------------------
    # Background collection
    # ------------------------------------------------------------------------

    def start(self):
        if self.running:
            logger.warning("Engine metrics already running")
            return

        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._collect_loop, daemon=True, name="engine-metrics")
        self._thread.start()
        logger.info("Engine metrics collection started")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Engine metrics collection stopped")

    def _collect_loop(self):
        while self.running:
            try:
                self.refresh_fleet_gauges()
                self.refresh_system_gauges()
            except Exception as e:
                logger.error(f"Metrics collection error: {e}")
            self._stop_event.wait(self.collect_interval)

    # ------------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------------

    def run_checks(self) -> List[HealthCheck]:
        results = []
        for name, check in self.checks.items():
            started = time.perf_counter()
            try:
                result = check()
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                result = HealthCheck(name, 'unhealthy', datetime.now(), {'error': str(e)})
            result.latency_ms = (time.perf_counter() - started) * 1000
            results.append(result)
        return results

    def get_health_status(self) -> Dict:
        results = self.run_checks()

        overall = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall = 'degraded'

        return {
            'overall_status': overall,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
        }

    def _check_engine(self) -> HealthCheck:
        status = self.orchestrator.status
        tick_stats = self.collector.get_histogram_stats('engine_tick_duration_ms')

        health = 'healthy' if status == 'running' else 'unhealthy'
        if health == 'healthy' and tick_stats['p95'] > 500:
            health = 'degraded'

        return HealthCheck(
            component='engine',
            status=health,
            timestamp=datetime.now(),
            details={'status': status, 'tick_p95_ms': tick_stats['p95'], 'ticks': tick_stats['count']}
        )

    def _check_event_router(self) -> HealthCheck:
        router = self.orchestrator.event_router
        return HealthCheck(
            component='event_router',
            status='healthy',
            timestamp=datetime.now(),
            details={'events': len(router.event_history), 'subscriptions': len(router.subscribers)}
        )

    def _check_system_resources(self) -> HealthCheck:
        cpu_percent = psutil.cpu_percent()
        memory = psutil.virtual_memory()

        status = 'healthy'
        if cpu_percent > 90 or memory.percent > 90:
            status = 'unhealthy'
        elif cpu_percent > 70 or memory.percent > 70:
            status = 'degraded'

        return HealthCheck(
            component='system_resources',
            status=status,
            timestamp=datetime.now(),
            details={
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024**3),
            }
        )

    # ------------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------------

    def get_dashboard_data(self) -> Dict:
        start_time = self.orchestrator.start_time
        return {
            'health': self.get_health_status(),
            'metrics': self.collector.get_all_metrics(),
            'rates': {
                'ticks_per_second': self._calculate_rate('engine_ticks_total'),
            },
            'system': {
                'cpu_percent': psutil.cpu_percent(),
                'memory_percent': psutil.virtual_memory().percent,
                'process_rss_mb': self.process.memory_info().rss / (1024**2),
                'uptime': str(datetime.now() - start_time) if start_time else 'N/A'
            },
            'timestamp': datetime.now().isoformat()
        }

    def _calculate_rate(self, metric_name: str, window_seconds: int = 60) -> float:
        """Per-second increase of a counter over the trailing window"""
        cutoff = datetime.now() - timedelta(seconds=window_seconds)
        points = [p for p in self.collector.get_metric(metric_name) if p.timestamp > cutoff]
        if len(points) < 2:
            return 0.0

        value_diff = points[-1].value - points[0].value
        time_diff = (points[-1].timestamp - points[0].timestamp).total_seconds()
        return value_diff / time_diff if time_diff > 0 else 0.0

    def export_prometheus(self) -> str:
        """Prometheus text exposition of every counter, gauge and histogram summary"""
        metrics = self.collector.get_all_metrics()
        output = []
        declared = set()

        def declare(key: str, kind: str):
            base = key.split('{')[0]
            if base not in declared:
                declared.add(base)
                output.append(f"# TYPE {base} {kind}")

        for key, value in sorted(metrics['counters'].items()):
            declare(key, 'counter')
            output.append(f"{key} {value}")

        for key, value in sorted(metrics['gauges'].items()):
            declare(key, 'gauge')
            output.append(f"{key} {value}")

        for key, stats in sorted(metrics['histograms'].items()):
            if stats['count'] == 0:
                continue
            declare(key, 'summary')
            output.append(f"{key}_count {stats['count']}")
            output.append(f"{key}_sum {stats['sum']}")
            for quantile in ('0.5', '0.95', '0.99'):
                stat = 'p' + quantile.replace('0.', '').ljust(2, '0')
                output.append(f'{key}{{quantile="{quantile}"}} {stats[stat]}')

        return "\n".join(output) + "\n"
