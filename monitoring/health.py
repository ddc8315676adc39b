"""
Health Checks - Monitoring Layer

Component checkers for the sync engine and the WebSocket transport, plus a
psutil snapshot of the host, rolled up into one report.

@.architecture
Incoming: app.py, api/v1/endpoints/health.py --- {SyncEngine, WebSocketHub, str component_name}
Processing: check_all(), check_component(), _run_checker(), _check_system(), rollup() --- {4 jobs: component_checking, resource_sampling, timing, status_rollup}
Outgoing: api/v1/endpoints/health.py --- {Dict[str, Any] report, HealthCheckResult, HealthStatus enum}
"""

import asyncio
import platform
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import psutil

# A turn older than this is reported as stalled
STALLED_TURN_SECONDS = 120.0
RESOURCE_LIMIT_PERCENT = 90.0


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    component: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: str = field(default_factory=_utc_now)
    response_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component': self.component,
            'status': self.status.value,
            'message': self.message,
            'details': self.details,
            'response_time_ms': self.response_time_ms,
        }


def rollup(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst status wins; no components at all is unknown."""
    seen = set(statuses)
    if not seen:
        return HealthStatus.UNKNOWN
    for status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
        if status in seen:
            return status
    return HealthStatus.HEALTHY


class HealthChecker:
    """
    Registry of component checkers.

    A checker is any object with ``async check_health() -> dict``. The dict's
    ``healthy`` and ``degraded`` flags pick the status, ``message`` becomes
    the summary line and the whole dict is returned as details.
    """

    def __init__(self, include_system: bool = True, timeout: float = 5.0):
        self._started = time.time()
        self._checkers: Dict[str, Any] = {}
        self._include_system = include_system
        self._timeout = timeout

    def register_checker(self, name: str, checker: Any) -> None:
        self._checkers[name] = checker

    @property
    def components(self) -> List[str]:
        prefix = ["system"] if self._include_system else []
        return prefix + list(self._checkers)

    def get_uptime(self) -> float:
        return time.time() - self._started

    async def check_all(self) -> Dict[str, Any]:
        """Run every check concurrently and roll the results up."""
        began = time.perf_counter()
        results = await asyncio.gather(*(self.check_component(name) for name in self.components))

        return {
            'status': rollup(r.status for r in results).value,
            'timestamp': _utc_now(),
            'uptime_seconds': self.get_uptime(),
            'check_duration_ms': (time.perf_counter() - began) * 1000,
            'components': [r.to_dict() for r in results],
        }

    async def check_component(self, component: str) -> Optional[HealthCheckResult]:
        """Run one check. Returns None for names that were never registered."""
        if component == "system" and self._include_system:
            return self._check_system()
        if component not in self._checkers:
            return None
        return await self._run_checker(component)

    async def _run_checker(self, name: str) -> HealthCheckResult:
        began = time.perf_counter()
        try:
            report = await asyncio.wait_for(self._checkers[name].check_health(), timeout=self._timeout)
        except asyncio.TimeoutError:
            return HealthCheckResult(
                component=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self._timeout}s",
            )
        except Exception as e:
            return HealthCheckResult(
                component=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check failed: {e}",
                details={'error': str(e)},
            )

        if not report.get('healthy', False):
            status = HealthStatus.UNHEALTHY
        elif report.get('degraded'):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthCheckResult(
            component=name,
            status=status,
            message=report.get('message', 'ok'),
            details=report,
            response_time_ms=(time.perf_counter() - began) * 1000,
        )

    def _check_system(self) -> HealthCheckResult:
        try:
            memory = psutil.virtual_memory()
            cpu = psutil.cpu_percent(interval=None)
            process = psutil.Process()
        except psutil.Error as e:
            return HealthCheckResult(
                component="system",
                status=HealthStatus.UNKNOWN,
                message=f"Could not sample resources: {e}",
            )

        pressure = [
            f"{label} at {value}%"
            for label, value in (("memory", memory.percent), ("cpu", cpu))
            if value > RESOURCE_LIMIT_PERCENT
        ]
        return HealthCheckResult(
            component="system",
            status=HealthStatus.DEGRADED if pressure else HealthStatus.HEALTHY,
            message="; ".join(pressure) or "Resources within limits",
            details={
                'platform': platform.system(),
                'python_version': platform.python_version(),
                'cpu': {'percent': cpu, 'count': psutil.cpu_count()},
                'memory': {
                    'percent_used': memory.percent,
                    'available_mb': round(memory.available / 2**20),
                    'process_rss_mb': round(process.memory_info().rss / 2**20, 1),
                },
            },
        )


class SyncHealthChecker:
    """
    Sync engine checker.

    Unhealthy when the engine is stopped or its hub closed; degraded while a
    turn has been generating longer than ``stalled_after`` seconds.
    """

    def __init__(self, engine: Any, stalled_after: float = STALLED_TURN_SECONDS):
        self.engine = engine
        self.stalled_after = stalled_after

    async def check_health(self) -> Dict[str, Any]:
        status = self.engine.get_health_status()
        if not status.get('running'):
            return {'healthy': False, 'message': 'Sync engine not running', **status}
        if status['hub'].get('closed'):
            return {'healthy': False, 'message': 'Broadcast hub closed', **status}

        turns = status['turns']
        summary = f"{turns['active_turns']} turns in flight, {status['hub']['listeners']} listeners"
        if turns['oldest_turn_seconds'] > self.stalled_after:
            return {
                'healthy': True,
                'degraded': True,
                'message': f"{summary}; oldest turn running {turns['oldest_turn_seconds']:.0f}s",
                **status,
            }
        return {'healthy': True, 'message': summary, **status}


class WebSocketHealthChecker:
    """WebSocket transport checker; unhealthy once shutdown has begun."""

    def __init__(self, ws_hub: Any):
        self.ws_hub = ws_hub

    async def check_health(self) -> Dict[str, Any]:
        stats = self.ws_hub.get_stats()
        return {
            'healthy': not stats['shutting_down'],
            'message': f"{stats['connections']} clients, {stats['subscriptions']} subscriptions",
            **stats,
        }


def initialize_health_checks(
    engine: Optional[Any] = None,
    ws_hub: Optional[Any] = None,
    include_system: bool = True,
) -> HealthChecker:
    """Build the application's HealthChecker with whichever components exist."""
    checker = HealthChecker(include_system=include_system)
    if engine is not None:
        checker.register_checker('sync', SyncHealthChecker(engine))
    if ws_hub is not None:
        checker.register_checker('websocket', WebSocketHealthChecker(ws_hub))
    return checker
