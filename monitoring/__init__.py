"""
Monitoring & Observability Layer

Provides monitoring and observability for the Relay backend including:
- Structured logging (JSON formatting, conversation/client context injection)
- Metrics collection (Prometheus-compatible counters, gauges, histograms)
- Health checks (system, sync engine, WebSocket transport)
"""

# Logging
from .logging import (
    JSONFormatter,
    ContextFilter,
    StructuredLogger,
    configure_logging,
    configure_from_preset,
    get_logger,
    set_request_context,
    clear_request_context,
    get_request_id,
    get_conversation_id,
    get_client_id,
    LOGGING_PRESETS,
)

# Metrics
from .metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    get_registry,
    setup_sync_metrics,
)

# Health checks
from .health import (
    HealthStatus,
    HealthCheckResult,
    HealthChecker,
    SyncHealthChecker,
    WebSocketHealthChecker,
    initialize_health_checks,
)

__all__ = [
    # Logging
    'JSONFormatter',
    'ContextFilter',
    'StructuredLogger',
    'configure_logging',
    'configure_from_preset',
    'get_logger',
    'set_request_context',
    'clear_request_context',
    'get_request_id',
    'get_conversation_id',
    'get_client_id',
    'LOGGING_PRESETS',

    # Metrics
    'Counter',
    'Gauge',
    'Histogram',
    'MetricsRegistry',
    'get_registry',
    'setup_sync_metrics',

    # Health
    'HealthStatus',
    'HealthCheckResult',
    'HealthChecker',
    'SyncHealthChecker',
    'WebSocketHealthChecker',
    'initialize_health_checks',
]
