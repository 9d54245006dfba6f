"""
Prometheus Monitoring for the Trust & Compliance Engine.

Provides Prometheus metrics for:
- Audit trail writes (success, failure, dropped under back-pressure)
- Retention sweep deletions per data type
- GDPR export/erasure request outcomes
- Risk engine pattern detection
- Crypto operation outcomes and latency

Used by:
- Prometheus scraping (get_metrics_text)
- Alerting on audit write failures and stuck erasure jobs
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)


# =============================================================================
# Metrics Definitions
# =============================================================================

# Audit Metrics
audit_writes_total = Counter(
    "trust_audit_writes_total",
    "Audit entries handled, by outcome",
    ["outcome"],
)

audit_queue_depth = Gauge(
    "trust_audit_queue_depth",
    "Audit events waiting in the dispatcher queue",
)

# Retention Metrics
retention_rows_deleted_total = Counter(
    "trust_retention_rows_deleted_total",
    "Rows deleted by retention sweeps",
    ["data_type"],
)

retention_cleanup_errors_total = Counter(
    "trust_retention_cleanup_errors_total",
    "Retention cleanup routines that failed",
    ["data_type"],
)

# Erasure Metrics
erasure_requests_total = Counter(
    "trust_erasure_requests_total",
    "Export/delete requests by type and terminal status",
    ["request_type", "status"],
)

erasure_requests_in_flight = Gauge(
    "trust_erasure_requests_in_flight",
    "Export/delete requests currently being processed",
)

# Risk Metrics
risk_patterns_total = Counter(
    "trust_risk_patterns_total",
    "Usage patterns recorded by the risk engine",
    ["pattern_type", "flagged"],
)

# Crypto Metrics
crypto_operations_total = Counter(
    "trust_crypto_operations_total",
    "Crypto operations by operation and outcome",
    ["operation", "outcome"],
)

crypto_operation_seconds = Histogram(
    "trust_crypto_operation_seconds",
    "Crypto operation latency in seconds (includes key derivation)",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)


# =============================================================================
# Metrics Recording Functions
# =============================================================================


def record_audit_write(outcome: str) -> None:
    """
    Record one audit entry outcome.

    Args:
        outcome: "success", "failure" or "dropped"
    """
    audit_writes_total.labels(outcome=outcome).inc()


def update_audit_queue_depth(depth: int) -> None:
    audit_queue_depth.set(depth)


def record_retention_deletion(data_type: str, count: int) -> None:
    """
    Record rows removed by a retention cleanup.

    Args:
        data_type: Domain that was swept (audio, transcription, user_audio, ...)
        count: Number of rows deleted
    """
    if count > 0:
        retention_rows_deleted_total.labels(data_type=data_type).inc(count)


def record_retention_error(data_type: str) -> None:
    retention_cleanup_errors_total.labels(data_type=data_type).inc()


def record_erasure_outcome(request_type: str, status: str) -> None:
    """
    Record a request reaching a terminal state.

    Args:
        request_type: "export" or "delete"
        status: "completed" or "failed"
    """
    erasure_requests_total.labels(request_type=request_type, status=status).inc()


def record_risk_pattern(pattern_type: str, flagged: bool) -> None:
    risk_patterns_total.labels(pattern_type=pattern_type, flagged=str(flagged).lower()).inc()


# =============================================================================
# Context Managers for Automatic Timing
# =============================================================================


@contextmanager
def track_crypto_operation(operation: str) -> Iterator[None]:
    """
    Context manager for tracking crypto operation metrics.

    Usage:
        >>> with track_crypto_operation("encrypt"):
        ...     payload = cipher.encrypt(...)
    """
    start_time = time.perf_counter()
    outcome = "failure"
    try:
        yield
        outcome = "success"
    finally:
        crypto_operation_seconds.labels(operation=operation).observe(
            time.perf_counter() - start_time
        )
        crypto_operations_total.labels(operation=operation, outcome=outcome).inc()


@contextmanager
def track_erasure_in_flight() -> Iterator[None]:
    erasure_requests_in_flight.inc()
    try:
        yield
    finally:
        erasure_requests_in_flight.dec()


# =============================================================================
# Metrics Export
# =============================================================================


def get_metrics_text() -> bytes:
    """
    Render all registered metrics in the Prometheus exposition format.

    Returns:
        Metrics payload suitable for a /metrics endpoint
    """
    return generate_latest()
