"""Prometheus metrics for the PDP gateway.

Metrics goals:
- low-cardinality labels (no paths, instance ids or header values)
- separate "policy denied" from "could not decide" signals
"""
from __future__ import annotations

from prometheus_client import Counter, Histogram

DECISIONS_TOTAL = Counter(
    "pdp_gateway_decisions_total",
    "Total authorization outcomes",
    ["outcome"],
)
ERRORS_TOTAL = Counter(
    "pdp_gateway_errors_total",
    "Total authorization steps aborted, by error kind",
    ["kind"],
)
PDP_ATTEMPTS_TOTAL = Counter(
    "pdp_gateway_pdp_attempts_total",
    "Total decision endpoint attempts",
    ["result"],
)
PDP_LATENCY_SECONDS = Histogram(
    "pdp_gateway_pdp_latency_seconds",
    "Decision call latency in seconds, including retries",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
CREDENTIAL_REFRESH_TOTAL = Counter(
    "pdp_gateway_credential_refresh_total",
    "Total credential/client rebuilds",
    ["reason"],
)


def record_decision(outcome: str) -> None:
    DECISIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_error(kind: str) -> None:
    ERRORS_TOTAL.labels(kind=str(kind)).inc()


def record_pdp_attempt(result: str) -> None:
    PDP_ATTEMPTS_TOTAL.labels(result=str(result)).inc()


def observe_pdp_latency(seconds: float) -> None:
    PDP_LATENCY_SECONDS.observe(max(0.0, float(seconds)))


def record_credential_refresh(reason: str) -> None:
    CREDENTIAL_REFRESH_TOTAL.labels(reason=str(reason)).inc()
