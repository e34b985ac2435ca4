"""Prometheus metrics helpers for the upstream reconciler."""

from __future__ import annotations

from prometheus_client import Counter

_reconciled_counter = Counter(
    "upstream_records_reconciled_total",
    "Upstream cache records reconciled onto local entities, by type and outcome.",
    ["type", "outcome"],
)
_walk_failure_counter = Counter(
    "upstream_walk_failures_total",
    "Records whose reconciliation raised during a cache walk.",
    ["type"],
)
_cycle_counter = Counter(
    "upstream_hierarchy_cycles_total",
    "Parent links rejected because they would close a hierarchy loop.",
)
_expired_counter = Counter(
    "upstream_records_expired_total",
    "Cache records reset to the expired sentinel, by type.",
    ["type"],
)


def record_reconciled(record_type: str, outcome: str) -> None:
    """Increment the reconciliation outcome counter."""

    _reconciled_counter.labels(type=record_type, outcome=outcome).inc()


def record_walk_failure(record_type: str) -> None:
    _walk_failure_counter.labels(type=record_type).inc()


def record_hierarchy_cycle() -> None:
    _cycle_counter.inc()


def record_expired(record_type: str, count: int) -> None:
    if count:
        _expired_counter.labels(type=record_type).inc(count)
