"""Metric definitions used across the service."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


QUEUE_ITEMS_TOTAL = "revocation_queue_items_total"
WORKER_BATCH_DURATION = "revocation_worker_batch_duration_seconds"
LEDGER_TRANSACTIONS_TOTAL = "ledger_transactions_total"
SYNC_DISCREPANCIES_TOTAL = "ledger_sync_discrepancies_total"
SYNC_FAILURES_TOTAL = "ledger_sync_failures_total"
VERIFICATION_INCONSISTENCIES_TOTAL = "ledger_verification_inconsistencies_total"
VERIFICATION_ERRORS_TOTAL = "ledger_verification_errors_total"
REVOCATIONS_TOTAL = "ticket_revocations_total"


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=QUEUE_ITEMS_TOTAL,
        metric_type="counter",
        description="Revocation queue items handled by the worker, by outcome.",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name=WORKER_BATCH_DURATION,
        metric_type="distribution",
        description="Duration of one revocation worker batch in seconds.",
    ),
    MetricDefinition(
        name=LEDGER_TRANSACTIONS_TOTAL,
        metric_type="counter",
        description="Revocation transactions submitted to the ledger, by result.",
        label_names=("result",),
    ),
    MetricDefinition(
        name=SYNC_DISCREPANCIES_TOTAL,
        metric_type="counter",
        description="Tickets overwritten from ledger state by the reconciler.",
    ),
    MetricDefinition(
        name=SYNC_FAILURES_TOTAL,
        metric_type="counter",
        description="Tickets the reconciler could not sync.",
    ),
    MetricDefinition(
        name=VERIFICATION_INCONSISTENCIES_TOTAL,
        metric_type="counter",
        description="Tickets flagged as inconsistent by the verifier.",
    ),
    MetricDefinition(
        name=VERIFICATION_ERRORS_TOTAL,
        metric_type="counter",
        description="Tickets the verifier failed to check.",
    ),
    MetricDefinition(
        name=REVOCATIONS_TOTAL,
        metric_type="counter",
        description="Tickets revoked locally, by initiating path.",
        label_names=("source",),
    ),
)
