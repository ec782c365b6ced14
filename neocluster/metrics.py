# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Prometheus metrics for the reconcile engine.

Counters, gauges and histograms live here as module-level instances so the
reconciler, the store helpers, the split-brain detector and the upgrade
orchestrator record into one registry. Every per-cluster metric is labeled
by cluster_name and namespace.
"""

import logging
from typing import Final

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "success"
RESULT_FAILURE = "failure"

OPERATION_RECONCILE = "reconcile"
OPERATION_DELETE = "delete"

CLUSTER_LABELS = ("cluster_name", "namespace")

RECONCILE_TOTAL: Final[Counter] = Counter(
    "neo4j_operator_reconcile_total",
    "Total reconcile passes, labeled by operation and result.",
    labelnames=CLUSTER_LABELS + ("operation", "result"),
)

RECONCILE_DURATION: Final[Histogram] = Histogram(
    "neo4j_operator_reconcile_duration_seconds",
    "Wall time of one reconcile pass in seconds.",
    labelnames=CLUSTER_LABELS + ("operation",),
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

CLUSTER_PHASE: Final[Gauge] = Gauge(
    "neo4j_operator_cluster_phase",
    "1 for the phase the cluster is in, 0 for every other phase.",
    labelnames=CLUSTER_LABELS + ("phase",),
)

CLUSTER_HEALTHY: Final[Gauge] = Gauge(
    "neo4j_operator_cluster_healthy",
    "1 when every expected server agrees on one membership, else 0.",
    labelnames=CLUSTER_LABELS,
)

CLUSTER_REPLICAS: Final[Gauge] = Gauge(
    "neo4j_operator_cluster_replicas",
    "Server pods of the cluster, labeled by state (desired or ready).",
    labelnames=CLUSTER_LABELS + ("state",),
)

SPLIT_BRAIN_DETECTED: Final[Counter] = Counter(
    "neo4j_operator_split_brain_detected_total",
    "Confirmed split-brain partitions acted on by the repair step.",
    labelnames=CLUSTER_LABELS,
)

UPGRADE_TOTAL: Final[Counter] = Counter(
    "neo4j_operator_upgrade_total",
    "Finished rolling upgrades, labeled by result.",
    labelnames=CLUSTER_LABELS + ("result",),
)

UPGRADE_DURATION: Final[Histogram] = Histogram(
    "neo4j_operator_upgrade_duration_seconds",
    "Time from upgrade start to completion or failure, labeled by result.",
    labelnames=CLUSTER_LABELS + ("result",),
    buckets=(30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0),
)

RESOURCE_VERSION_CONFLICTS: Final[Counter] = Counter(
    "neo4j_operator_resource_version_conflicts_total",
    "Writes rejected because the object changed since it was read.",
    labelnames=("resource_type", "namespace"),
)

CONFLICT_RETRY_ATTEMPTS: Final[Histogram] = Histogram(
    "neo4j_operator_conflict_retry_attempts",
    "Attempts a conflicting read-modify-write needed before it settled.",
    labelnames=("resource_type", "namespace"),
    buckets=(1, 2, 3, 4, 5, 10),
)

CONFLICT_RETRIES_EXHAUSTED: Final[Counter] = Counter(
    "neo4j_operator_conflict_retries_exhausted_total",
    "Read-modify-writes abandoned after running out of conflict retries.",
    labelnames=("resource_type", "namespace"),
)


def record_reconcile(cluster_name: str, namespace: str, operation: str, duration: float, success: bool):
    result = RESULT_SUCCESS if success else RESULT_FAILURE
    RECONCILE_TOTAL.labels(cluster_name, namespace, operation, result).inc()
    RECONCILE_DURATION.labels(cluster_name, namespace, operation).observe(duration)


def record_cluster_state(
    cluster_name: str, namespace: str, phase: str, phases, healthy: bool, desired: int = None, ready: int = None
):
    """
    Publish the phase and health gauges after a status write

    Args:
        phase: Current phase value
        phases: Every phase value, so the previous phase drops back to 0
        healthy: Whether membership was classified healthy
    """
    for candidate in phases:
        CLUSTER_PHASE.labels(cluster_name, namespace, candidate).set(1 if candidate == phase else 0)
    CLUSTER_HEALTHY.labels(cluster_name, namespace).set(1 if healthy else 0)
    if desired is not None:
        CLUSTER_REPLICAS.labels(cluster_name, namespace, "desired").set(desired)
    if ready is not None:
        CLUSTER_REPLICAS.labels(cluster_name, namespace, "ready").set(ready)


def forget_cluster(cluster_name: str, namespace: str, phases):
    """Drop the gauges of a deleted cluster so stale series stop being exported"""
    for gauge, extra in (
        (CLUSTER_PHASE, list(phases)),
        (CLUSTER_REPLICAS, ["desired", "ready"]),
        (CLUSTER_HEALTHY, [None]),
    ):
        for value in extra:
            labels = (cluster_name, namespace) if value is None else (cluster_name, namespace, value)
            try:
                gauge.remove(*labels)
            except KeyError:
                pass


def record_split_brain(cluster_name: str, namespace: str):
    SPLIT_BRAIN_DETECTED.labels(cluster_name, namespace).inc()


def record_upgrade(cluster_name: str, namespace: str, success: bool, duration: float = None):
    result = RESULT_SUCCESS if success else RESULT_FAILURE
    UPGRADE_TOTAL.labels(cluster_name, namespace, result).inc()
    if duration is not None:
        UPGRADE_DURATION.labels(cluster_name, namespace, result).observe(max(duration, 0.0))


def record_conflict(resource_type: str, namespace: str):
    RESOURCE_VERSION_CONFLICTS.labels(resource_type, namespace).inc()


def record_conflict_retries(resource_type: str, namespace: str, attempts: int, exhausted: bool = False):
    CONFLICT_RETRY_ATTEMPTS.labels(resource_type, namespace).observe(attempts)
    if exhausted:
        CONFLICT_RETRIES_EXHAUSTED.labels(resource_type, namespace).inc()


def start_metrics_server(port: int):
    """Expose the default registry over HTTP; a port of 0 leaves it unexposed"""
    if not port:
        return
    start_http_server(port)
    logger.info(f"Serving metrics on :{port}")
