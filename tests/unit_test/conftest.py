"""
Shared fixtures for the reconciliation engine unit tests.

The fake object store keeps objects as plain dicts, bumps resourceVersion on
every write and rejects writes carrying a stale version, like the real API
server. Conflicts can also be injected for the next N writes.
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from prometheus_client import REGISTRY

from neocluster.controller.reconciler import FINALIZER
from neocluster.db.models import API_GROUP, API_VERSION, DeploymentKind, ObjectRef
from neocluster.db.ops import ClusterStoreOps, ObjectStore
from neocluster.exceptions import ConflictError, NotFoundError
from neocluster.utils.pods import POD_INDEX_LABEL
from neocluster.utils.timeutils import format_rfc3339

BASE_TIME = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _matches(labels: Dict[str, str], selector: str) -> bool:
    for term in filter(None, selector.split(",")):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeObjectStore(ObjectStore):
    def __init__(self):
        self.clusters: Dict[tuple, Dict[str, Any]] = {}
        self.statefulsets: Dict[tuple, Dict[str, Any]] = {}
        self.configmaps: Dict[tuple, Dict[str, Any]] = {}
        self.services: Dict[tuple, Dict[str, Any]] = {}
        self.pods: Dict[tuple, Dict[str, Any]] = {}
        self.pvcs: Dict[tuple, Dict[str, Any]] = {}
        self.secrets: Dict[tuple, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.deleted_pods: List[str] = []
        self.deleted_pvcs: List[str] = []
        self.cluster_writes = 0
        self.status_writes = 0
        self.statefulset_writes = 0
        self.conflicts_to_inject = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _check_conflict(self, current: Dict[str, Any], body: Dict[str, Any]):
        if self.conflicts_to_inject > 0:
            self.conflicts_to_inject -= 1
            raise ConflictError("injected conflict")
        expected = body.get("metadata", {}).get("resourceVersion")
        if expected is not None and expected != current["metadata"].get("resourceVersion"):
            raise ConflictError("stale resourceVersion")

    # Seeding helpers

    def add_cluster(self, raw: Dict[str, Any]) -> ObjectRef:
        raw = copy.deepcopy(raw)
        raw["metadata"]["resourceVersion"] = self._next_version()
        kind = DeploymentKind(raw["kind"])
        self.clusters[(kind, raw["metadata"]["namespace"], raw["metadata"]["name"])] = raw
        return ObjectRef(kind, raw["metadata"]["namespace"], raw["metadata"]["name"])

    def add_pod(self, pod: Dict[str, Any]):
        self.pods[(pod["metadata"]["namespace"], pod["metadata"]["name"])] = copy.deepcopy(pod)

    def add_statefulset(self, namespace: str, body: Dict[str, Any]):
        body = copy.deepcopy(body)
        body.setdefault("metadata", {})["resourceVersion"] = self._next_version()
        self.statefulsets[(namespace, body["metadata"]["name"])] = body

    def raw_cluster(self, ref: ObjectRef) -> Dict[str, Any]:
        return self.clusters[(ref.kind, ref.namespace, ref.name)]

    # Cluster objects

    def get_cluster(self, ref: ObjectRef) -> Dict[str, Any]:
        key = (ref.kind, ref.namespace, ref.name)
        if key not in self.clusters:
            raise NotFoundError(f"{ref} not found")
        return copy.deepcopy(self.clusters[key])

    def list_clusters(self, kind: DeploymentKind, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(raw)
            for (k, ns, _), raw in sorted(self.clusters.items(), key=lambda item: item[0][1:])
            if k == kind and (namespace is None or ns == namespace)
        ]

    def _cluster_key(self, body):
        meta = body["metadata"]
        key = (DeploymentKind(body["kind"]), meta["namespace"], meta["name"])
        if key not in self.clusters:
            raise NotFoundError(f"{meta['namespace']}/{meta['name']} not found")
        return key

    def replace_cluster(self, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._cluster_key(body)
        current = self.clusters[key]
        self._check_conflict(current, body)
        updated = copy.deepcopy(body)
        updated["status"] = copy.deepcopy(current.get("status"))
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.cluster_writes += 1
        if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
            del self.clusters[key]
        else:
            self.clusters[key] = updated
        return copy.deepcopy(updated)

    def replace_cluster_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        key = self._cluster_key(body)
        current = self.clusters[key]
        self._check_conflict(current, body)
        updated = copy.deepcopy(current)
        updated["status"] = copy.deepcopy(body.get("status"))
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.clusters[key] = updated
        self.status_writes += 1
        return copy.deepcopy(updated)

    # Child resources

    def _get(self, table, namespace, name, what):
        if (namespace, name) not in table:
            raise NotFoundError(f"{what} {namespace}/{name} not found")
        return copy.deepcopy(table[(namespace, name)])

    def _create(self, table, namespace, body, what):
        name = body["metadata"]["name"]
        if (namespace, name) in table:
            raise ConflictError(f"{what} {namespace}/{name} already exists")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        table[(namespace, name)] = body
        return copy.deepcopy(body)

    def _replace(self, table, namespace, name, body, what):
        if (namespace, name) not in table:
            raise NotFoundError(f"{what} {namespace}/{name} not found")
        expected = body.get("metadata", {}).get("resourceVersion")
        if expected is not None and expected != table[(namespace, name)]["metadata"].get("resourceVersion"):
            raise ConflictError("stale resourceVersion")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        table[(namespace, name)] = body
        return copy.deepcopy(body)

    def get_statefulset(self, namespace, name):
        return self._get(self.statefulsets, namespace, name, "statefulset")

    def create_statefulset(self, namespace, body):
        return self._create(self.statefulsets, namespace, body, "statefulset")

    def replace_statefulset(self, namespace, name, body):
        self.statefulset_writes += 1
        return self._replace(self.statefulsets, namespace, name, body, "statefulset")

    def get_configmap(self, namespace, name):
        return self._get(self.configmaps, namespace, name, "configmap")

    def create_configmap(self, namespace, body):
        return self._create(self.configmaps, namespace, body, "configmap")

    def replace_configmap(self, namespace, name, body):
        return self._replace(self.configmaps, namespace, name, body, "configmap")

    def get_service(self, namespace, name):
        return self._get(self.services, namespace, name, "service")

    def create_service(self, namespace, body):
        return self._create(self.services, namespace, body, "service")

    def list_pods(self, namespace, label_selector):
        return [
            copy.deepcopy(pod)
            for (ns, _), pod in sorted(self.pods.items())
            if ns == namespace and _matches(pod["metadata"].get("labels") or {}, label_selector)
        ]

    def delete_pod(self, namespace, name):
        if (namespace, name) not in self.pods:
            raise NotFoundError(f"pod {namespace}/{name} not found")
        del self.pods[(namespace, name)]
        self.deleted_pods.append(name)

    def list_pvcs(self, namespace, label_selector):
        return [
            copy.deepcopy(pvc)
            for (ns, _), pvc in sorted(self.pvcs.items())
            if ns == namespace and _matches(pvc["metadata"].get("labels") or {}, label_selector)
        ]

    def delete_pvc(self, namespace, name):
        if (namespace, name) not in self.pvcs:
            raise NotFoundError(f"pvc {namespace}/{name} not found")
        del self.pvcs[(namespace, name)]
        self.deleted_pvcs.append(name)

    def get_secret(self, namespace, name):
        return self._get(self.secrets, namespace, name, "secret")

    def create_event(self, namespace, body):
        self.events.append(copy.deepcopy(body))


class FakeRecorder:
    """Collects events in memory instead of publishing them"""

    def __init__(self):
        self.events = []

    def normal(self, cluster, reason, message):
        self.record(cluster, "Normal", reason, message)

    def warning(self, cluster, reason, message):
        self.record(cluster, "Warning", reason, message)

    def record(self, cluster, event_type, reason, message):
        self.events.append((event_type, reason, message))

    def reasons(self):
        return [reason for _, reason, _ in self.events]


@pytest.fixture
def now():
    return BASE_TIME


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def ops(store):
    return ClusterStoreOps(store, attempts=3, min_wait=0, max_wait=0)


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def make_cluster():
    """Factory for raw cluster objects"""

    def _make(
        name: str = "graph",
        namespace: str = "default",
        kind: DeploymentKind = DeploymentKind.CLUSTER,
        servers: int = 3,
        tag: str = "5.26.0",
        status: Optional[Dict[str, Any]] = None,
        finalizers: Optional[List[str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        generation: int = 1,
        **spec_overrides,
    ) -> Dict[str, Any]:
        spec = {"image": {"repo": "neo4j", "tag": tag}, "topology": {"servers": servers}}
        spec.update(spec_overrides)
        raw = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": kind.value,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "generation": generation,
                "finalizers": list(finalizers) if finalizers is not None else [FINALIZER],
                "annotations": dict(annotations or {}),
            },
            "spec": spec,
        }
        if status is not None:
            raw["status"] = status
        return raw

    return _make


@pytest.fixture
def make_pod():
    """Factory for server pods of a cluster's StatefulSet"""

    def _make(
        index: int,
        cluster: str = "graph",
        namespace: str = "default",
        image: str = "neo4j:5.26.0",
        ready: bool = True,
        ready_since: Optional[datetime] = None,
        clustering: bool = True,
    ) -> Dict[str, Any]:
        since = ready_since or BASE_TIME - timedelta(hours=1)
        return {
            "metadata": {
                "name": f"{cluster}-server-{index}",
                "namespace": namespace,
                "labels": {
                    "neo4j.com/cluster": cluster,
                    "neo4j.com/clustering": "true" if clustering else "false",
                    POD_INDEX_LABEL: str(index),
                },
            },
            "spec": {"containers": [{"name": "neo4j", "image": image}]},
            "status": {
                "conditions": [
                    {
                        "type": "Ready",
                        "status": "True" if ready else "False",
                        "lastTransitionTime": format_rfc3339(since),
                    }
                ]
            },
        }

    return _make


@pytest.fixture
def metric_sample():
    """Reads one sample from the default Prometheus registry; a sample never recorded reads as 0"""

    def _read(name: str, **labels) -> float:
        return REGISTRY.get_sample_value(name, labels) or 0.0

    return _read
