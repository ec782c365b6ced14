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

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from tenacity import RetryError, Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from neocluster import metrics
from neocluster.db.models import API_GROUP, API_VERSION, ClusterObject, DeploymentKind, ObjectRef
from neocluster.exceptions import (
    ConflictError,
    NotFoundError,
    RetriesExhaustedError,
    StoreTimeoutError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

RESOURCE_CLUSTER = "cluster"
RESOURCE_CLUSTER_STATUS = "cluster_status"
RESOURCE_STATEFULSET = "statefulset"
RESOURCE_CONFIGMAP = "configmap"

# Returning False from a mutate callback means "nothing to write"
Mutation = Callable[[Any], Optional[bool]]


class ObjectStore(ABC):
    """Versioned object store consumed by the engine. Objects are plain JSON-shaped dicts."""

    @abstractmethod
    def get_cluster(self, ref: ObjectRef) -> Dict[str, Any]:
        pass

    @abstractmethod
    def list_clusters(self, kind: DeploymentKind, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def replace_cluster(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace metadata/spec of a cluster object

        Args:
            body: Full object carrying the resourceVersion it was read at

        Raises:
            ConflictError: if the resourceVersion is stale
        """
        pass

    @abstractmethod
    def replace_cluster_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource, same concurrency contract as replace_cluster"""
        pass

    @abstractmethod
    def get_statefulset(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_statefulset(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def replace_statefulset(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_configmap(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_configmap(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def replace_configmap(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_service(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete_pod(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    def list_pvcs(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete_pvc(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    def get_secret(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        pass


def load_api_client() -> client.ApiClient:
    """Build an API client from in-cluster config, falling back to the local kubeconfig"""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")
    return client.ApiClient()


def _translate_api_exception(e: ApiException, description: str) -> Exception:
    if e.status == 409:
        return ConflictError(f"{description}: version conflict")
    if e.status == 404:
        return NotFoundError(f"{description}: not found")
    if e.status == 429 or (e.status is not None and e.status >= 500):
        return StoreUnavailableError(f"{description}: HTTP {e.status} {e.reason}")
    return e


class KubernetesObjectStore(ObjectStore):
    """ObjectStore backed by the Kubernetes API. Every call carries a request deadline."""

    def __init__(self, api_client: Optional[client.ApiClient] = None, request_timeout: float = 10.0):
        self._api_client = api_client or load_api_client()
        self._request_timeout = request_timeout
        self.custom = client.CustomObjectsApi(self._api_client)
        self.apps = client.AppsV1Api(self._api_client)
        self.core = client.CoreV1Api(self._api_client)

    def _call(self, description: str, fn, *args, **kwargs):
        kwargs["_request_timeout"] = self._request_timeout
        try:
            result = fn(*args, **kwargs)
        except ApiException as e:
            raise _translate_api_exception(e, description) from e
        except (urllib3.exceptions.TimeoutError, urllib3.exceptions.MaxRetryError) as e:
            raise StoreTimeoutError(f"{description}: {e}") from e
        except urllib3.exceptions.ProtocolError as e:
            raise StoreUnavailableError(f"{description}: {e}") from e
        if result is None or isinstance(result, dict):
            return result
        return self._api_client.sanitize_for_serialization(result)

    def get_cluster(self, ref: ObjectRef) -> Dict[str, Any]:
        return self._call(
            f"get {ref.kind.value} {ref}",
            self.custom.get_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            ref.namespace,
            ref.kind.plural,
            ref.name,
        )

    def list_clusters(self, kind: DeploymentKind, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        if namespace:
            result = self._call(
                f"list {kind.plural}",
                self.custom.list_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                kind.plural,
            )
        else:
            result = self._call(
                f"list {kind.plural}",
                self.custom.list_cluster_custom_object,
                API_GROUP,
                API_VERSION,
                kind.plural,
            )
        return result.get("items", [])

    def replace_cluster(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        kind = DeploymentKind(body.get("kind", DeploymentKind.CLUSTER.value))
        return self._call(
            f"replace {kind.value} {meta['namespace']}/{meta['name']}",
            self.custom.replace_namespaced_custom_object,
            API_GROUP,
            API_VERSION,
            meta["namespace"],
            kind.plural,
            meta["name"],
            body,
        )

    def replace_cluster_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        kind = DeploymentKind(body.get("kind", DeploymentKind.CLUSTER.value))
        return self._call(
            f"replace status of {kind.value} {meta['namespace']}/{meta['name']}",
            self.custom.replace_namespaced_custom_object_status,
            API_GROUP,
            API_VERSION,
            meta["namespace"],
            kind.plural,
            meta["name"],
            body,
        )

    def get_statefulset(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(f"get statefulset {namespace}/{name}", self.apps.read_namespaced_stateful_set, name, namespace)

    def create_statefulset(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(f"create statefulset in {namespace}", self.apps.create_namespaced_stateful_set, namespace, body)

    def replace_statefulset(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(
            f"replace statefulset {namespace}/{name}", self.apps.replace_namespaced_stateful_set, name, namespace, body
        )

    def get_configmap(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(f"get configmap {namespace}/{name}", self.core.read_namespaced_config_map, name, namespace)

    def create_configmap(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(f"create configmap in {namespace}", self.core.create_namespaced_config_map, namespace, body)

    def replace_configmap(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(
            f"replace configmap {namespace}/{name}", self.core.replace_namespaced_config_map, name, namespace, body
        )

    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(f"get service {namespace}/{name}", self.core.read_namespaced_service, name, namespace)

    def create_service(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._call(f"create service in {namespace}", self.core.create_namespaced_service, namespace, body)

    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        result = self._call(
            f"list pods in {namespace}", self.core.list_namespaced_pod, namespace, label_selector=label_selector
        )
        return result.get("items", [])

    def delete_pod(self, namespace: str, name: str) -> None:
        self._call(f"delete pod {namespace}/{name}", self.core.delete_namespaced_pod, name, namespace)

    def list_pvcs(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        result = self._call(
            f"list pvcs in {namespace}",
            self.core.list_namespaced_persistent_volume_claim,
            namespace,
            label_selector=label_selector,
        )
        return result.get("items", [])

    def delete_pvc(self, namespace: str, name: str) -> None:
        self._call(
            f"delete pvc {namespace}/{name}", self.core.delete_namespaced_persistent_volume_claim, name, namespace
        )

    def get_secret(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._call(f"get secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace)

    def create_event(self, namespace: str, body: Dict[str, Any]) -> None:
        self._call(f"create event in {namespace}", self.core.create_namespaced_event, namespace, body)


class ClusterStoreOps:
    """
    Read-modify-write helpers over an ObjectStore.

    Every mutation re-reads the object, reapplies the callback and writes with
    the version it just read. Version conflicts are retried with exponential
    backoff; only running out of attempts is surfaced, as RetriesExhaustedError.
    """

    def __init__(self, store: ObjectStore, attempts: int = 5, min_wait: float = 0.05, max_wait: float = 1.0):
        self.store = store
        self._attempts = attempts
        self._min_wait = min_wait
        self._max_wait = max_wait

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._min_wait, min=self._min_wait, max=self._max_wait),
            retry=retry_if_exception_type(ConflictError),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        )

    def _update_with_retry(
        self, description: str, resource_type: str, namespace: str, fetch, mutate: Mutation, write
    ):
        try:
            for attempt in self._retrying():
                with attempt:
                    current = fetch()
                    if mutate(current) is False:
                        return current
                    try:
                        written = write(current)
                    except ConflictError:
                        metrics.record_conflict(resource_type, namespace)
                        raise
                    if attempt.retry_state.attempt_number > 1:
                        metrics.record_conflict_retries(resource_type, namespace, attempt.retry_state.attempt_number)
                    return written
        except RetryError as e:
            logger.warning(f"{description}: still conflicting after {self._attempts} attempts")
            metrics.record_conflict_retries(resource_type, namespace, self._attempts, exhausted=True)
            raise RetriesExhaustedError(
                f"{description}: gave up after {self._attempts} conflicting writes", attempts=self._attempts
            ) from e.last_attempt.exception()

    def get_cluster(self, ref: ObjectRef) -> ClusterObject:
        return ClusterObject(self.store.get_cluster(ref))

    def mutate_cluster(self, ref: ObjectRef, mutate: Mutation) -> ClusterObject:
        """
        Apply a mutation to the raw cluster object (metadata such as finalizers or annotations)

        Args:
            ref: Cluster object key
            mutate: Callback receiving the freshly read ClusterObject; edits obj.raw in place
        """

        def write(obj: ClusterObject) -> ClusterObject:
            return ClusterObject(self.store.replace_cluster(obj.raw))

        return self._update_with_retry(
            f"update {ref}", RESOURCE_CLUSTER, ref.namespace, lambda: self.get_cluster(ref), mutate, write
        )

    def mutate_status(self, ref: ObjectRef, mutate: Mutation) -> ClusterObject:
        """
        Apply a mutation to the parsed status and write the status subresource.

        The write is skipped when the mutation leaves the status unchanged.
        """

        def apply(obj: ClusterObject):
            before = obj.status.to_dict()
            if mutate(obj) is False:
                return False
            return obj.status.to_dict() != before

        def write(obj: ClusterObject) -> ClusterObject:
            body = copy.deepcopy(obj.raw)
            body["status"] = obj.status.to_dict()
            return ClusterObject(self.store.replace_cluster_status(body))

        return self._update_with_retry(
            f"update status of {ref}",
            RESOURCE_CLUSTER_STATUS,
            ref.namespace,
            lambda: self.get_cluster(ref),
            apply,
            write,
        )

    def mutate_statefulset(self, namespace: str, name: str, mutate: Mutation) -> Dict[str, Any]:
        return self._update_with_retry(
            f"update statefulset {namespace}/{name}",
            RESOURCE_STATEFULSET,
            namespace,
            lambda: self.store.get_statefulset(namespace, name),
            mutate,
            lambda sts: self.store.replace_statefulset(namespace, name, sts),
        )

    def mutate_configmap(self, namespace: str, name: str, mutate: Mutation) -> Dict[str, Any]:
        return self._update_with_retry(
            f"update configmap {namespace}/{name}",
            RESOURCE_CONFIGMAP,
            namespace,
            lambda: self.store.get_configmap(namespace, name),
            mutate,
            lambda cm: self.store.replace_configmap(namespace, name, cm),
        )
