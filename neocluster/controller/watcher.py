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

"""
Watch stream feeding cluster object changes to the work queue.

Status writes made by the reconciler come back as MODIFIED events; only
changes to what a user can declare (generation, deletion, finalizers or the
upgrade action annotation) are forwarded.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import urllib3
from kubernetes import watch
from kubernetes.client.rest import ApiException

from neocluster.db.models import API_GROUP, API_VERSION, ClusterObject, DeploymentKind, ObjectRef
from neocluster.db.ops import KubernetesObjectStore
from neocluster.upgrade.orchestrator import UPGRADE_ACTION_ANNOTATION

logger = logging.getLogger(__name__)

RESTART_BACKOFF_SECONDS = 5.0


def change_signature(cluster: ClusterObject) -> Tuple[Any, ...]:
    return (
        cluster.generation,
        cluster.deletion_timestamp is not None,
        tuple(sorted(cluster.finalizers)),
        cluster.annotations.get(UPGRADE_ACTION_ANNOTATION),
    )


class ClusterWatcher:
    def __init__(
        self,
        store: KubernetesObjectStore,
        kind: DeploymentKind,
        enqueue: Callable[[ObjectRef], None],
        namespace: Optional[str] = None,
        timeout_seconds: int = 300,
    ):
        self.store = store
        self.kind = kind
        self.enqueue = enqueue
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self._seen: Dict[ObjectRef, Tuple[Any, ...]] = {}

    def handle_event(self, event_type: str, raw: Dict[str, Any]) -> bool:
        """Forward one watch event; returns True when the object was enqueued"""
        cluster = ClusterObject(raw)
        ref = cluster.ref
        if event_type == "DELETED":
            self._seen.pop(ref, None)
            return False
        signature = change_signature(cluster)
        if self._seen.get(ref) == signature:
            return False
        self._seen[ref] = signature
        logger.info(f"{event_type} {self.kind.value} {ref} (generation {cluster.generation})")
        self.enqueue(ref)
        return True

    def _stream(self, w: watch.Watch, resource_version: Optional[str]):
        kwargs = {"timeout_seconds": self.timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version
        if self.namespace:
            return w.stream(
                self.store.custom.list_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                self.namespace,
                self.kind.plural,
                **kwargs,
            )
        return w.stream(self.store.custom.list_cluster_custom_object, API_GROUP, API_VERSION, self.kind.plural, **kwargs)

    def run(self, stop: Optional[threading.Event] = None):
        """Watch until stop is set, restarting the stream when it ends or its resource version expires"""
        stop = stop or threading.Event()
        resource_version = None
        logger.info(f"Watching {self.kind.plural} in {self.namespace or 'all namespaces'}")
        while not stop.is_set():
            w = watch.Watch()
            try:
                for event in self._stream(w, resource_version):
                    if stop.is_set():
                        break
                    raw = event["raw_object"] if "raw_object" in event else event["object"]
                    if event["type"] == "ERROR":
                        if raw.get("code") == 410:
                            logger.info("Watch resource version expired, relisting")
                            resource_version = None
                            break
                        logger.warning(f"Watch error: {raw.get('message')}")
                        continue
                    resource_version = raw.get("metadata", {}).get("resourceVersion", resource_version)
                    self.handle_event(event["type"], raw)
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.warning(f"Watch on {self.kind.plural} failed with HTTP {e.status}, restarting: {e.reason}")
                stop.wait(RESTART_BACKOFF_SECONDS)
            except (urllib3.exceptions.ProtocolError, urllib3.exceptions.TimeoutError) as e:
                logger.warning(f"Watch connection on {self.kind.plural} dropped, restarting: {e}")
                stop.wait(RESTART_BACKOFF_SECONDS)
            finally:
                w.stop()
