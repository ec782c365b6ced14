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
Task bodies behind the Celery entry points in config.celery_tasks.

Kept free of Celery so they can be driven directly from the CLI and tests:
the Celery layer only adds queueing, retries and scheduling.
"""

import logging
import math
from typing import Callable, Iterable, List, Optional

import redis

from neocluster.concurrent_control import RedisLock, create_lock
from neocluster.config import Settings, get_settings
from neocluster.controller.reconciler import ClusterReconciler, ReconcileResult, create_cluster_reconciler
from neocluster.db.models import ClusterObject, DeploymentKind, ObjectRef
from neocluster.exceptions import ReconcileInProgressError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "neocluster:reconcile"
REQUEUE_PREFIX = "neocluster:requeue"


def object_key(ref: ObjectRef) -> str:
    return f"{ref.kind.value}/{ref.namespace}/{ref.name}"


class ClusterTaskRunner:
    """Runs reconcile passes under a per-object distributed lock"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        reconciler_factory: Callable[[], ClusterReconciler] = None,
        lock_factory: Callable[..., RedisLock] = create_lock,
    ):
        self.settings = settings or get_settings()
        self._reconciler_factory = reconciler_factory or (lambda: create_cluster_reconciler(self.settings))
        self._reconciler: Optional[ClusterReconciler] = None
        self._lock_factory = lock_factory
        self._redis: Optional[redis.Redis] = None

    @property
    def reconciler(self) -> ClusterReconciler:
        if self._reconciler is None:
            self._reconciler = self._reconciler_factory()
        return self._reconciler

    def _redis_client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        return self._redis

    def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        """
        Run one reconcile pass for ref.

        Raises:
            ReconcileInProgressError: another worker is reconciling the same object
        """
        lock = self._lock_factory(
            "redis",
            key=f"{LOCK_PREFIX}:{object_key(ref)}",
            redis_url=self.settings.redis_url,
            expire_time=self.settings.lock_expire_seconds,
            retry_times=0,
        )
        if not lock.acquire():
            raise ReconcileInProgressError(f"{ref} is being reconciled by another worker")
        try:
            logger.info(f"Reconciling {ref.kind.value} {ref}")
            result = self.reconciler.reconcile(ref)
        finally:
            lock.close()
        if result.error is not None:
            logger.warning(f"Reconcile of {ref} finished with {type(result.error).__name__}: {result.error}")
        return result

    def claim_requeue(self, ref: ObjectRef, delay: float) -> bool:
        """
        Reserve the single outstanding short requeue of ref.

        Returns False while an earlier requeue is still pending, so repeated
        passes do not fan out into duplicate scheduled tasks.
        """
        ttl = max(1, math.ceil(delay))
        return bool(self._redis_client().set(f"{REQUEUE_PREFIX}:{object_key(ref)}", "1", nx=True, ex=ttl))

    def list_refs(self, kinds: Iterable[DeploymentKind] = tuple(DeploymentKind), namespace: str = None) -> List[ObjectRef]:
        """Keys of every cluster object of the given kinds"""
        store = self.reconciler.ops.store
        refs = []
        for kind in kinds:
            for raw in store.list_clusters(kind, namespace):
                refs.append(ClusterObject(raw).ref)
        return refs


_runner: Optional[ClusterTaskRunner] = None


def get_task_runner() -> ClusterTaskRunner:
    global _runner
    if _runner is None:
        _runner = ClusterTaskRunner()
    return _runner
