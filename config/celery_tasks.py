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

import logging
from typing import Any, Dict, Optional

from celery import current_app

from config.celery import app
from neocluster.db.models import DeploymentKind, ObjectRef
from neocluster.exceptions import ReconcileInProgressError
from neocluster.tasks.cluster_tasks import get_task_runner

logger = logging.getLogger(__name__)


@app.task(bind=True, max_retries=None)
def reconcile_cluster_task(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
    """
    Reconcile one cluster object

    Args:
        kind: Cluster object kind (Neo4jEnterpriseCluster or Neo4jEnterpriseStandalone)
        namespace: Object namespace
        name: Object name
    """
    runner = get_task_runner()
    ref = ObjectRef(DeploymentKind(kind), namespace, name)
    try:
        result = runner.reconcile(ref)
    except ReconcileInProgressError as e:
        raise self.retry(exc=e, countdown=runner.settings.lock_busy_retry_seconds)

    delay = result.requeue_after
    if delay is not None and delay < runner.settings.resync_interval_seconds:
        if runner.claim_requeue(ref, delay):
            reconcile_cluster_task.apply_async(args=(kind, namespace, name), countdown=delay)
            logger.debug(f"Requeued {ref} in {delay}s")
    return result.to_dict()


@current_app.task
def resync_clusters_task(namespace: Optional[str] = None) -> int:
    """Periodic task enqueueing a reconcile of every cluster object"""
    try:
        refs = get_task_runner().list_refs(namespace=namespace)
        for ref in refs:
            reconcile_cluster_task.delay(ref.kind.value, ref.namespace, ref.name)
        logger.info(f"Enqueued resync of {len(refs)} cluster objects")
        return len(refs)
    except Exception as e:
        logger.error(f"Cluster resync failed: {e}", exc_info=True)
        raise
