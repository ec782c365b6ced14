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
import socket

from kubernetes.client.rest import ApiException

from neocluster.db.models import API_GROUP, API_VERSION, ClusterObject
from neocluster.db.ops import ObjectStore
from neocluster.exceptions import NeoClusterError
from neocluster.utils.timeutils import format_rfc3339, utc_now

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Cluster lifecycle
CLUSTER_READY = "ClusterReady"
CLUSTER_FORMING = "ClusterFormationStarted"
VALIDATION_FAILED = "ValidationFailed"
SERVER_ROLE_VALIDATION_FAILED = "ServerRoleValidationFailed"
TOPOLOGY_WARNING = "TopologyWarning"
RECONCILE_FAILED = "ReconcileFailed"
CLEANUP_FAILED = "CleanupFailed"

# Configuration
CONFIGURATION_DRIFT_DETECTED = "ConfigurationDriftDetected"
CONFIGURATION_APPLIED = "ConfigurationApplied"
CONFIGMAP_RECREATED = "ConfigMapRecreated"

# Upgrades
UPGRADE_STARTED = "UpgradeStarted"
UPGRADE_COMPLETED = "UpgradeCompleted"
UPGRADE_PAUSED = "UpgradePaused"
UPGRADE_RESUMED = "UpgradeResumed"
UPGRADE_FAILED = "UpgradeFailed"

# Split-brain
SPLIT_BRAIN_DETECTED = "SplitBrainDetected"
SPLIT_BRAIN_REPAIRED = "SplitBrainRepaired"
SPLIT_BRAIN_REPAIR_FAILED = "SplitBrainRepairFailed"

MAX_MESSAGE_LENGTH = 1024


class EventRecorder:
    """Publishes core/v1 Events about cluster objects. Publishing is best effort."""

    def __init__(self, store: ObjectStore, component: str = "neocluster"):
        self.store = store
        self.component = component
        self.instance = socket.gethostname()

    def normal(self, cluster: ClusterObject, reason: str, message: str):
        self.record(cluster, EVENT_TYPE_NORMAL, reason, message)

    def warning(self, cluster: ClusterObject, reason: str, message: str):
        self.record(cluster, EVENT_TYPE_WARNING, reason, message)

    def record(self, cluster: ClusterObject, event_type: str, reason: str, message: str):
        log = logger.warning if event_type == EVENT_TYPE_WARNING else logger.info
        log(f"[{cluster.namespace}/{cluster.name}] {reason}: {message}")

        timestamp = format_rfc3339(utc_now())
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"generateName": f"{cluster.name}.", "namespace": cluster.namespace},
            "involvedObject": {
                "apiVersion": f"{API_GROUP}/{API_VERSION}",
                "kind": cluster.kind.value,
                "name": cluster.name,
                "namespace": cluster.namespace,
                "uid": cluster.uid,
                "resourceVersion": cluster.resource_version,
            },
            "reason": reason,
            "message": message[:MAX_MESSAGE_LENGTH],
            "type": event_type,
            "source": {"component": self.component},
            "reportingComponent": self.component,
            "reportingInstance": self.instance,
            "firstTimestamp": timestamp,
            "lastTimestamp": timestamp,
            "count": 1,
        }
        try:
            self.store.create_event(cluster.namespace, body)
        except (NeoClusterError, ApiException) as e:
            logger.warning(f"Failed to publish event {reason} for {cluster.namespace}/{cluster.name}: {e}")
