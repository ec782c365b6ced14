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
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from neocluster.exceptions import ValidationError

logger = logging.getLogger(__name__)

API_GROUP = "neo4j.neo4j.com"
API_VERSION = "v1alpha1"


class DeploymentKind(str, Enum):
    CLUSTER = "Neo4jEnterpriseCluster"
    STANDALONE = "Neo4jEnterpriseStandalone"

    @property
    def plural(self) -> str:
        return self.value.lower() + "s"


class ModeConstraint(str, Enum):
    NONE = "NONE"
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class ClusterPhase(str, Enum):
    PENDING = "Pending"
    FORMING = "Forming"
    READY = "Ready"
    UPGRADING = "Upgrading"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class UpgradePhase(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_active(self) -> bool:
        return self in (UpgradePhase.PENDING, UpgradePhase.IN_PROGRESS, UpgradePhase.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return self in (UpgradePhase.COMPLETED, UpgradePhase.FAILED)


class UpgradeStrategyType(str, Enum):
    ROLLING_UPGRADE = "RollingUpgrade"
    RECREATE = "Recreate"


class RetentionPolicy(str, Enum):
    DELETE = "Delete"
    RETAIN = "Retain"


class MembershipClassification(str, Enum):
    UNFORMED = "Unformed"
    CONVERGING = "Converging"
    SPLIT = "Split"
    HEALTHY = "Healthy"


@dataclass(frozen=True)
class ObjectRef:
    """Key of a cluster object in the store"""

    kind: DeploymentKind
    namespace: str
    name: str

    def __str__(self):
        return f"{self.namespace}/{self.name}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# Desired state


class ServerRoleHint(CamelModel):
    server_index: int
    # Kept as a raw string so that invalid values reach the topology validator
    mode_constraint: str = ModeConstraint.NONE.value


class TopologySpec(CamelModel):
    servers: int = 2
    server_mode_constraint: Optional[str] = None
    server_roles: List[ServerRoleHint] = Field(default_factory=list)


class ImageSpec(CamelModel):
    repo: str = "neo4j"
    tag: str
    pull_policy: str = "IfNotPresent"

    @property
    def image_ref(self) -> str:
        return f"{self.repo}:{self.tag}"


class UpgradeStrategySpec(CamelModel):
    strategy: UpgradeStrategyType = UpgradeStrategyType.ROLLING_UPGRADE
    pre_upgrade_health_check: bool = True
    post_upgrade_health_check: bool = True
    max_unavailable_during_upgrade: int = Field(default=1, ge=1)
    upgrade_timeout: str = "30m"
    server_timeout: str = "10m"
    health_check_timeout: str = "5m"
    stabilization_timeout: str = "3m"
    auto_pause_on_failure: bool = True


class StorageSpec(CamelModel):
    size: str = "10Gi"
    class_name: Optional[str] = None
    retention_policy: RetentionPolicy = RetentionPolicy.DELETE


class AuthSpec(CamelModel):
    admin_secret: str = "neo4j-admin-secret"


class ClusterSpec(CamelModel):
    image: ImageSpec
    topology: TopologySpec = Field(default_factory=TopologySpec)
    upgrade_strategy: UpgradeStrategySpec = Field(default_factory=UpgradeStrategySpec)
    storage: StorageSpec = Field(default_factory=StorageSpec)
    auth: AuthSpec = Field(default_factory=AuthSpec)
    config: Dict[str, str] = Field(default_factory=dict)


# Observed state


class Condition(CamelModel):
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class ReplicaStatus(CamelModel):
    ready: int = 0
    total: int = 0


class Endpoints(CamelModel):
    bolt: Optional[str] = None
    http: Optional[str] = None


class NodeProgress(CamelModel):
    total: int = 0
    upgraded: int = 0
    in_progress: int = 0
    pending: int = 0


class UpgradeProgress(CamelModel):
    total: int = 0
    upgraded: int = 0
    in_progress: int = 0
    pending: int = 0
    primaries: NodeProgress = Field(default_factory=NodeProgress)
    secondaries: NodeProgress = Field(default_factory=NodeProgress)


class UpgradeStatus(CamelModel):
    phase: UpgradePhase = UpgradePhase.PENDING
    previous_version: Optional[str] = None
    target_version: Optional[str] = None
    progress: UpgradeProgress = Field(default_factory=UpgradeProgress)
    current_step: Optional[str] = None
    current_server: Optional[str] = None
    current_server_start_time: Optional[datetime] = None
    gate_start_time: Optional[datetime] = None
    message: Optional[str] = None
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None


class ConfigurationStatus(CamelModel):
    applied_hash: Optional[str] = None
    pending_hash: Optional[str] = None
    pending_since: Optional[datetime] = None
    applied_at: Optional[datetime] = None


class MembershipStatus(CamelModel):
    classification: Optional[MembershipClassification] = None
    disagreement_since: Optional[datetime] = None
    last_repair_time: Optional[datetime] = None
    last_repaired_pods: List[str] = Field(default_factory=list)


class ClusterStatus(CamelModel):
    phase: ClusterPhase = ClusterPhase.PENDING
    message: Optional[str] = None
    replicas: ReplicaStatus = Field(default_factory=ReplicaStatus)
    version: Optional[str] = None
    observed_generation: Optional[int] = None
    endpoints: Endpoints = Field(default_factory=Endpoints)
    conditions: List[Condition] = Field(default_factory=list)
    upgrade_status: Optional[UpgradeStatus] = None
    configuration: ConfigurationStatus = Field(default_factory=ConfigurationStatus)
    membership: MembershipStatus = Field(default_factory=MembershipStatus)


class ClusterObject:
    """
    Snapshot of a cluster custom object as read from the store.

    The raw dict is kept as-is for writes; spec and status are parsed views.
    """

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        metadata = raw.get("metadata") or {}
        self.kind = DeploymentKind(raw.get("kind", DeploymentKind.CLUSTER.value))
        self.name: str = metadata.get("name")
        self.namespace: str = metadata.get("namespace")
        self.uid: Optional[str] = metadata.get("uid")
        self.generation: Optional[int] = metadata.get("generation")
        self.resource_version: Optional[str] = metadata.get("resourceVersion")
        self.deletion_timestamp: Optional[str] = metadata.get("deletionTimestamp")
        self.finalizers: List[str] = list(metadata.get("finalizers") or [])
        self.annotations: Dict[str, str] = dict(metadata.get("annotations") or {})
        self.status = self._parse_status(raw.get("status"))

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.kind, self.namespace, self.name)

    @cached_property
    def spec(self) -> ClusterSpec:
        try:
            return ClusterSpec.model_validate(self.raw.get("spec") or {})
        except pydantic.ValidationError as e:
            violations = [f"spec.{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(violations) from e

    def _parse_status(self, raw_status: Optional[Dict[str, Any]]) -> ClusterStatus:
        if not raw_status:
            return ClusterStatus()
        try:
            return ClusterStatus.model_validate(raw_status)
        except pydantic.ValidationError as e:
            # Status is engine-owned; an unreadable one is rebuilt from live state
            logger.warning(f"Discarding unparsable status of {self.namespace}/{self.name}: {e}")
            return ClusterStatus()

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": self.kind.value,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def labels(self) -> Dict[str, str]:
        return {
            "app.kubernetes.io/name": "neo4j",
            "app.kubernetes.io/instance": self.name,
            "app.kubernetes.io/managed-by": "neocluster",
            "neo4j.com/cluster": self.name,
        }
