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

from dataclasses import dataclass
from typing import Union

from neocluster.db.models import ClusterObject, DeploymentKind

CLUSTERING_LABEL = "neo4j.com/clustering"


@dataclass(frozen=True)
class ClusterDeployment:
    """A clustered deployment: N servers with role hints and membership checks"""

    cluster: ClusterObject


@dataclass(frozen=True)
class StandaloneDeployment:
    """A single-server deployment; it cannot split, so membership checks are skipped"""

    cluster: ClusterObject


DeploymentRef = Union[ClusterDeployment, StandaloneDeployment]


def resolve_deployment(cluster: ClusterObject) -> DeploymentRef:
    match cluster.kind:
        case DeploymentKind.CLUSTER:
            return ClusterDeployment(cluster)
        case DeploymentKind.STANDALONE:
            return StandaloneDeployment(cluster)
        case _:
            raise ValueError(f"Unsupported deployment kind: {cluster.kind}")


def expected_servers(deployment: DeploymentRef) -> int:
    match deployment:
        case ClusterDeployment(cluster=cluster):
            return cluster.spec.topology.servers
        case StandaloneDeployment():
            return 1


def statefulset_name(deployment: DeploymentRef) -> str:
    return f"{deployment.cluster.name}-server"


def pod_selector(deployment: DeploymentRef) -> str:
    match deployment:
        case ClusterDeployment(cluster=cluster):
            return f"neo4j.com/cluster={cluster.name},{CLUSTERING_LABEL}=true"
        case StandaloneDeployment(cluster=cluster):
            return f"neo4j.com/cluster={cluster.name}"


def pod_labels(deployment: DeploymentRef) -> dict:
    labels = deployment.cluster.labels()
    match deployment:
        case ClusterDeployment():
            labels[CLUSTERING_LABEL] = "true"
        case StandaloneDeployment():
            labels[CLUSTERING_LABEL] = "false"
    return labels
