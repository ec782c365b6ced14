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
Minimal materialisation of the target manifest into child resources.

Full manifest construction (TLS, plugins, backups, tuning) belongs to the
resource builders; this module only produces the objects the engine itself
reads and writes: the configuration ConfigMap, the two Services and the
server StatefulSet, all owned by the cluster object.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from neocluster.controller.deployment import (
    ClusterDeployment,
    DeploymentRef,
    StandaloneDeployment,
    expected_servers,
    pod_labels,
    statefulset_name,
)
from neocluster.db.models import ClusterObject
from neocluster.db.ops import ClusterStoreOps
from neocluster.exceptions import ConflictError, NotFoundError
from neocluster.topology.scheduler import ConfigPayload, ValidatedTopology
from neocluster.utils.pods import SERVER_CONTAINER
from neocluster.utils.timeutils import format_rfc3339

logger = logging.getLogger(__name__)

CONFIG_HASH_ANNOTATION = "neo4j.neo4j.com/config-hash"
CONFIG_RESTART_ANNOTATION = "neo4j.neo4j.com/config-restart"
CONFIG_MOUNT_PATH = "/config/neocluster"

DISCOVERY_PORT = 5000
CLUSTER_PORT = 6000
RAFT_PORT = 7000


@dataclass(frozen=True)
class TargetManifest:
    """What one reconcile pass wants the child resources to look like"""

    replicas: int
    image: str
    config: ConfigPayload
    topology: ValidatedTopology
    statefulset_name: str
    configmap_name: str
    headless_service_name: str
    client_service_name: str


def build_target_manifest(
    deployment: DeploymentRef, topology: ValidatedTopology, payload: ConfigPayload
) -> TargetManifest:
    cluster = deployment.cluster
    return TargetManifest(
        replicas=expected_servers(deployment),
        image=cluster.spec.image.image_ref,
        config=payload,
        topology=topology,
        statefulset_name=statefulset_name(deployment),
        configmap_name=f"{cluster.name}-config",
        headless_service_name=f"{cluster.name}-headless",
        client_service_name=f"{cluster.name}-client",
    )


class ResourceApplier:
    """Creates or updates the owned child resources of a cluster"""

    def __init__(self, ops: ClusterStoreOps, bolt_port: int = 7687, http_port: int = 7474):
        self.ops = ops
        self.bolt_port = bolt_port
        self.http_port = http_port

    def _metadata(self, cluster: ClusterObject, name: str, labels: Dict[str, str]) -> Dict[str, Any]:
        return {
            "name": name,
            "namespace": cluster.namespace,
            "labels": dict(labels),
            "ownerReferences": [cluster.owner_reference()],
        }

    def _create_if_missing(self, read, create, description: str) -> bool:
        try:
            read()
        except NotFoundError:
            try:
                create()
                logger.info(f"Created {description}")
                return True
            except ConflictError:
                # Created concurrently by another pass
                logger.debug(f"{description} already exists")
        return False

    def ensure_services(self, deployment: DeploymentRef, manifest: TargetManifest):
        cluster = deployment.cluster
        selector = {"neo4j.com/cluster": cluster.name, "app.kubernetes.io/instance": cluster.name}
        ports = [
            {"name": "bolt", "port": self.bolt_port, "targetPort": self.bolt_port},
            {"name": "http", "port": self.http_port, "targetPort": self.http_port},
        ]
        match deployment:
            case ClusterDeployment():
                internal = [
                    {"name": "tcp-discovery", "port": DISCOVERY_PORT, "targetPort": DISCOVERY_PORT},
                    {"name": "tcp-cluster", "port": CLUSTER_PORT, "targetPort": CLUSTER_PORT},
                    {"name": "tcp-raft", "port": RAFT_PORT, "targetPort": RAFT_PORT},
                ]
            case StandaloneDeployment():
                internal = []
        headless = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(cluster, manifest.headless_service_name, cluster.labels()),
            "spec": {
                "clusterIP": "None",
                "publishNotReadyAddresses": True,
                "selector": selector,
                "ports": ports + internal,
            },
        }
        client = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(cluster, manifest.client_service_name, cluster.labels()),
            "spec": {"type": "ClusterIP", "selector": selector, "ports": ports},
        }
        store = self.ops.store
        for body in (headless, client):
            name = body["metadata"]["name"]
            self._create_if_missing(
                lambda: store.get_service(cluster.namespace, name),
                lambda: store.create_service(cluster.namespace, body),
                f"service {cluster.namespace}/{name}",
            )

    def read_config_files(self, cluster: ClusterObject, manifest: TargetManifest) -> Dict[str, str]:
        try:
            configmap = self.ops.store.get_configmap(cluster.namespace, manifest.configmap_name)
        except NotFoundError:
            return {}
        return dict(configmap.get("data") or {})

    def apply_configmap(self, cluster: ClusterObject, manifest: TargetManifest):
        """Write the rendered configuration files and their hash"""
        data = dict(manifest.config.files)

        def update(configmap: Dict[str, Any]):
            annotations = configmap.setdefault("metadata", {}).setdefault("annotations", {}) or {}
            if configmap.get("data") == data and annotations.get(CONFIG_HASH_ANNOTATION) == manifest.config.hash:
                return False
            configmap["data"] = data
            configmap["metadata"]["annotations"] = {**annotations, CONFIG_HASH_ANNOTATION: manifest.config.hash}

        try:
            self.ops.mutate_configmap(cluster.namespace, manifest.configmap_name, update)
        except NotFoundError:
            self.ops.store.create_configmap(cluster.namespace, self._configmap_body(cluster, manifest))
            logger.info(f"Created configmap {cluster.namespace}/{manifest.configmap_name}")

    def ensure_configmap(self, cluster: ClusterObject, manifest: TargetManifest) -> bool:
        """
        Recreate the configuration ConfigMap when it is missing, leaving an existing one untouched

        Returns:
            True when the ConfigMap had to be created
        """
        return self._create_if_missing(
            lambda: self.ops.store.get_configmap(cluster.namespace, manifest.configmap_name),
            lambda: self.ops.store.create_configmap(cluster.namespace, self._configmap_body(cluster, manifest)),
            f"configmap {cluster.namespace}/{manifest.configmap_name}",
        )

    def _configmap_body(self, cluster: ClusterObject, manifest: TargetManifest) -> Dict[str, Any]:
        metadata = self._metadata(cluster, manifest.configmap_name, cluster.labels())
        metadata["annotations"] = {CONFIG_HASH_ANNOTATION: manifest.config.hash}
        return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": dict(manifest.config.files)}

    def _statefulset_body(self, deployment: DeploymentRef, manifest: TargetManifest) -> Dict[str, Any]:
        cluster = deployment.cluster
        spec = cluster.spec
        labels = pod_labels(deployment)
        selector = {"neo4j.com/cluster": cluster.name, "app.kubernetes.io/instance": cluster.name}
        claim_spec = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": spec.storage.size}},
        }
        if spec.storage.class_name:
            claim_spec["storageClassName"] = spec.storage.class_name
        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": self._metadata(cluster, manifest.statefulset_name, labels),
            "spec": {
                "serviceName": manifest.headless_service_name,
                "replicas": manifest.replicas,
                "podManagementPolicy": "Parallel",
                "selector": {"matchLabels": selector},
                "updateStrategy": {"type": "RollingUpdate", "rollingUpdate": {"partition": 0}},
                "template": {
                    "metadata": {
                        "labels": labels,
                        "annotations": {CONFIG_HASH_ANNOTATION: manifest.config.hash},
                    },
                    "spec": {
                        "containers": [
                            {
                                "name": SERVER_CONTAINER,
                                "image": manifest.image,
                                "imagePullPolicy": spec.image.pull_policy,
                                "ports": [
                                    {"name": "bolt", "containerPort": self.bolt_port},
                                    {"name": "http", "containerPort": self.http_port},
                                ],
                                "env": [
                                    {"name": "NEO4J_ACCEPT_LICENSE_AGREEMENT", "value": "yes"},
                                    {"name": "NEOCLUSTER_CONFIG_DIR", "value": CONFIG_MOUNT_PATH},
                                ],
                                "readinessProbe": {
                                    "tcpSocket": {"port": self.bolt_port},
                                    "periodSeconds": 10,
                                },
                                "volumeMounts": [
                                    {"name": "data", "mountPath": "/data"},
                                    {"name": "config", "mountPath": CONFIG_MOUNT_PATH},
                                ],
                            }
                        ],
                        "volumes": [{"name": "config", "configMap": {"name": manifest.configmap_name}}],
                    },
                },
                "volumeClaimTemplates": [{"metadata": {"name": "data", "labels": labels}, "spec": claim_spec}],
            },
        }

    def apply_statefulset(
        self,
        deployment: DeploymentRef,
        manifest: TargetManifest,
        manage_image: bool,
        apply_config: bool,
        restart_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Create the server StatefulSet or converge the fields the engine owns.

        Args:
            deployment: Deployment being reconciled
            manifest: Target manifest of this pass
            manage_image: Converge image and update strategy; False while an upgrade owns them
            apply_config: Converge replicas and the configuration hash approved in this pass
            restart_at: When set, stamp the restart-trigger annotation to roll the pods
        """
        cluster = deployment.cluster

        def update(sts: Dict[str, Any]):
            spec = sts.setdefault("spec", {})
            template = spec.setdefault("template", {})
            annotations = template.setdefault("metadata", {}).setdefault("annotations", {})
            changed = False
            if apply_config and spec.get("replicas") != manifest.replicas:
                spec["replicas"] = manifest.replicas
                changed = True
            if manage_image:
                containers = template.setdefault("spec", {}).setdefault("containers", [])
                for container in containers:
                    if container.get("name") == SERVER_CONTAINER and container.get("image") != manifest.image:
                        container["image"] = manifest.image
                        changed = True
                if (spec.get("updateStrategy") or {}).get("type") != "RollingUpdate":
                    spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": 0}}
                    changed = True
            if apply_config and annotations.get(CONFIG_HASH_ANNOTATION) != manifest.config.hash:
                annotations[CONFIG_HASH_ANNOTATION] = manifest.config.hash
                changed = True
            if restart_at is not None:
                annotations[CONFIG_RESTART_ANNOTATION] = format_rfc3339(restart_at)
                changed = True
            if not changed:
                return False

        try:
            return self.ops.mutate_statefulset(cluster.namespace, manifest.statefulset_name, update)
        except NotFoundError:
            body = self._statefulset_body(deployment, manifest)
            created = self.ops.store.create_statefulset(cluster.namespace, body)
            logger.info(f"Created statefulset {cluster.namespace}/{manifest.statefulset_name}")
            return created
