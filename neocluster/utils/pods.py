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

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from neocluster.utils.timeutils import parse_rfc3339

POD_INDEX_LABEL = "apps.kubernetes.io/pod-index"
SERVER_CONTAINER = "neo4j"


def pod_name(pod: Dict[str, Any]) -> str:
    return pod["metadata"]["name"]


def pod_ordinal(pod: Dict[str, Any]) -> int:
    """Ordinal from the pod-index label, falling back to the StatefulSet name suffix"""
    labels = pod.get("metadata", {}).get("labels") or {}
    if POD_INDEX_LABEL in labels:
        return int(labels[POD_INDEX_LABEL])
    return ordinal_from_name(pod_name(pod))


def ordinal_from_name(name: str) -> int:
    suffix = name.rsplit("-", 1)[-1]
    if not suffix.isdigit():
        raise ValueError(f"pod name {name!r} has no ordinal suffix")
    return int(suffix)


def _ready_condition(pod: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for condition in (pod.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition
    return None


def is_pod_ready(pod: Dict[str, Any]) -> bool:
    if (pod.get("metadata") or {}).get("deletionTimestamp"):
        return False
    condition = _ready_condition(pod)
    return condition is not None and condition.get("status") == "True"


def ready_transition_time(pod: Dict[str, Any]) -> Optional[datetime]:
    condition = _ready_condition(pod)
    if condition is None:
        return None
    return parse_rfc3339(condition.get("lastTransitionTime"))


def latest_ready_transition(pods: Iterable[Dict[str, Any]]) -> Optional[datetime]:
    times = [t for t in (ready_transition_time(pod) for pod in pods) if t is not None]
    return max(times) if times else None


def server_image(pod: Dict[str, Any]) -> Optional[str]:
    containers = (pod.get("spec") or {}).get("containers") or []
    for container in containers:
        if container.get("name") == SERVER_CONTAINER:
            return container.get("image")
    return containers[0].get("image") if containers else None


def sort_by_ordinal(pods: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(pods, key=pod_ordinal)
