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
from typing import List, Optional

from neocluster.db.models import ClusterPhase, Condition

CONDITION_READY = "Ready"
CONDITION_SPLIT_BRAIN = "SplitBrainDetected"
CONDITION_CONFIGURATION_DRIFT = "ConfigurationDrift"
CONDITION_UPGRADING = "Upgrading"

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"

REASON_READY = "ClusterReady"
REASON_FORMING = "ClusterForming"
REASON_FAILED = "ReconciliationFailed"
REASON_UPGRADING = "UpgradeInProgress"
REASON_PENDING = "Pending"
REASON_DEGRADED = "ClusterDegraded"


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    conditions: List[Condition],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: datetime,
    generation: Optional[int] = None,
) -> bool:
    """
    Insert or update a condition in place.

    lastTransitionTime only moves when status or reason changes.

    Returns:
        True if anything about the condition changed
    """
    existing = find_condition(conditions, condition_type)
    if existing is None:
        conditions.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=now,
                observed_generation=generation,
            )
        )
        return True

    changed = False
    if existing.status != status or existing.reason != reason:
        existing.status = status
        existing.reason = reason
        existing.last_transition_time = now
        changed = True
    if existing.message != message:
        existing.message = message
        changed = True
    if generation is not None and existing.observed_generation != generation:
        existing.observed_generation = generation
        changed = True
    return changed


def phase_to_ready_condition(phase: ClusterPhase):
    """Ready condition (status, reason) implied by a cluster phase"""
    if phase == ClusterPhase.READY:
        return STATUS_TRUE, REASON_READY
    if phase == ClusterPhase.FAILED:
        return STATUS_FALSE, REASON_FAILED
    if phase == ClusterPhase.UPGRADING:
        return STATUS_FALSE, REASON_UPGRADING
    if phase == ClusterPhase.FORMING:
        return STATUS_FALSE, REASON_FORMING
    if phase == ClusterPhase.DEGRADED:
        return STATUS_FALSE, REASON_DEGRADED
    return STATUS_UNKNOWN, REASON_PENDING
