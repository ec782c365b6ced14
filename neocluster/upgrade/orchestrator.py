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
Rolling upgrade state machine.

    Pending -> InProgress -> Completed
                   |  ^
                   v  | (resume annotation)
                 Paused ----> Failed (abort annotation)

Nothing is remembered between passes except what is written to
status.upgradeStatus; every pass re-derives progress from the live pods, so
the orchestrator survives operator restarts and is safe to run repeatedly on
the same state. Waits are expressed as requeues, never as sleeps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from neocluster import metrics
from neocluster.controller import events
from neocluster.controller.events import EventRecorder
from neocluster.db.models import (
    ClusterObject,
    MembershipClassification,
    NodeProgress,
    UpgradePhase,
    UpgradeProgress,
    UpgradeStatus,
)
from neocluster.db.ops import ClusterStoreOps
from neocluster.exceptions import NotFoundError, VersionCompatibilityError
from neocluster.health.splitbrain import SplitBrainAnalysis
from neocluster.topology.scheduler import ValidatedTopology
from neocluster.upgrade.version import validate_upgrade_path
from neocluster.utils.pods import SERVER_CONTAINER, is_pod_ready, pod_ordinal, server_image
from neocluster.utils.timeutils import format_rfc3339, parse_duration, seconds_since

logger = logging.getLogger(__name__)

UPGRADE_ACTION_ANNOTATION = "neo4j.neo4j.com/upgrade-action"
UPGRADE_TIMESTAMP_ANNOTATION = "neo4j.com/upgrade-timestamp"
ACTION_RESUME = "resume"
ACTION_ABORT = "abort"

STEP_PRE_UPGRADE_CHECK = "PreUpgradeHealthCheck"
STEP_UPGRADING_SERVERS = "UpgradingServers"
STEP_POST_UPGRADE_CHECK = "PostUpgradeHealthCheck"
STEP_COMPLETED = "Completed"


class ServerState(str, Enum):
    UPGRADED = "upgraded"
    IN_PROGRESS = "inProgress"
    PENDING = "pending"


@dataclass
class ServerObservation:
    index: int
    pod_name: str
    secondary: bool
    state: ServerState


@dataclass
class UpgradeOutcome:
    status: Optional[UpgradeStatus]
    requeue_after: Optional[float] = None
    completed_version: Optional[str] = None


class RollingUpgradeOrchestrator:
    """Drives version upgrades of the server StatefulSet one step per reconcile pass"""

    def __init__(self, ops: ClusterStoreOps, recorder: EventRecorder, requeue_seconds: float = 10.0):
        self.ops = ops
        self.recorder = recorder
        self.requeue_seconds = requeue_seconds

    def upgrade_requested(self, cluster: ClusterObject) -> bool:
        """True when an upgrade is running or the declared version differs from the running one"""
        upgrade = cluster.status.upgrade_status
        target = cluster.spec.image.tag
        if upgrade is not None and upgrade.phase.is_active:
            return True
        if cluster.status.version is None or target == cluster.status.version:
            return False
        if upgrade is not None and upgrade.phase.is_terminal and upgrade.target_version == target:
            return False
        return True

    def owns_statefulset(self, cluster: ClusterObject) -> bool:
        """
        True while the orchestrator controls the server image and update strategy.

        A failed upgrade keeps ownership until a new version is declared so
        that the remaining pods are not rolled behind its back.
        """
        if self.upgrade_requested(cluster):
            return True
        upgrade = cluster.status.upgrade_status
        return (
            upgrade is not None
            and upgrade.phase == UpgradePhase.FAILED
            and upgrade.target_version == cluster.spec.image.tag
        )

    def observe(
        self,
        topology: ValidatedTopology,
        pods: Sequence[Dict[str, Any]],
        target_image: str,
        statefulset_name: str,
        current_servers: Sequence[str] = (),
    ) -> List[ServerObservation]:
        by_ordinal = {pod_ordinal(pod): pod for pod in pods}
        observations = []
        for index in range(topology.servers):
            name = f"{statefulset_name}-{index}"
            pod = by_ordinal.get(index)
            if pod is None:
                state = ServerState.IN_PROGRESS
            elif server_image(pod) == target_image and is_pod_ready(pod):
                state = ServerState.UPGRADED
            elif not is_pod_ready(pod) or name in current_servers:
                state = ServerState.IN_PROGRESS
            else:
                state = ServerState.PENDING
            observations.append(
                ServerObservation(index=index, pod_name=name, secondary=topology.is_secondary(index), state=state)
            )
        return observations

    @staticmethod
    def validate_strategy(strategy) -> List[str]:
        """Report unparsable durations in an upgrade strategy"""
        violations = []
        for field_name in ("upgrade_timeout", "server_timeout", "health_check_timeout", "stabilization_timeout"):
            value = getattr(strategy, field_name)
            try:
                parse_duration(value)
            except ValueError:
                violations.append(f"invalid duration '{value}' for upgradeStrategy.{field_name}")
        return violations

    @staticmethod
    def progress(observations: Sequence[ServerObservation]) -> UpgradeProgress:
        progress = UpgradeProgress(primaries=NodeProgress(), secondaries=NodeProgress())
        for obs in observations:
            node_class = progress.secondaries if obs.secondary else progress.primaries
            node_class.total += 1
            progress.total += 1
            if obs.state == ServerState.UPGRADED:
                node_class.upgraded += 1
                progress.upgraded += 1
            elif obs.state == ServerState.IN_PROGRESS:
                node_class.in_progress += 1
                progress.in_progress += 1
            else:
                node_class.pending += 1
                progress.pending += 1
        return progress

    @staticmethod
    def upgrade_order(observations: Sequence[ServerObservation]) -> List[ServerObservation]:
        """Secondaries before primaries, highest ordinal first so that server 0 goes last"""
        return sorted(observations, key=lambda obs: (0 if obs.secondary else 1, -obs.index))

    def reconcile(
        self,
        cluster: ClusterObject,
        topology: ValidatedTopology,
        pods: Sequence[Dict[str, Any]],
        analysis: SplitBrainAnalysis,
        statefulset_name: str,
        now: datetime,
    ) -> UpgradeOutcome:
        """
        Advance the upgrade by at most one step.

        Args:
            cluster: Freshly read cluster object
            topology: Validated topology, used to classify servers
            pods: Live server pods
            analysis: Membership classification from this pass
            statefulset_name: Name of the server StatefulSet
            now: Current time

        Returns:
            UpgradeOutcome carrying the new upgrade status for the status write
        """
        spec = cluster.spec
        strategy = spec.upgrade_strategy
        target = spec.image.tag
        upgrade = cluster.status.upgrade_status.model_copy(deep=True) if cluster.status.upgrade_status else None
        action = (cluster.annotations.get(UPGRADE_ACTION_ANNOTATION) or "").strip().lower()
        outcome = UpgradeOutcome(status=upgrade)

        if upgrade is None or upgrade.target_version != target:
            if upgrade is not None and upgrade.phase.is_active:
                logger.info(f"Upgrade of {cluster.namespace}/{cluster.name} retargeted to {target}")
            upgrade = self._new_upgrade(cluster, target, now)
            outcome.status = upgrade
            if upgrade.phase == UpgradePhase.FAILED:
                return outcome

        if action:
            self._apply_action(cluster, upgrade, action, now)
            if upgrade.phase == UpgradePhase.FAILED:
                return outcome

        current_servers = [name for name in (upgrade.current_server or "").split(",") if name]
        observations = self.observe(topology, pods, spec.image.image_ref, statefulset_name, current_servers)
        if upgrade.phase.is_terminal:
            return outcome
        upgrade.progress = self.progress(observations)
        if upgrade.phase == UpgradePhase.PAUSED:
            return outcome

        outcome.requeue_after = self.requeue_seconds
        if upgrade.phase == UpgradePhase.PENDING:
            if not self._pre_upgrade_gate(cluster, upgrade, analysis, now):
                return self._finish_if_stopped(upgrade, outcome)
            upgrade.phase = UpgradePhase.IN_PROGRESS
            upgrade.current_step = STEP_UPGRADING_SERVERS
            upgrade.gate_start_time = None
            upgrade.start_time = now
            self.recorder.normal(
                cluster, events.UPGRADE_STARTED, f"rolling upgrade {upgrade.previous_version} -> {target} started"
            )

        upgrade_budget = parse_duration(strategy.upgrade_timeout)
        elapsed = seconds_since(upgrade.start_time, now)
        if elapsed is not None and elapsed > upgrade_budget:
            self._fail(cluster, upgrade, f"upgrade did not complete within {strategy.upgrade_timeout}", now)
            return self._finish_if_stopped(upgrade, outcome)

        self._stage_statefulset(cluster, statefulset_name, spec.image.image_ref, now)
        self._advance(cluster, upgrade, observations, analysis, now)
        if upgrade.phase == UpgradePhase.COMPLETED:
            self._restore_update_strategy(cluster, statefulset_name)
            outcome.completed_version = target
            outcome.requeue_after = None
        return self._finish_if_stopped(upgrade, outcome)

    def _finish_if_stopped(self, upgrade: UpgradeStatus, outcome: UpgradeOutcome) -> UpgradeOutcome:
        if upgrade.phase in (UpgradePhase.PAUSED, UpgradePhase.FAILED):
            outcome.requeue_after = None
        return outcome

    def _new_upgrade(self, cluster: ClusterObject, target: str, now: datetime) -> UpgradeStatus:
        previous = cluster.status.version
        upgrade = UpgradeStatus(
            phase=UpgradePhase.PENDING,
            previous_version=previous,
            target_version=target,
            current_step=STEP_PRE_UPGRADE_CHECK,
            gate_start_time=now,
            start_time=now,
            message=f"upgrade from {previous} to {target} requested",
        )
        try:
            validate_upgrade_path(previous, target)
        except VersionCompatibilityError as e:
            upgrade.phase = UpgradePhase.FAILED
            upgrade.last_error = str(e)
            upgrade.message = f"upgrade rejected: {e}"
            upgrade.completion_time = now
            self.recorder.warning(cluster, events.UPGRADE_FAILED, upgrade.message)
            self._record_finished(cluster, upgrade, False, now)
        return upgrade

    def _apply_action(self, cluster: ClusterObject, upgrade: UpgradeStatus, action: str, now: datetime):
        if action == ACTION_ABORT and upgrade.phase.is_active:
            upgrade.phase = UpgradePhase.FAILED
            upgrade.last_error = "upgrade aborted by user"
            upgrade.message = "upgrade aborted by user"
            upgrade.completion_time = now
            self.recorder.warning(cluster, events.UPGRADE_FAILED, "upgrade aborted by user")
            self._record_finished(cluster, upgrade, False, now)
        elif action == ACTION_RESUME and upgrade.phase == UpgradePhase.PAUSED:
            if upgrade.current_step == STEP_PRE_UPGRADE_CHECK:
                upgrade.phase = UpgradePhase.PENDING
            else:
                upgrade.phase = UpgradePhase.IN_PROGRESS
            # Resuming grants fresh time budgets
            upgrade.start_time = now
            if upgrade.current_server:
                upgrade.current_server_start_time = now
            if upgrade.gate_start_time:
                upgrade.gate_start_time = now
            upgrade.message = "upgrade resumed by user"
            self.recorder.normal(cluster, events.UPGRADE_RESUMED, f"upgrade to {upgrade.target_version} resumed")
        else:
            logger.warning(
                f"Ignoring upgrade action '{action}' on {cluster.namespace}/{cluster.name} "
                f"in phase {upgrade.phase.value}"
            )

    def _pre_upgrade_gate(
        self, cluster: ClusterObject, upgrade: UpgradeStatus, analysis: SplitBrainAnalysis, now: datetime
    ) -> bool:
        strategy = cluster.spec.upgrade_strategy
        if not strategy.pre_upgrade_health_check or analysis.classification == MembershipClassification.HEALTHY:
            return True
        upgrade.gate_start_time = upgrade.gate_start_time or now
        waited = seconds_since(upgrade.gate_start_time, now)
        if waited > parse_duration(strategy.health_check_timeout):
            self._fail(cluster, upgrade, f"pre-upgrade health check failed: {analysis.message}", now)
        else:
            upgrade.message = f"waiting for a healthy cluster before upgrading: {analysis.message}"
        return False

    def _advance(
        self,
        cluster: ClusterObject,
        upgrade: UpgradeStatus,
        observations: List[ServerObservation],
        analysis: SplitBrainAnalysis,
        now: datetime,
    ):
        strategy = cluster.spec.upgrade_strategy
        healthy = analysis.classification == MembershipClassification.HEALTHY
        in_flight = [obs for obs in observations if obs.state == ServerState.IN_PROGRESS]
        pending = [obs for obs in self.upgrade_order(observations) if obs.state == ServerState.PENDING]
        server_budget = parse_duration(strategy.server_timeout)
        step_elapsed = seconds_since(upgrade.current_server_start_time, now)

        if upgrade.current_server and not in_flight and healthy:
            logger.info(f"{upgrade.current_server} upgraded and rejoined the cluster")
            upgrade.current_server = None
            upgrade.current_server_start_time = None
            step_elapsed = None

        waiting_on = ", ".join(obs.pod_name for obs in in_flight) or upgrade.current_server
        if waiting_on and step_elapsed is not None and step_elapsed > server_budget:
            self._fail(
                cluster,
                upgrade,
                f"{waiting_on} did not become ready and rejoin the cluster within {strategy.server_timeout}",
                now,
            )
            return

        if pending:
            if len(in_flight) >= strategy.max_unavailable_during_upgrade:
                upgrade.message = f"waiting for {waiting_on} to become ready ({analysis.message})"
                return
            if not in_flight and not healthy:
                upgrade.message = f"waiting for a healthy cluster before the next server ({analysis.message})"
                return
            slots = strategy.max_unavailable_during_upgrade - len(in_flight)
            self._upgrade_servers(cluster, upgrade, pending[:slots], now)
            return

        if waiting_on:
            upgrade.message = f"waiting for {waiting_on} to rejoin the cluster ({analysis.message})"
            return

        self._post_upgrade_gate(cluster, upgrade, analysis, now)

    def _upgrade_servers(
        self, cluster: ClusterObject, upgrade: UpgradeStatus, batch: List[ServerObservation], now: datetime
    ):
        names = []
        for obs in batch:
            try:
                self.ops.store.delete_pod(cluster.namespace, obs.pod_name)
            except NotFoundError:
                logger.debug(f"{obs.pod_name} already gone")
            names.append(obs.pod_name)
            obs.state = ServerState.IN_PROGRESS
        current = [name for name in (upgrade.current_server or "").split(",") if name]
        upgrade.current_server = ",".join(current + [name for name in names if name not in current])
        upgrade.current_server_start_time = now
        upgrade.current_step = STEP_UPGRADING_SERVERS
        upgrade.message = f"upgrading {', '.join(names)} to {upgrade.target_version}"
        progress = upgrade.progress
        for obs in batch:
            node_class = progress.secondaries if obs.secondary else progress.primaries
            node_class.pending -= 1
            node_class.in_progress += 1
            progress.pending -= 1
            progress.in_progress += 1
        logger.info(f"Upgrading {names} of {cluster.namespace}/{cluster.name} to {upgrade.target_version}")

    def _post_upgrade_gate(
        self, cluster: ClusterObject, upgrade: UpgradeStatus, analysis: SplitBrainAnalysis, now: datetime
    ):
        strategy = cluster.spec.upgrade_strategy
        if upgrade.current_step != STEP_POST_UPGRADE_CHECK:
            upgrade.current_step = STEP_POST_UPGRADE_CHECK
            upgrade.gate_start_time = now
        waited = seconds_since(upgrade.gate_start_time, now) or 0.0

        if analysis.classification == MembershipClassification.HEALTHY:
            self._complete(cluster, upgrade, f"upgraded all servers to {upgrade.target_version}", now)
            return

        if strategy.post_upgrade_health_check:
            if waited > parse_duration(strategy.health_check_timeout):
                self._fail(cluster, upgrade, f"post-upgrade health check failed: {analysis.message}", now)
            else:
                upgrade.message = f"all servers upgraded; waiting for a healthy cluster ({analysis.message})"
            return

        if waited > parse_duration(strategy.stabilization_timeout):
            self._complete(
                cluster,
                upgrade,
                f"upgraded all servers to {upgrade.target_version} without post-upgrade health check "
                f"(membership {analysis.classification.value})",
                now,
            )
        else:
            upgrade.message = "all servers upgraded; waiting for the cluster to stabilize"

    def _complete(self, cluster: ClusterObject, upgrade: UpgradeStatus, message: str, now: datetime):
        upgrade.phase = UpgradePhase.COMPLETED
        upgrade.current_step = STEP_COMPLETED
        upgrade.current_server = None
        upgrade.current_server_start_time = None
        upgrade.gate_start_time = None
        upgrade.completion_time = now
        upgrade.message = message
        upgrade.last_error = None
        self.recorder.normal(cluster, events.UPGRADE_COMPLETED, message)
        self._record_finished(cluster, upgrade, True, now)

    def _fail(self, cluster: ClusterObject, upgrade: UpgradeStatus, error: str, now: datetime):
        upgrade.last_error = error
        if cluster.spec.upgrade_strategy.auto_pause_on_failure:
            upgrade.phase = UpgradePhase.PAUSED
            upgrade.message = f"{error}; paused - set annotation {UPGRADE_ACTION_ANNOTATION}=resume or =abort"
            self.recorder.warning(cluster, events.UPGRADE_PAUSED, upgrade.message)
        else:
            upgrade.phase = UpgradePhase.FAILED
            upgrade.message = error
            upgrade.completion_time = now
            self.recorder.warning(cluster, events.UPGRADE_FAILED, error)
            self._record_finished(cluster, upgrade, False, now)

    def _record_finished(self, cluster: ClusterObject, upgrade: UpgradeStatus, success: bool, now: datetime):
        metrics.record_upgrade(cluster.name, cluster.namespace, success, seconds_since(upgrade.start_time, now))

    def _stage_statefulset(self, cluster: ClusterObject, name: str, image: str, now: datetime):
        def stage(sts: Dict[str, Any]):
            spec = sts.setdefault("spec", {})
            template = spec.setdefault("template", {})
            containers = template.setdefault("spec", {}).setdefault("containers", [])
            container = next((c for c in containers if c.get("name") == SERVER_CONTAINER), None)
            if container is None and containers:
                container = containers[0]
            changed = False
            if container is not None and container.get("image") != image:
                container["image"] = image
                changed = True
            if (spec.get("updateStrategy") or {}).get("type") != "OnDelete":
                spec["updateStrategy"] = {"type": "OnDelete"}
                changed = True
            if not changed:
                return False
            annotations = template.setdefault("metadata", {}).setdefault("annotations", {})
            annotations[UPGRADE_TIMESTAMP_ANNOTATION] = format_rfc3339(now)
            logger.info(f"Staged {cluster.namespace}/{name} for upgrade to {image}")

        self.ops.mutate_statefulset(cluster.namespace, name, stage)

    def _restore_update_strategy(self, cluster: ClusterObject, name: str):
        def restore(sts: Dict[str, Any]):
            spec = sts.setdefault("spec", {})
            if (spec.get("updateStrategy") or {}).get("type") == "RollingUpdate":
                return False
            spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": 0}}

        self.ops.mutate_statefulset(cluster.namespace, name, restore)
