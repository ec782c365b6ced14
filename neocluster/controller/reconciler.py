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
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from neocluster import metrics
from neocluster.config import Settings, get_settings
from neocluster.controller import conditions, events
from neocluster.controller.deployment import (
    ClusterDeployment,
    DeploymentRef,
    StandaloneDeployment,
    expected_servers,
    pod_selector,
    resolve_deployment,
)
from neocluster.controller.events import EventRecorder
from neocluster.controller.resources import ResourceApplier, TargetManifest, build_target_manifest
from neocluster.db.models import (
    ClusterObject,
    ClusterPhase,
    ClusterStatus,
    MembershipClassification,
    MembershipStatus,
    ObjectRef,
    RetentionPolicy,
    UpgradePhase,
    UpgradeStatus,
    UpgradeStrategyType,
)
from neocluster.db.neo4j_sync_manager import Neo4jClientFactory
from neocluster.db.ops import ClusterStoreOps, KubernetesObjectStore, ObjectStore
from neocluster.exceptions import (
    AdminQueryError,
    NotFoundError,
    TopologyValidationError,
    TransientError,
    ValidationError,
)
from neocluster.health.splitbrain import RepairAction, RepairOutcome, SplitBrainAnalysis, SplitBrainDetector, pod_for_address
from neocluster.topology.drift import DriftAction, DriftDecision, DriftManager, describe_changes
from neocluster.topology.scheduler import TopologyScheduler, ValidatedTopology
from neocluster.upgrade.orchestrator import UPGRADE_ACTION_ANNOTATION, RollingUpgradeOrchestrator
from neocluster.utils.pods import is_pod_ready, ordinal_from_name, server_image, sort_by_ordinal
from neocluster.utils.timeutils import utc_now

logger = logging.getLogger(__name__)

FINALIZER = "neo4j.neo4j.com/cluster-finalizer"

CLUSTER_PHASES = tuple(phase.value for phase in ClusterPhase)

CleanupHook = Callable[[ClusterObject], None]


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass: when to run again, and the error that shaped that choice"""

    requeue_after: Optional[float] = None
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requeue_after": self.requeue_after,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


class PvcCleanupHook:
    """Deletes the data volumes of a deleted cluster unless its retention policy keeps them"""

    def __init__(self, store: ObjectStore):
        self.store = store

    def __call__(self, cluster: ClusterObject):
        try:
            retention = cluster.spec.storage.retention_policy
        except ValidationError:
            retention = RetentionPolicy.DELETE
        if retention != RetentionPolicy.DELETE:
            logger.info(f"Keeping volumes of {cluster.namespace}/{cluster.name} (retention policy {retention.value})")
            return
        for pvc in self.store.list_pvcs(cluster.namespace, f"neo4j.com/cluster={cluster.name}"):
            name = pvc["metadata"]["name"]
            try:
                self.store.delete_pvc(cluster.namespace, name)
                logger.info(f"Deleted volume claim {cluster.namespace}/{name}")
            except NotFoundError:
                logger.debug(f"Volume claim {cluster.namespace}/{name} already deleted")


@dataclass
class PassState:
    """Everything one live pass computed, consumed by the final status write"""

    topology: ValidatedTopology
    manifest: TargetManifest
    decision: DriftDecision
    analysis: SplitBrainAnalysis
    membership: MembershipStatus
    ready_pods: int
    upgrade_status: Optional[UpgradeStatus] = None
    upgrade_requeue: Optional[float] = None
    version: Optional[str] = None
    repair: Optional[RepairOutcome] = None
    repair_note: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class ClusterReconciler:
    """
    Top-level control loop for one cluster object.

    Each call is a function of the object snapshot and the injected clients;
    the reconciler keeps no state between calls. It must run serially per
    object (the task layer holds a per-object lock) but may run concurrently
    for different objects.
    """

    def __init__(
        self,
        ops: ClusterStoreOps,
        scheduler: TopologyScheduler,
        drift_manager: DriftManager,
        detector: SplitBrainDetector,
        orchestrator: RollingUpgradeOrchestrator,
        applier: ResourceApplier,
        recorder: EventRecorder,
        client_factory: Neo4jClientFactory,
        settings: Settings,
        cleanup_hooks: Optional[Sequence[CleanupHook]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ops = ops
        self.scheduler = scheduler
        self.drift_manager = drift_manager
        self.detector = detector
        self.orchestrator = orchestrator
        self.applier = applier
        self.recorder = recorder
        self.client_factory = client_factory
        self.settings = settings
        self.cleanup_hooks = list(cleanup_hooks) if cleanup_hooks is not None else [PvcCleanupHook(ops.store)]
        self.clock = clock

    def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        """
        Drive one cluster object towards its declared state.

        Args:
            ref: Key of the cluster object

        Returns:
            ReconcileResult; requeue_after is always set unless the object is gone
        """
        started = time.monotonic()
        operation = metrics.OPERATION_RECONCILE
        try:
            cluster = self.ops.get_cluster(ref)
        except NotFoundError:
            logger.debug(f"{ref} no longer exists, nothing to reconcile")
            return ReconcileResult()
        except TransientError as e:
            logger.warning(f"Failed to read {ref}: {e}")
            result = ReconcileResult(requeue_after=self.settings.transient_requeue_seconds, error=e)
        else:
            result = self._reconcile_object(ref, cluster)
            if cluster.deletion_timestamp:
                operation = metrics.OPERATION_DELETE
        metrics.record_reconcile(
            ref.name, ref.namespace, operation, time.monotonic() - started, success=result.error is None
        )
        return result

    def _reconcile_object(self, ref: ObjectRef, cluster: ClusterObject) -> ReconcileResult:
        deployment = resolve_deployment(cluster)
        try:
            if cluster.deletion_timestamp:
                return self._finalize(deployment)
            if FINALIZER not in cluster.finalizers:
                self._add_finalizer(ref)
                return ReconcileResult(requeue_after=0)
            return self._reconcile_live(deployment)
        except ValidationError as e:
            logger.warning(f"{ref} failed validation: {e}")
            return self._report_validation_failure(ref, cluster, e)
        except NotFoundError as e:
            # Deleted while the pass was running
            logger.info(f"{ref} disappeared during reconcile: {e}")
            return ReconcileResult(requeue_after=self.settings.transient_requeue_seconds, error=e)
        except TransientError as e:
            logger.warning(f"Transient error reconciling {ref}, will retry: {e}")
            return ReconcileResult(requeue_after=self.settings.transient_requeue_seconds, error=e)

    # Lifecycle

    def _add_finalizer(self, ref: ObjectRef):
        def add(obj: ClusterObject):
            metadata = obj.raw.setdefault("metadata", {})
            finalizers = list(metadata.get("finalizers") or [])
            if FINALIZER in finalizers:
                return False
            metadata["finalizers"] = finalizers + [FINALIZER]

        self.ops.mutate_cluster(ref, add)
        logger.info(f"Added finalizer to {ref}")

    def _finalize(self, deployment: DeploymentRef) -> ReconcileResult:
        cluster = deployment.cluster
        if FINALIZER not in cluster.finalizers:
            return ReconcileResult()

        logger.info(f"Running cleanup for deleted {cluster.ref}")
        for hook in self.cleanup_hooks:
            try:
                hook(cluster)
            except TransientError as e:
                self.recorder.warning(cluster, events.CLEANUP_FAILED, f"cleanup failed, will retry: {e}")
                return ReconcileResult(requeue_after=self.settings.transient_requeue_seconds, error=e)

        def remove(obj: ClusterObject):
            metadata = obj.raw.setdefault("metadata", {})
            finalizers = list(metadata.get("finalizers") or [])
            if FINALIZER not in finalizers:
                return False
            metadata["finalizers"] = [f for f in finalizers if f != FINALIZER]

        try:
            self.ops.mutate_cluster(cluster.ref, remove)
        except NotFoundError:
            logger.debug(f"{cluster.ref} already gone")
        logger.info(f"Removed finalizer from {cluster.ref}")
        metrics.forget_cluster(cluster.name, cluster.namespace, CLUSTER_PHASES)
        return ReconcileResult()

    def _clear_upgrade_action(self, ref: ObjectRef):
        def clear(obj: ClusterObject):
            annotations = obj.raw.get("metadata", {}).get("annotations") or {}
            if UPGRADE_ACTION_ANNOTATION not in annotations:
                return False
            del annotations[UPGRADE_ACTION_ANNOTATION]

        self.ops.mutate_cluster(ref, clear)

    # Live pass

    def _validate(self, deployment: DeploymentRef) -> ValidatedTopology:
        spec = deployment.cluster.spec
        violations = self.orchestrator.validate_strategy(spec.upgrade_strategy)
        match deployment:
            case ClusterDeployment():
                try:
                    topology = self.scheduler.derive(spec.topology)
                except TopologyValidationError as e:
                    raise TopologyValidationError(e.violations + violations) from e
            case StandaloneDeployment():
                topology = self.scheduler.derive_standalone()
        if violations:
            raise ValidationError(violations)
        return topology

    def _classify(
        self, deployment: DeploymentRef, pods: List[Dict[str, Any]], membership: MembershipStatus, now: datetime
    ) -> SplitBrainAnalysis:
        match deployment:
            case ClusterDeployment(cluster=cluster):
                return self.detector.detect(cluster, pods, expected_servers(deployment), membership, now)
            case StandaloneDeployment():
                ready = sum(1 for pod in pods if is_pod_ready(pod))
                if ready:
                    return SplitBrainAnalysis(
                        classification=MembershipClassification.HEALTHY,
                        expected_servers=1,
                        ready_pods=ready,
                        repair_action=RepairAction.NONE,
                        message="standalone server ready",
                    )
                return SplitBrainAnalysis(
                    classification=MembershipClassification.UNFORMED,
                    expected_servers=1,
                    ready_pods=0,
                    repair_action=RepairAction.WAIT_FORMING,
                    message="standalone server not ready",
                )

    def _reconcile_live(self, deployment: DeploymentRef) -> ReconcileResult:
        cluster = deployment.cluster
        ref = cluster.ref
        now = self.clock()

        topology = self._validate(deployment)
        payload = self.scheduler.render(topology, cluster.spec.config)
        manifest = build_target_manifest(deployment, topology, payload)

        rolling = cluster.spec.upgrade_strategy.strategy == UpgradeStrategyType.ROLLING_UPGRADE
        upgrade_owned = rolling and self.orchestrator.owns_statefulset(cluster)
        current_upgrade = cluster.status.upgrade_status
        upgrade_active = current_upgrade is not None and current_upgrade.phase.is_active

        # Child resources change only with the drift manager's approval
        decision = self.drift_manager.evaluate(cluster.status.configuration, payload.hash, now, defer=upgrade_active)
        self.applier.ensure_services(deployment, manifest)
        self._apply_configuration(cluster, manifest, decision)
        self.applier.apply_statefulset(
            deployment,
            manifest,
            manage_image=not upgrade_owned,
            apply_config=decision.should_apply,
            restart_at=now if decision.restart_required else None,
        )

        pods = sort_by_ordinal(self.ops.store.list_pods(cluster.namespace, pod_selector(deployment)))
        analysis = self._classify(deployment, pods, cluster.status.membership, now)
        state = PassState(
            topology=topology,
            manifest=manifest,
            decision=decision,
            analysis=analysis,
            membership=self.detector.next_membership_state(cluster.status.membership, analysis, now),
            ready_pods=sum(1 for pod in pods if is_pod_ready(pod)),
            upgrade_status=current_upgrade,
            version=cluster.status.version,
        )

        consumed_action = UPGRADE_ACTION_ANNOTATION in cluster.annotations
        if rolling and self.orchestrator.upgrade_requested(cluster):
            outcome = self.orchestrator.reconcile(cluster, topology, pods, analysis, manifest.statefulset_name, now)
            state.upgrade_status = outcome.status
            state.upgrade_requeue = outcome.requeue_after
            if outcome.completed_version:
                state.version = outcome.completed_version
        elif consumed_action:
            logger.info(f"No upgrade to act on for {ref}; dropping {UPGRADE_ACTION_ANNOTATION} annotation")

        self._repair_if_split(cluster, state, now)

        if not upgrade_owned and self._running_declared_image(manifest, pods):
            state.version = cluster.spec.image.tag

        if consumed_action:
            self._clear_upgrade_action(ref)

        previous_phase = cluster.status.phase
        updated = self.ops.mutate_status(ref, lambda obj: self._apply_status(obj, state, now))
        metrics.record_cluster_state(
            ref.name,
            ref.namespace,
            updated.status.phase.value,
            CLUSTER_PHASES,
            healthy=analysis.classification == MembershipClassification.HEALTHY,
            desired=manifest.replicas,
            ready=state.ready_pods,
        )
        if updated.status.phase == ClusterPhase.FORMING and previous_phase == ClusterPhase.PENDING:
            self.recorder.normal(cluster, events.CLUSTER_FORMING, f"forming with {manifest.replicas} servers")
        if updated.status.phase == ClusterPhase.READY and previous_phase != ClusterPhase.READY:
            self.recorder.normal(cluster, events.CLUSTER_READY, updated.status.message or "cluster ready")
            if topology.clustered:
                self._check_live_roles(cluster, topology, pods, manifest)

        requeue = [self.settings.resync_interval_seconds, decision.requeue_after, state.upgrade_requeue]
        return ReconcileResult(requeue_after=min(r for r in requeue if r is not None))

    def _apply_configuration(self, cluster: ClusterObject, manifest: TargetManifest, decision: DriftDecision):
        action = decision.action
        if not decision.should_apply:
            if action == DriftAction.REVERTED:
                self.recorder.normal(cluster, events.CONFIGURATION_APPLIED, "pending configuration change reverted")
            elif action in (DriftAction.DEBOUNCE_STARTED, DriftAction.DEBOUNCE_RESET):
                summary = self._summarize_changes(cluster, manifest)
                self.recorder.normal(
                    cluster,
                    events.CONFIGURATION_DRIFT_DETECTED,
                    f"configuration {manifest.config.hash} pending for {int(self.drift_manager.window_seconds)}s: {summary}",
                )
            self._restore_configmap(cluster, manifest, decision)
            return

        summary = self._summarize_changes(cluster, manifest)
        self.applier.apply_configmap(cluster, manifest)
        if action == DriftAction.INITIAL:
            self.recorder.normal(cluster, events.CONFIGURATION_APPLIED, f"initial configuration {manifest.config.hash}")
            for warning in manifest.topology.warnings:
                self.recorder.warning(cluster, events.TOPOLOGY_WARNING, warning)
        else:
            self.recorder.normal(
                cluster,
                events.CONFIGURATION_APPLIED,
                f"applied configuration {manifest.config.hash} with rolling restart: {summary}",
            )

    def _summarize_changes(self, cluster: ClusterObject, manifest: TargetManifest) -> str:
        applied_files = self.applier.read_config_files(cluster, manifest)
        changes = describe_changes(applied_files, manifest.config.files)
        return "; ".join(changes[:10]) or "no textual changes"

    def _restore_configmap(self, cluster: ClusterObject, manifest: TargetManifest, decision: DriftDecision):
        # Pods restarted by repair or upgrade mount this ConfigMap
        if not self.applier.ensure_configmap(cluster, manifest):
            return
        applied = decision.state.applied_hash
        if applied == manifest.config.hash:
            message = f"recreated missing configmap with applied configuration {applied}"
        else:
            message = (
                f"recreated missing configmap with pending configuration {manifest.config.hash}; "
                f"applied configuration {applied} was lost with it"
            )
        logger.warning(f"{cluster.ref}: {message}")
        self.recorder.warning(cluster, events.CONFIGMAP_RECREATED, message)

    def _repair_if_split(self, cluster: ClusterObject, state: PassState, now: datetime):
        if state.analysis.classification != MembershipClassification.SPLIT:
            return
        upgrade = state.upgrade_status
        if upgrade is not None and upgrade.phase.is_active:
            state.repair_note = f"repair suspended while upgrade is {upgrade.phase.value}"
            logger.warning(f"Split-brain on {cluster.ref} during upgrade; {state.repair_note}")
            return
        repair = self.detector.repair(
            cluster, state.analysis, self.ops.store, self.recorder, state.membership.last_repair_time, now
        )
        state.repair = repair
        if not repair.attempted:
            state.repair_note = f"repair skipped ({repair.skipped_reason})"
            return
        state.membership.last_repair_time = now
        state.membership.last_repaired_pods = repair.repaired_pods + sorted(repair.failed_pods)
        if repair.failed_pods:
            state.repair_note = f"failed to restart {sorted(repair.failed_pods)}"
        else:
            state.repair_note = f"restarted {', '.join(repair.repaired_pods)} to repair partition"

    def _running_declared_image(self, manifest: TargetManifest, pods: List[Dict[str, Any]]) -> bool:
        if len(pods) != manifest.replicas:
            return False
        return all(is_pod_ready(pod) and server_image(pod) == manifest.image for pod in pods)

    def _check_live_roles(
        self, cluster: ClusterObject, topology: ValidatedTopology, pods: List[Dict[str, Any]], manifest: TargetManifest
    ):
        ready = [pod for pod in pods if is_pod_ready(pod)]
        if not ready:
            return
        prefix = f"{manifest.statefulset_name}-"

        def index_for_address(address: str) -> Optional[int]:
            name = pod_for_address(address)
            if not name or not name.startswith(prefix):
                return None
            return ordinal_from_name(name)

        try:
            with self.client_factory.for_pod(cluster, ready[0]["metadata"]["name"]) as admin:
                hosting = admin.list_database_hosting()
        except (AdminQueryError, NotFoundError, TransientError) as e:
            logger.warning(f"Could not verify live database roles of {cluster.ref}: {e}")
            return
        for mismatch in self.scheduler.check_live_roles(topology, hosting, index_for_address):
            self.recorder.warning(cluster, events.TOPOLOGY_WARNING, mismatch)

    # Status

    def _derive_phase(self, cluster: ClusterObject, state: PassState):
        upgrade = state.upgrade_status
        analysis = state.analysis
        note = f"; {state.repair_note}" if state.repair_note else ""
        if upgrade is not None:
            if upgrade.phase in (UpgradePhase.PENDING, UpgradePhase.IN_PROGRESS):
                return ClusterPhase.UPGRADING, (upgrade.message or f"upgrading to {upgrade.target_version}") + note
            if upgrade.phase == UpgradePhase.PAUSED:
                return ClusterPhase.DEGRADED, f"upgrade to {upgrade.target_version} paused: {upgrade.last_error}{note}"
            if upgrade.phase == UpgradePhase.FAILED and upgrade.target_version == cluster.spec.image.tag:
                return ClusterPhase.DEGRADED, f"upgrade to {upgrade.target_version} failed: {upgrade.last_error}"

        match analysis.classification:
            case MembershipClassification.HEALTHY:
                return ClusterPhase.READY, analysis.message
            case MembershipClassification.SPLIT:
                return ClusterPhase.DEGRADED, f"split-brain: {analysis.message}{note}"
            case _:
                return ClusterPhase.FORMING, analysis.message

    def _endpoints(self, cluster: ClusterObject, manifest: TargetManifest):
        host = f"{manifest.client_service_name}.{cluster.namespace}.svc.{self.settings.cluster_domain}"
        return f"bolt://{host}:{self.settings.bolt_port}", f"http://{host}:{self.settings.http_port}"

    def _apply_status(self, obj: ClusterObject, state: PassState, now: datetime):
        status: ClusterStatus = obj.status
        phase, message = self._derive_phase(obj, state)
        status.phase = phase
        status.message = message
        status.replicas.ready = state.ready_pods
        status.replicas.total = state.manifest.replicas
        status.version = state.version
        status.observed_generation = obj.generation
        status.endpoints.bolt, status.endpoints.http = self._endpoints(obj, state.manifest)
        status.upgrade_status = state.upgrade_status
        status.configuration = state.decision.state
        status.membership = state.membership

        ready_status, ready_reason = conditions.phase_to_ready_condition(phase)
        conditions.set_condition(
            status.conditions, conditions.CONDITION_READY, ready_status, ready_reason, message, now, obj.generation
        )

        analysis = state.analysis
        split = analysis.classification == MembershipClassification.SPLIT
        conditions.set_condition(
            status.conditions,
            conditions.CONDITION_SPLIT_BRAIN,
            conditions.STATUS_TRUE if split else conditions.STATUS_FALSE,
            analysis.classification.value,
            analysis.message,
            now,
        )

        configuration = state.decision.state
        if configuration.pending_hash:
            drift = (conditions.STATUS_TRUE, "ChangePending", f"configuration {configuration.pending_hash} pending")
        else:
            drift = (conditions.STATUS_FALSE, "InSync", f"configuration {configuration.applied_hash} applied")
        conditions.set_condition(status.conditions, conditions.CONDITION_CONFIGURATION_DRIFT, *drift, now)

        upgrade = state.upgrade_status
        if upgrade is None:
            upgrading = (conditions.STATUS_FALSE, "NoUpgrade", "no upgrade requested")
        elif upgrade.phase in (UpgradePhase.PENDING, UpgradePhase.IN_PROGRESS):
            upgrading = (conditions.STATUS_TRUE, upgrade.phase.value, upgrade.message or "")
        else:
            upgrading = (conditions.STATUS_FALSE, upgrade.phase.value, upgrade.message or "")
        conditions.set_condition(status.conditions, conditions.CONDITION_UPGRADING, *upgrading, now)

    def _report_validation_failure(self, ref: ObjectRef, cluster: ClusterObject, error: ValidationError):
        message = f"validation failed: {error}"

        def mark_failed(obj: ClusterObject):
            obj.status.phase = ClusterPhase.FAILED
            obj.status.message = message
            obj.status.observed_generation = obj.generation
            conditions.set_condition(
                obj.status.conditions,
                conditions.CONDITION_READY,
                conditions.STATUS_FALSE,
                error.reason,
                message,
                self.clock(),
                obj.generation,
            )

        try:
            self.ops.mutate_status(ref, mark_failed)
        except TransientError as e:
            logger.warning(f"Could not record validation failure on {ref}: {e}")
            return ReconcileResult(requeue_after=self.settings.transient_requeue_seconds, error=e)
        except NotFoundError:
            return ReconcileResult()
        metrics.record_cluster_state(ref.name, ref.namespace, ClusterPhase.FAILED.value, CLUSTER_PHASES, healthy=False)

        if cluster.status.message != message:
            reason = error.reason if error.reason == events.SERVER_ROLE_VALIDATION_FAILED else events.VALIDATION_FAILED
            self.recorder.warning(cluster, reason, message)
        return ReconcileResult(requeue_after=self.settings.resync_interval_seconds, error=error)


def create_cluster_reconciler(
    settings: Optional[Settings] = None, store: Optional[ObjectStore] = None
) -> ClusterReconciler:
    """Wire a reconciler with its collaborators; the composition root for tasks and the CLI"""
    settings = settings or get_settings()
    store = store or KubernetesObjectStore(request_timeout=settings.kube_request_timeout)
    ops = ClusterStoreOps(
        store,
        attempts=settings.conflict_retry_attempts,
        min_wait=settings.conflict_retry_min_wait,
        max_wait=settings.conflict_retry_max_wait,
    )
    recorder = EventRecorder(store)
    client_factory = Neo4jClientFactory(
        store,
        bolt_port=settings.bolt_port,
        cluster_domain=settings.cluster_domain,
        timeout=settings.membership_query_timeout,
    )
    return ClusterReconciler(
        ops=ops,
        scheduler=TopologyScheduler(),
        drift_manager=DriftManager(window_seconds=settings.config_debounce_seconds),
        detector=SplitBrainDetector(
            client_factory,
            grace_seconds=settings.split_brain_grace_seconds,
            cooldown_seconds=settings.split_brain_repair_cooldown_seconds,
            query_timeout=settings.membership_query_timeout,
            max_concurrency=settings.membership_query_concurrency,
        ),
        orchestrator=RollingUpgradeOrchestrator(ops, recorder, requeue_seconds=settings.upgrade_requeue_seconds),
        applier=ResourceApplier(ops, bolt_port=settings.bolt_port, http_port=settings.http_port),
        recorder=recorder,
        client_factory=client_factory,
        settings=settings,
    )
