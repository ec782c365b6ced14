"""
Unit tests for the rolling upgrade orchestrator.

Test Coverage:
=============

1. Triggering and ownership:
   - Upgrades requested only when the declared tag differs from the running version
   - Failed upgrades keep ownership of the StatefulSet

2. Progress:
   - Secondaries first, then primaries in descending ordinal order
   - One server at a time, waiting for rejoin before the next
   - Re-running a pass on the same state changes nothing (idempotence)
   - Completion restores the update strategy and reports the new version

3. Gates and timeouts:
   - Pre-upgrade health gate waits, then pauses
   - Per-server timeout pauses the upgrade
   - Whole-upgrade timeout
   - Failure without auto-pause is terminal

4. User actions:
   - Resume restarts the time budgets
   - Abort fails the upgrade
   - Unsupported upgrade paths are rejected up front

5. Metrics:
   - Completed, failed, aborted and rejected upgrades are counted by result
   - Pausing is not a finished upgrade
"""

from datetime import timedelta

import pytest

from neocluster.controller import events
from neocluster.db.models import (
    ClusterObject,
    MembershipClassification,
    ServerRoleHint,
    TopologySpec,
    UpgradePhase,
)
from neocluster.health.splitbrain import RepairAction, SplitBrainAnalysis
from neocluster.topology.scheduler import TopologyScheduler
from neocluster.upgrade.orchestrator import (
    ACTION_ABORT,
    ACTION_RESUME,
    STEP_PRE_UPGRADE_CHECK,
    UPGRADE_ACTION_ANNOTATION,
    UPGRADE_TIMESTAMP_ANNOTATION,
    RollingUpgradeOrchestrator,
    ServerObservation,
    ServerState,
)

OLD = "5.26.0"
NEW = "2025.01.0"
STS = "graph-server"
UPGRADES = "neo4j_operator_upgrade_total"
LABELS = {"cluster_name": "graph", "namespace": "default"}


def analysis(classification=MembershipClassification.HEALTHY, message="all servers agree"):
    return SplitBrainAnalysis(
        classification=classification,
        expected_servers=3,
        ready_pods=3,
        repair_action=RepairAction.NONE,
        message=message,
    )


HEALTHY = analysis()
CONVERGING = analysis(MembershipClassification.CONVERGING, "2 membership groups")


@pytest.fixture
def orchestrator(ops, recorder):
    return RollingUpgradeOrchestrator(ops, recorder, requeue_seconds=10)


@pytest.fixture
def statefulset(store):
    store.add_statefulset(
        "default",
        {
            "metadata": {"name": STS},
            "spec": {
                "replicas": 3,
                "updateStrategy": {"type": "RollingUpdate", "rollingUpdate": {"partition": 0}},
                "template": {"spec": {"containers": [{"name": "neo4j", "image": f"neo4j:{OLD}"}]}},
            },
        },
    )
    return store.statefulsets[("default", STS)]


@pytest.fixture
def topology():
    return TopologyScheduler().derive(TopologySpec(servers=3))


@pytest.fixture
def cluster_with(make_cluster):
    """Build a cluster object declaring NEW with the given upgrade status"""

    def _build(upgrade=None, annotations=None, tag=NEW, **strategy):
        status = {"version": OLD}
        if upgrade is not None:
            status["upgradeStatus"] = upgrade.to_dict()
        raw = make_cluster(tag=tag, status=status, annotations=annotations)
        if strategy:
            raw["spec"]["upgradeStrategy"] = strategy
        return ClusterObject(raw)

    return _build


def seed_pods(store, make_pod, images):
    store.pods.clear()
    for index, (image, ready) in enumerate(images):
        if image is not None:
            store.add_pod(make_pod(index, image=f"neo4j:{image}", ready=ready))


def live_pods(store):
    return store.list_pods("default", "neo4j.com/cluster=graph")


class TestTrigger:
    def test_no_upgrade_without_version_change(self, orchestrator, make_cluster):
        cluster = ClusterObject(make_cluster(tag=OLD, status={"version": OLD}))
        assert not orchestrator.upgrade_requested(cluster)
        assert not orchestrator.owns_statefulset(cluster)

    def test_no_upgrade_before_first_version_recorded(self, orchestrator, make_cluster):
        cluster = ClusterObject(make_cluster(tag=NEW))
        assert not orchestrator.upgrade_requested(cluster)

    def test_version_change_requests_upgrade(self, orchestrator, cluster_with):
        cluster = cluster_with()
        assert orchestrator.upgrade_requested(cluster)
        assert orchestrator.owns_statefulset(cluster)


class TestOrdering:
    def test_secondaries_first_then_descending(self):
        observations = [
            ServerObservation(index=0, pod_name="s-0", secondary=False, state=ServerState.PENDING),
            ServerObservation(index=1, pod_name="s-1", secondary=True, state=ServerState.PENDING),
            ServerObservation(index=2, pod_name="s-2", secondary=False, state=ServerState.PENDING),
            ServerObservation(index=3, pod_name="s-3", secondary=True, state=ServerState.PENDING),
        ]

        order = RollingUpgradeOrchestrator.upgrade_order(observations)

        assert [obs.index for obs in order] == [3, 1, 2, 0]

    def test_observe_and_progress(self, orchestrator, make_pod):
        topology = TopologyScheduler().derive(
            TopologySpec(servers=3, server_roles=[ServerRoleHint(server_index=2, mode_constraint="SECONDARY")])
        )
        pods = [make_pod(0, image=f"neo4j:{OLD}"), make_pod(2, image=f"neo4j:{NEW}")]

        observations = orchestrator.observe(topology, pods, f"neo4j:{NEW}", STS)
        progress = orchestrator.progress(observations)

        assert [obs.state for obs in observations] == [
            ServerState.PENDING,
            ServerState.IN_PROGRESS,
            ServerState.UPGRADED,
        ]
        assert (progress.total, progress.upgraded, progress.in_progress, progress.pending) == (3, 1, 1, 1)
        assert progress.secondaries.upgraded == 1
        assert progress.primaries.pending == 1


class TestRollingUpgrade:
    """A complete upgrade driven pass by pass"""

    def test_full_upgrade(
        self, orchestrator, cluster_with, topology, store, make_pod, statefulset, recorder, metric_sample, now
    ):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        succeeded = metric_sample(UPGRADES, result="success", **LABELS)
        took = metric_sample("neo4j_operator_upgrade_duration_seconds_sum", result="success", **LABELS)

        # Pass 1: gate passes, StatefulSet staged, highest ordinal deleted
        out = orchestrator.reconcile(cluster_with(), topology, live_pods(store), HEALTHY, STS, now)
        assert out.status.phase == UpgradePhase.IN_PROGRESS
        assert out.requeue_after == 10
        assert store.deleted_pods == ["graph-server-2"]
        assert out.status.current_server == "graph-server-2"
        sts = store.statefulsets[("default", STS)]
        assert sts["spec"]["updateStrategy"] == {"type": "OnDelete"}
        assert sts["spec"]["template"]["spec"]["containers"][0]["image"] == f"neo4j:{NEW}"
        assert UPGRADE_TIMESTAMP_ANNOTATION in sts["spec"]["template"]["metadata"]["annotations"]
        assert events.UPGRADE_STARTED in recorder.reasons()

        # Pass 2: server 2 still restarting; nothing else is touched
        t = now + timedelta(seconds=10)
        out = orchestrator.reconcile(cluster_with(out.status), topology, live_pods(store), CONVERGING, STS, t)
        assert store.deleted_pods == ["graph-server-2"]
        assert out.status.progress.in_progress == 1

        # Pass 3: server 2 back on the new image; server 1 next
        seed_pods(store, make_pod, [(OLD, True), (OLD, True), (NEW, True)])
        t += timedelta(seconds=60)
        out = orchestrator.reconcile(cluster_with(out.status), topology, live_pods(store), HEALTHY, STS, t)
        assert store.deleted_pods == ["graph-server-2", "graph-server-1"]
        assert out.status.current_server == "graph-server-1"
        assert out.status.progress.upgraded == 1

        # Pass 4: server 1 back; server 0 last
        seed_pods(store, make_pod, [(OLD, True), (NEW, True), (NEW, True)])
        t += timedelta(seconds=60)
        out = orchestrator.reconcile(cluster_with(out.status), topology, live_pods(store), HEALTHY, STS, t)
        assert store.deleted_pods[-1] == "graph-server-0"

        # Pass 5: all upgraded and healthy
        seed_pods(store, make_pod, [(NEW, True)] * 3)
        t += timedelta(seconds=60)
        out = orchestrator.reconcile(cluster_with(out.status), topology, live_pods(store), HEALTHY, STS, t)
        assert out.status.phase == UpgradePhase.COMPLETED
        assert out.completed_version == NEW
        assert out.requeue_after is None
        assert out.status.completion_time == t
        assert store.statefulsets[("default", STS)]["spec"]["updateStrategy"]["type"] == "RollingUpdate"
        assert events.UPGRADE_COMPLETED in recorder.reasons()
        assert metric_sample(UPGRADES, result="success", **LABELS) == succeeded + 1
        assert metric_sample("neo4j_operator_upgrade_duration_seconds_sum", result="success", **LABELS) == took + 190

    def test_secondary_upgraded_first(self, orchestrator, make_cluster, store, make_pod, statefulset, now):
        raw = make_cluster(tag=NEW, status={"version": OLD})
        raw["spec"]["topology"]["serverRoles"] = [{"serverIndex": 0, "modeConstraint": "SECONDARY"}]
        cluster = ClusterObject(raw)
        topology = TopologyScheduler().derive(cluster.spec.topology)
        seed_pods(store, make_pod, [(OLD, True)] * 3)

        orchestrator.reconcile(cluster, topology, live_pods(store), HEALTHY, STS, now)

        assert store.deleted_pods == ["graph-server-0"]

    def test_pass_is_idempotent(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        first = orchestrator.reconcile(cluster_with(), topology, live_pods(store), HEALTHY, STS, now)
        cluster = cluster_with(first.status)
        writes = store.statefulset_writes

        second = orchestrator.reconcile(cluster, topology, live_pods(store), CONVERGING, STS, now)
        third = orchestrator.reconcile(cluster, topology, live_pods(store), CONVERGING, STS, now)

        assert second.status == third.status
        assert store.deleted_pods == ["graph-server-2"]
        assert store.statefulset_writes == writes

    def test_max_unavailable_batches(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        cluster = cluster_with(strategy="RollingUpgrade", maxUnavailableDuringUpgrade=2)

        out = orchestrator.reconcile(cluster, topology, live_pods(store), HEALTHY, STS, now)

        assert store.deleted_pods == ["graph-server-2", "graph-server-1"]
        assert out.status.current_server == "graph-server-2,graph-server-1"


class TestGatesAndTimeouts:
    def test_pre_upgrade_gate_waits(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)

        out = orchestrator.reconcile(cluster_with(), topology, live_pods(store), CONVERGING, STS, now)

        assert out.status.phase == UpgradePhase.PENDING
        assert out.status.current_step == STEP_PRE_UPGRADE_CHECK
        assert store.deleted_pods == []
        assert store.statefulsets[("default", STS)]["spec"]["updateStrategy"]["type"] == "RollingUpdate"

    def test_pre_upgrade_gate_times_out(self, orchestrator, cluster_with, topology, store, make_pod, recorder, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        pending = orchestrator.reconcile(cluster_with(), topology, live_pods(store), CONVERGING, "graph-server", now)

        later = now + timedelta(minutes=6)
        out = orchestrator.reconcile(cluster_with(pending.status), topology, live_pods(store), CONVERGING, STS, later)

        assert out.status.phase == UpgradePhase.PAUSED
        assert "pre-upgrade health check failed" in out.status.last_error
        assert out.requeue_after is None
        assert events.UPGRADE_PAUSED in recorder.reasons()

    def test_server_timeout_pauses(
        self, orchestrator, cluster_with, topology, store, make_pod, statefulset, metric_sample, now
    ):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        failed = metric_sample(UPGRADES, result="failure", **LABELS)
        started = orchestrator.reconcile(cluster_with(), topology, live_pods(store), HEALTHY, STS, now)
        seed_pods(store, make_pod, [(OLD, True), (OLD, True), (NEW, False)])

        later = now + timedelta(minutes=11)
        out = orchestrator.reconcile(cluster_with(started.status), topology, live_pods(store), CONVERGING, STS, later)

        assert out.status.phase == UpgradePhase.PAUSED
        assert "graph-server-2 did not become ready" in out.status.last_error
        assert UPGRADE_ACTION_ANNOTATION in out.status.message
        assert metric_sample(UPGRADES, result="failure", **LABELS) == failed

    def test_failure_without_auto_pause(
        self, orchestrator, cluster_with, topology, store, make_pod, statefulset, metric_sample, now
    ):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        failed = metric_sample(UPGRADES, result="failure", **LABELS)
        started = orchestrator.reconcile(
            cluster_with(autoPauseOnFailure=False), topology, live_pods(store), HEALTHY, STS, now
        )
        seed_pods(store, make_pod, [(OLD, True), (OLD, True), (NEW, False)])

        later = now + timedelta(minutes=11)
        cluster = cluster_with(started.status, autoPauseOnFailure=False)
        out = orchestrator.reconcile(cluster, topology, live_pods(store), CONVERGING, STS, later)

        assert out.status.phase == UpgradePhase.FAILED
        assert out.status.completion_time == later
        assert orchestrator.owns_statefulset(cluster_with(out.status))
        assert not orchestrator.upgrade_requested(cluster_with(out.status))
        assert metric_sample(UPGRADES, result="failure", **LABELS) == failed + 1

    def test_whole_upgrade_timeout(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        started = orchestrator.reconcile(cluster_with(), topology, live_pods(store), HEALTHY, STS, now)

        later = now + timedelta(minutes=31)
        out = orchestrator.reconcile(cluster_with(started.status), topology, live_pods(store), HEALTHY, STS, later)

        assert out.status.phase == UpgradePhase.PAUSED
        assert "did not complete within 30m" in out.status.last_error

    def test_stabilization_without_post_check(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(NEW, True)] * 3)
        started = orchestrator.reconcile(
            cluster_with(postUpgradeHealthCheck=False), topology, live_pods(store), HEALTHY, STS, now
        )
        assert started.status.phase == UpgradePhase.COMPLETED

        # Same state but the membership never settles: completes after the stabilization window
        waiting = orchestrator.reconcile(
            cluster_with(postUpgradeHealthCheck=False, preUpgradeHealthCheck=False),
            topology,
            live_pods(store),
            CONVERGING,
            STS,
            now,
        )
        assert waiting.status.phase == UpgradePhase.IN_PROGRESS

        later = now + timedelta(minutes=4)
        cluster = cluster_with(waiting.status, postUpgradeHealthCheck=False, preUpgradeHealthCheck=False)
        done = orchestrator.reconcile(cluster, topology, live_pods(store), CONVERGING, STS, later)
        assert done.status.phase == UpgradePhase.COMPLETED
        assert "without post-upgrade health check" in done.status.message


class TestUserActions:
    @pytest.fixture
    def paused(self, orchestrator, cluster_with, topology, store, make_pod, statefulset, now):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        started = orchestrator.reconcile(cluster_with(), topology, live_pods(store), HEALTHY, STS, now)
        seed_pods(store, make_pod, [(OLD, True), (OLD, True), (NEW, False)])
        out = orchestrator.reconcile(
            cluster_with(started.status), topology, live_pods(store), CONVERGING, STS, now + timedelta(minutes=11)
        )
        assert out.status.phase == UpgradePhase.PAUSED
        return out.status

    def test_paused_upgrade_waits(self, orchestrator, cluster_with, paused, topology, store, now):
        deleted = list(store.deleted_pods)

        out = orchestrator.reconcile(cluster_with(paused), topology, live_pods(store), HEALTHY, STS, now)

        assert out.status.phase == UpgradePhase.PAUSED
        assert store.deleted_pods == deleted

    def test_resume_restarts_budgets(self, orchestrator, cluster_with, paused, topology, store, make_pod, recorder, now):
        seed_pods(store, make_pod, [(OLD, True), (OLD, True), (NEW, True)])
        resumed_at = now + timedelta(hours=2)
        cluster = cluster_with(paused, annotations={UPGRADE_ACTION_ANNOTATION: ACTION_RESUME})

        out = orchestrator.reconcile(cluster, topology, live_pods(store), HEALTHY, STS, resumed_at)

        assert out.status.phase == UpgradePhase.IN_PROGRESS
        assert out.status.start_time == resumed_at
        assert store.deleted_pods[-1] == "graph-server-1"
        assert events.UPGRADE_RESUMED in recorder.reasons()

    def test_abort_fails_upgrade(self, orchestrator, cluster_with, paused, topology, store, metric_sample, now):
        failed = metric_sample(UPGRADES, result="failure", **LABELS)
        cluster = cluster_with(paused, annotations={UPGRADE_ACTION_ANNOTATION: ACTION_ABORT})

        out = orchestrator.reconcile(cluster, topology, live_pods(store), HEALTHY, STS, now)

        assert out.status.phase == UpgradePhase.FAILED
        assert out.status.last_error == "upgrade aborted by user"
        assert out.requeue_after is None
        assert metric_sample(UPGRADES, result="failure", **LABELS) == failed + 1


class TestRejectedPaths:
    def test_downgrade_rejected(
        self, orchestrator, cluster_with, topology, store, make_pod, statefulset, recorder, metric_sample, now
    ):
        seed_pods(store, make_pod, [(OLD, True)] * 3)
        failed = metric_sample(UPGRADES, result="failure", **LABELS)

        out = orchestrator.reconcile(cluster_with(tag="5.25.0"), topology, live_pods(store), HEALTHY, STS, now)

        assert out.status.phase == UpgradePhase.FAILED
        assert "downgrades are not supported" in out.status.last_error
        assert store.deleted_pods == []
        assert events.UPGRADE_FAILED in recorder.reasons()
        assert metric_sample(UPGRADES, result="failure", **LABELS) == failed + 1

    def test_validate_strategy_durations(self):
        from neocluster.db.models import UpgradeStrategySpec

        violations = RollingUpgradeOrchestrator.validate_strategy(
            UpgradeStrategySpec(upgrade_timeout="soon", server_timeout="5m")
        )
        assert violations == ["invalid duration 'soon' for upgradeStrategy.upgrade_timeout"]
