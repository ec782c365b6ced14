"""
Unit tests for split-brain detection and repair.

Test Coverage:
=============

1. Classification (pure):
   - Healthy, unformed, converging within grace, split after grace
   - Unqueryable pods are excluded, not treated as partitions
   - Majority failure yields INVESTIGATE, never a split
   - Equal-size groups: majority goes to the group with the lowest ordinal

2. Detector:
   - Concurrent per-pod queries, failed queries become unknown views
   - Grace measured from the first observed disagreement
   - Hysteresis state transitions
   - Unreadable admin credentials make every view unknown

3. Repair:
   - Minority pods restarted with events
   - Cooldown between repairs
   - Failed pod deletions reported
   - Acted-on splits are counted in the split-brain metric
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from neocluster.controller import events
from neocluster.db.models import ClusterObject, MembershipClassification, MembershipStatus
from neocluster.db.neo4j_sync_manager import ServerInfo
from neocluster.exceptions import AdminQueryError, StoreUnavailableError
from neocluster.health.splitbrain import (
    RepairAction,
    ServerMembershipView,
    SplitBrainDetector,
    classify_views,
    pod_for_address,
)

GRACE = 300
SPLIT_COUNTER = "neo4j_operator_split_brain_detected_total"
CLUSTER_LABELS = {"cluster_name": "graph", "namespace": "default"}


def view(name, peers, now, error=None):
    return ServerMembershipView(
        pod_name=name,
        ordinal=int(name.rsplit("-", 1)[-1]),
        reported_peers=frozenset(peers),
        timestamp=now,
        query_error=error,
    )


def address(pod):
    return f"{pod}.graph-headless.default.svc.cluster.local:7687"


class FakeAdminClient:
    def __init__(self, pod_name, peers=None, error=None):
        self.pod_name = pod_name
        self.peers = peers or []
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def list_servers(self):
        if self.error:
            raise AdminQueryError(self.pod_name, self.error)
        return [ServerInfo(name=p, address=address(p), state="Enabled", health="Available") for p in self.peers]


class FakeClientFactory:
    """Answers membership queries from a table of pod -> visible peers"""

    def __init__(self, membership, failing=(), credentials_error=None):
        self.membership = membership
        self.failing = set(failing)
        self.credentials_error = credentials_error
        self.queried = []

    def credentials(self, cluster):
        if self.credentials_error:
            raise self.credentials_error
        return "neo4j", "secret"

    def for_pod(self, cluster, pod_name, credentials=None):
        self.queried.append(pod_name)
        if pod_name in self.failing:
            return FakeAdminClient(pod_name, error="connection refused")
        return FakeAdminClient(pod_name, peers=self.membership.get(pod_name, []))


A, B, C = "graph-server-0", "graph-server-1", "graph-server-2"


class TestClassification:
    """classify_views is a pure function of its inputs"""

    def test_healthy(self, now):
        views = [view(p, [A, B, C], now) for p in (A, B, C)]

        analysis = classify_views(views, 3, 3, now - timedelta(hours=1), now, GRACE)

        assert analysis.classification == MembershipClassification.HEALTHY
        assert analysis.repair_action == RepairAction.NONE

    def test_unformed_when_pods_missing(self, now):
        analysis = classify_views([], 3, 2, None, now, GRACE)

        assert analysis.classification == MembershipClassification.UNFORMED
        assert analysis.repair_action == RepairAction.WAIT_FORMING

    def test_disagreement_within_grace_is_converging(self, now):
        views = [view(A, [A, B], now), view(B, [A, B], now), view(C, [C], now)]

        analysis = classify_views(views, 3, 3, now - timedelta(seconds=GRACE - 1), now, GRACE)

        assert analysis.classification == MembershipClassification.CONVERGING
        assert analysis.minority_pods == []

    def test_disagreement_after_grace_is_split(self, now):
        views = [view(A, [A, B], now), view(B, [A, B], now), view(C, [C], now)]

        analysis = classify_views(views, 3, 3, now - timedelta(seconds=GRACE + 1), now, GRACE)

        assert analysis.classification == MembershipClassification.SPLIT
        assert analysis.repair_action == RepairAction.RESTART_PODS
        assert analysis.majority == [A, B]
        assert analysis.minority_pods == [C]

    def test_one_sided_report_is_not_agreement(self, now):
        # C claims to see A but A does not see C
        views = [view(A, [A, B], now), view(B, [A, B], now), view(C, [A, C], now)]

        analysis = classify_views(views, 3, 3, now - timedelta(hours=1), now, GRACE)

        assert analysis.groups == [[A, B], [C]]

    def test_failed_query_is_unknown_not_split(self, now):
        views = [view(A, [A, B, C], now), view(B, [A, B, C], now), view(C, [], now, error="timeout")]

        analysis = classify_views(views, 3, 3, now - timedelta(hours=1), now, GRACE)

        assert analysis.classification == MembershipClassification.CONVERGING
        assert analysis.repair_action == RepairAction.WAIT_FORMING
        assert analysis.minority_pods == []

    def test_majority_failure_investigates(self, now):
        views = [
            view(A, [A], now),
            view(B, [B], now),
            view("graph-server-2", [], now, error="timeout"),
            view("graph-server-3", [], now, error="timeout"),
            view("graph-server-4", [], now, error="timeout"),
        ]

        analysis = classify_views(views, 5, 5, now - timedelta(hours=1), now, GRACE)

        assert analysis.classification == MembershipClassification.CONVERGING
        assert analysis.repair_action == RepairAction.INVESTIGATE
        assert analysis.minority_pods == []

    def test_nobody_answers_investigates(self, now):
        views = [view(p, [], now, error="refused") for p in (A, B, C)]

        analysis = classify_views(views, 3, 3, now - timedelta(hours=1), now, GRACE)

        assert analysis.classification == MembershipClassification.CONVERGING
        assert analysis.repair_action == RepairAction.INVESTIGATE

    def test_tie_goes_to_lowest_ordinal(self, now):
        d = "graph-server-3"
        views = [view(A, [A, C], now), view(C, [A, C], now), view(B, [B, d], now), view(d, [B, d], now)]

        analysis = classify_views(views, 4, 4, now - timedelta(hours=1), now, GRACE)

        assert analysis.classification == MembershipClassification.SPLIT
        assert analysis.majority == [A, C]
        assert analysis.minority_pods == [B, d]


class TestPodForAddress:
    def test_fqdn(self):
        assert pod_for_address(address(A)) == A

    def test_bare_host(self):
        assert pod_for_address("graph-server-1:7687") == B

    def test_ip_is_unknown(self):
        assert pod_for_address("10.0.0.1:7687") is None
        assert pod_for_address("") is None


@pytest.fixture
def cluster(make_cluster):
    return ClusterObject(make_cluster())


@pytest.fixture
def pods(make_pod):
    return [make_pod(i) for i in range(3)]


class TestDetector:
    """Detection over live pods with a fake admin client"""

    def test_healthy_cluster(self, cluster, pods, now):
        factory = FakeClientFactory({p: [A, B, C] for p in (A, B, C)})
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)

        analysis = detector.detect(cluster, pods, 3, MembershipStatus(), now)

        assert analysis.classification == MembershipClassification.HEALTHY
        assert sorted(factory.queried) == [A, B, C]

    def test_unready_pod_means_unformed_without_queries(self, cluster, make_pod, now):
        factory = FakeClientFactory({})
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)
        pods = [make_pod(0), make_pod(1), make_pod(2, ready=False)]

        analysis = detector.detect(cluster, pods, 3, MembershipStatus(), now)

        assert analysis.classification == MembershipClassification.UNFORMED
        assert factory.queried == []

    def test_first_disagreement_starts_grace(self, cluster, pods, now):
        factory = FakeClientFactory({A: [A, B], B: [A, B], C: [C]})
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)

        analysis = detector.detect(cluster, pods, 3, MembershipStatus(), now)

        assert analysis.classification == MembershipClassification.CONVERGING
        state = detector.next_membership_state(MembershipStatus(), analysis, now)
        assert state.disagreement_since == now

    def test_persistent_disagreement_becomes_split(self, cluster, pods, now):
        factory = FakeClientFactory({A: [A, B], B: [A, B], C: [C]})
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)
        membership = MembershipStatus(disagreement_since=now - timedelta(seconds=GRACE + 60))

        analysis = detector.detect(cluster, pods, 3, membership, now)

        assert analysis.classification == MembershipClassification.SPLIT
        assert analysis.minority_pods == [C]

    def test_recent_pod_restart_extends_grace(self, cluster, make_pod, now):
        factory = FakeClientFactory({A: [A, B], B: [A, B], C: [C]})
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)
        pods = [make_pod(0), make_pod(1), make_pod(2, ready_since=now - timedelta(seconds=30))]
        membership = MembershipStatus(disagreement_since=now - timedelta(seconds=GRACE + 60))

        analysis = detector.detect(cluster, pods, 3, membership, now)

        assert analysis.classification == MembershipClassification.CONVERGING

    def test_query_failure_is_unknown(self, cluster, pods, now):
        factory = FakeClientFactory({A: [A, B, C], B: [A, B, C]}, failing=[C])
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)

        analysis = detector.detect(cluster, pods, 3, MembershipStatus(), now)

        assert analysis.classification == MembershipClassification.CONVERGING
        unknown = [v for v in analysis.views if not v.responded]
        assert [v.pod_name for v in unknown] == [C]

    def test_undecodable_credentials_make_views_unknown(self, cluster, pods, now):
        error = AdminQueryError("secret/neo4j-admin-secret", "undecodable credentials: Incorrect padding")
        factory = FakeClientFactory({p: [A, B, C] for p in (A, B, C)}, credentials_error=error)
        detector = SplitBrainDetector(factory, grace_seconds=GRACE)

        analysis = detector.detect(cluster, pods, 3, MembershipStatus(), now)

        assert analysis.classification == MembershipClassification.CONVERGING
        assert analysis.repair_action == RepairAction.INVESTIGATE
        assert all(not v.responded for v in analysis.views)
        assert factory.queried == []

    def test_healthy_clears_disagreement(self, now):
        detector = SplitBrainDetector(FakeClientFactory({}))
        views = [view(p, [A, B, C], now) for p in (A, B, C)]
        analysis = classify_views(views, 3, 3, None, now, GRACE)

        state = detector.next_membership_state(MembershipStatus(disagreement_since=now), analysis, now)

        assert state.disagreement_since is None
        assert state.classification == MembershipClassification.HEALTHY


class TestRepair:
    """Minority restart with cooldown"""

    @pytest.fixture
    def split(self, now):
        views = [view(A, [A, B], now), view(B, [A, B], now), view(C, [C], now)]
        return classify_views(views, 3, 3, now - timedelta(hours=1), now, GRACE)

    def test_minority_restarted(self, cluster, split, store, recorder, make_pod, metric_sample, now):
        for i in range(3):
            store.add_pod(make_pod(i))
        detector = SplitBrainDetector(FakeClientFactory({}), cooldown_seconds=600)
        before = metric_sample(SPLIT_COUNTER, **CLUSTER_LABELS)

        outcome = detector.repair(cluster, split, store, recorder, None, now)

        assert outcome.attempted and outcome.succeeded
        assert store.deleted_pods == [C]
        assert recorder.reasons() == [events.SPLIT_BRAIN_DETECTED, events.SPLIT_BRAIN_REPAIRED]
        assert metric_sample(SPLIT_COUNTER, **CLUSTER_LABELS) == before + 1

    def test_cooldown_blocks_repeat(self, cluster, split, store, recorder, metric_sample, now):
        detector = SplitBrainDetector(FakeClientFactory({}), cooldown_seconds=600)
        before = metric_sample(SPLIT_COUNTER, **CLUSTER_LABELS)

        outcome = detector.repair(cluster, split, store, recorder, now - timedelta(seconds=100), now)

        assert not outcome.attempted
        assert outcome.skipped_reason == "cooldown"
        assert store.deleted_pods == []
        assert recorder.events == []
        assert metric_sample(SPLIT_COUNTER, **CLUSTER_LABELS) == before

    def test_failed_restart_reported(self, cluster, split, recorder, now):
        store = MagicMock()
        store.delete_pod.side_effect = StoreUnavailableError("HTTP 503")
        detector = SplitBrainDetector(FakeClientFactory({}))

        outcome = detector.repair(cluster, split, store, recorder, None, now)

        assert outcome.attempted and not outcome.succeeded
        assert C in outcome.failed_pods
        assert recorder.reasons()[-1] == events.SPLIT_BRAIN_REPAIR_FAILED

    def test_non_split_is_not_repaired(self, cluster, store, recorder, now):
        views = [view(p, [A, B, C], now) for p in (A, B, C)]
        healthy = classify_views(views, 3, 3, None, now, GRACE)

        outcome = SplitBrainDetector(FakeClientFactory({})).repair(cluster, healthy, store, recorder, None, now)

        assert not outcome.attempted
