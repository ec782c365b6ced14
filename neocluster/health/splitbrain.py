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
Split-brain detection and repair.

Each ready server pod is asked, independently, which cluster members it can
see. Pods are grouped by mutual agreement (A and B belong together when each
reports the other), and the grouping is classified:

- Unformed: fewer ready pods than declared servers; normal during startup
- Converging: views disagree but the grace period has not elapsed yet
- Split: views still disagree after the grace period
- Healthy: one group covering all ready pods, of the declared size

A pod that cannot be queried is unknown, not evidence of a partition.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from neo4j.exceptions import DriverError

from neocluster import metrics
from neocluster.controller import events
from neocluster.controller.events import EventRecorder
from neocluster.db.models import ClusterObject, MembershipClassification, MembershipStatus
from neocluster.db.neo4j_sync_manager import Neo4jClientFactory
from neocluster.db.ops import ObjectStore
from neocluster.exceptions import AdminQueryError, NotFoundError, TransientError
from neocluster.utils.pods import is_pod_ready, latest_ready_transition, pod_name, pod_ordinal, sort_by_ordinal
from neocluster.utils.timeutils import seconds_since

logger = logging.getLogger(__name__)


class RepairAction(str, Enum):
    NONE = "NONE"
    WAIT_FORMING = "WAIT_FORMING"
    RESTART_PODS = "RESTART_PODS"
    INVESTIGATE = "INVESTIGATE"


@dataclass
class ServerMembershipView:
    """One pod's own view of cluster membership, valid for a single detection pass"""

    pod_name: str
    ordinal: int
    reported_peers: FrozenSet[str]
    timestamp: datetime
    query_error: Optional[str] = None

    @property
    def responded(self) -> bool:
        return self.query_error is None


@dataclass
class SplitBrainAnalysis:
    classification: MembershipClassification
    expected_servers: int
    ready_pods: int
    repair_action: RepairAction
    message: str
    views: List[ServerMembershipView] = field(default_factory=list)
    groups: List[List[str]] = field(default_factory=list)
    majority: List[str] = field(default_factory=list)
    minority_pods: List[str] = field(default_factory=list)

    @property
    def disagreement(self) -> bool:
        return len(self.groups) > 1

    def snapshot(self) -> str:
        """Compact rendering of the membership views used for the decision"""
        parts = []
        for view in sorted(self.views, key=lambda v: v.ordinal):
            if view.responded:
                parts.append(f"{view.pod_name} sees [{', '.join(sorted(view.reported_peers))}]")
            else:
                parts.append(f"{view.pod_name} unknown ({view.query_error})")
        return "; ".join(parts)


@dataclass
class RepairOutcome:
    attempted: bool
    repaired_pods: List[str] = field(default_factory=list)
    failed_pods: Dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.attempted and not self.failed_pods


def pod_for_address(address: str) -> Optional[str]:
    """Map a server address (host:port) to the pod name it belongs to"""
    if not address:
        return None
    host = address.rsplit(":", 1)[0] if ":" in address else address
    label = host.split(".", 1)[0]
    if not label or label.isdigit():
        return None
    return label


def _mutual_groups(responding: Sequence[ServerMembershipView]) -> List[List[ServerMembershipView]]:
    by_name = {view.pod_name: view for view in responding}
    parent = {name: name for name in by_name}

    def find(name):
        while parent[name] != name:
            parent[name] = parent[parent[name]]
            name = parent[name]
        return name

    for view in responding:
        for peer in view.reported_peers:
            other = by_name.get(peer)
            if other is None or other is view:
                continue
            if view.pod_name in other.reported_peers:
                parent[find(view.pod_name)] = find(other.pod_name)

    grouped: Dict[str, List[ServerMembershipView]] = {}
    for view in responding:
        grouped.setdefault(find(view.pod_name), []).append(view)
    groups = [sorted(members, key=lambda v: v.ordinal) for members in grouped.values()]
    # Largest first; ties go to the group holding the lowest ordinal
    groups.sort(key=lambda members: (-len(members), members[0].ordinal))
    return groups


def classify_views(
    views: Sequence[ServerMembershipView],
    expected_servers: int,
    ready_pods: int,
    last_change: Optional[datetime],
    now: datetime,
    grace_seconds: float,
) -> SplitBrainAnalysis:
    """
    Classify one detection pass. Pure function of its inputs.

    Args:
        views: Views of the ready pods, including failed queries
        expected_servers: Declared server count
        ready_pods: Number of ready server pods
        last_change: Reference time of the last membership-relevant change
        now: Current time
        grace_seconds: How long disagreement is tolerated before it counts as split
    """
    views = list(views)
    if ready_pods < expected_servers:
        return SplitBrainAnalysis(
            classification=MembershipClassification.UNFORMED,
            expected_servers=expected_servers,
            ready_pods=ready_pods,
            repair_action=RepairAction.WAIT_FORMING,
            message=f"{ready_pods}/{expected_servers} server pods ready",
            views=views,
        )

    responding = [view for view in views if view.responded]
    failed = [view for view in views if not view.responded]
    for view in failed:
        logger.debug(f"Excluding {view.pod_name} from classification: {view.query_error}")

    if not responding:
        return SplitBrainAnalysis(
            classification=MembershipClassification.CONVERGING,
            expected_servers=expected_servers,
            ready_pods=ready_pods,
            repair_action=RepairAction.INVESTIGATE,
            message="no server pod answered the membership query",
            views=views,
        )

    groups = _mutual_groups(responding)
    names = [[view.pod_name for view in group] for group in groups]
    base = dict(expected_servers=expected_servers, ready_pods=ready_pods, views=views, groups=names, majority=names[0])

    if len(groups) == 1:
        if len(groups[0]) == expected_servers:
            return SplitBrainAnalysis(
                classification=MembershipClassification.HEALTHY,
                repair_action=RepairAction.NONE,
                message=f"all {expected_servers} servers agree on membership",
                **base,
            )
        action = RepairAction.INVESTIGATE if len(failed) > expected_servers / 2 else RepairAction.WAIT_FORMING
        return SplitBrainAnalysis(
            classification=MembershipClassification.CONVERGING,
            repair_action=action,
            message=(
                f"{len(groups[0])}/{expected_servers} servers agree on membership"
                f" ({len(failed)} did not answer)"
            ),
            **base,
        )

    if len(failed) > expected_servers / 2:
        return SplitBrainAnalysis(
            classification=MembershipClassification.CONVERGING,
            repair_action=RepairAction.INVESTIGATE,
            message=f"membership views disagree but {len(failed)}/{expected_servers} servers did not answer",
            **base,
        )

    elapsed = seconds_since(last_change, now)
    if elapsed is None or elapsed < grace_seconds:
        waited = 0 if elapsed is None else int(elapsed)
        return SplitBrainAnalysis(
            classification=MembershipClassification.CONVERGING,
            repair_action=RepairAction.WAIT_FORMING,
            message=f"{len(groups)} membership groups for {waited}s (grace {int(grace_seconds)}s)",
            **base,
        )

    minority = [pod for group in names[1:] for pod in group]
    return SplitBrainAnalysis(
        classification=MembershipClassification.SPLIT,
        repair_action=RepairAction.RESTART_PODS,
        message=f"cluster split into {len(groups)} groups; majority {names[0]}, minority {minority}",
        minority_pods=minority,
        **base,
    )


class SplitBrainDetector:
    """Collects per-pod membership views, classifies them and repairs confirmed partitions"""

    def __init__(
        self,
        client_factory: Neo4jClientFactory,
        grace_seconds: float = 300.0,
        cooldown_seconds: float = 600.0,
        query_timeout: float = 10.0,
        max_concurrency: int = 8,
    ):
        self.client_factory = client_factory
        self.grace_seconds = grace_seconds
        self.cooldown_seconds = cooldown_seconds
        self.query_timeout = query_timeout
        self.max_concurrency = max(1, max_concurrency)

    def collect_views(
        self, cluster: ClusterObject, ready_pods: Sequence[Dict[str, Any]], now: datetime
    ) -> List[ServerMembershipView]:
        """
        Query every ready pod concurrently with bounded fan-out.

        Returns only after every query finished or hit the pass deadline; there
        is no partial decision.
        """
        if not ready_pods:
            return []
        try:
            credentials = self.client_factory.credentials(cluster)
        except (AdminQueryError, NotFoundError, TransientError) as e:
            logger.warning(f"Cannot read admin credentials for {cluster.namespace}/{cluster.name}: {e}")
            return [self._unknown_view(pod, now, f"credentials unavailable: {e}") for pod in ready_pods]

        workers = min(self.max_concurrency, len(ready_pods))
        rounds = -(-len(ready_pods) // workers)
        deadline = self.query_timeout * rounds + 1.0
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="membership")
        try:
            futures = {executor.submit(self._query_view, cluster, pod, credentials, now): pod for pod in ready_pods}
            done, not_done = wait(futures, timeout=deadline)
            views = [future.result() for future in done]
            for future in not_done:
                pod = futures[future]
                logger.warning(f"Membership query for {pod_name(pod)} timed out after {deadline:.0f}s")
                views.append(self._unknown_view(pod, now, "query timed out"))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return sorted(views, key=lambda view: view.ordinal)

    def _unknown_view(self, pod: Dict[str, Any], now: datetime, error: str) -> ServerMembershipView:
        return ServerMembershipView(
            pod_name=pod_name(pod), ordinal=pod_ordinal(pod), reported_peers=frozenset(), timestamp=now, query_error=error
        )

    def _query_view(self, cluster: ClusterObject, pod: Dict[str, Any], credentials, now: datetime) -> ServerMembershipView:
        name = pod_name(pod)
        try:
            with self.client_factory.for_pod(cluster, name, credentials) as admin:
                servers = admin.list_servers()
        except (AdminQueryError, DriverError) as e:
            logger.warning(f"Membership query for {name} failed, treating as unknown: {e}")
            return self._unknown_view(pod, now, str(e))

        peers = frozenset(
            peer for peer in (pod_for_address(server.address) for server in servers if server.is_available) if peer
        )
        return ServerMembershipView(pod_name=name, ordinal=pod_ordinal(pod), reported_peers=peers, timestamp=now)

    def reference_time(
        self, membership: MembershipStatus, pods: Sequence[Dict[str, Any]], now: datetime
    ) -> datetime:
        """Latest of the last pod readiness transition and the first observed disagreement"""
        candidates = [t for t in (latest_ready_transition(pods), membership.disagreement_since) if t is not None]
        if membership.disagreement_since is None:
            # Disagreement seen in this pass starts the grace period now
            candidates.append(now)
        return max(candidates)

    def detect(
        self,
        cluster: ClusterObject,
        pods: Sequence[Dict[str, Any]],
        expected_servers: int,
        membership: MembershipStatus,
        now: datetime,
    ) -> SplitBrainAnalysis:
        ready = sort_by_ordinal(pod for pod in pods if is_pod_ready(pod))
        views = self.collect_views(cluster, ready, now) if len(ready) >= expected_servers else []
        analysis = classify_views(
            views,
            expected_servers=expected_servers,
            ready_pods=len(ready),
            last_change=self.reference_time(membership, pods, now),
            now=now,
            grace_seconds=self.grace_seconds,
        )
        logger.info(
            f"Membership of {cluster.namespace}/{cluster.name}: {analysis.classification.value} - {analysis.message}"
        )
        return analysis

    def next_membership_state(
        self, membership: MembershipStatus, analysis: SplitBrainAnalysis, now: datetime
    ) -> MembershipStatus:
        state = membership.model_copy(deep=True)
        state.classification = analysis.classification
        if analysis.disagreement:
            state.disagreement_since = state.disagreement_since or now
        elif analysis.classification in (MembershipClassification.HEALTHY, MembershipClassification.UNFORMED):
            state.disagreement_since = None
        return state

    def repair(
        self,
        cluster: ClusterObject,
        analysis: SplitBrainAnalysis,
        store: ObjectStore,
        recorder: EventRecorder,
        last_repair_time: Optional[datetime],
        now: datetime,
    ) -> RepairOutcome:
        """
        Restart the minority pods of a confirmed split so they rejoin through discovery.

        Args:
            cluster: Cluster being repaired
            analysis: Result of this pass; only Split results are acted on
            store: Object store used to delete pods
            recorder: Event sink
            last_repair_time: When the previous repair ran, successful or not
            now: Current time
        """
        if analysis.classification != MembershipClassification.SPLIT or not analysis.minority_pods:
            return RepairOutcome(attempted=False, skipped_reason="no confirmed split")

        since_last = seconds_since(last_repair_time, now)
        if since_last is not None and since_last < self.cooldown_seconds:
            logger.info(
                f"Skipping split-brain repair of {cluster.namespace}/{cluster.name}: "
                f"last repair {int(since_last)}s ago (cooldown {int(self.cooldown_seconds)}s)"
            )
            return RepairOutcome(attempted=False, skipped_reason="cooldown")

        recorder.warning(cluster, events.SPLIT_BRAIN_DETECTED, f"{analysis.message}. Views: {analysis.snapshot()}")
        metrics.record_split_brain(cluster.name, cluster.namespace)

        outcome = RepairOutcome(attempted=True)
        for name in analysis.minority_pods:
            try:
                store.delete_pod(cluster.namespace, name)
                outcome.repaired_pods.append(name)
            except NotFoundError:
                outcome.repaired_pods.append(name)
            except TransientError as e:
                logger.error(f"Failed to restart {name} during split-brain repair: {e}")
                outcome.failed_pods[name] = str(e)

        if outcome.failed_pods:
            recorder.warning(
                cluster,
                events.SPLIT_BRAIN_REPAIR_FAILED,
                f"could not restart {sorted(outcome.failed_pods)}; will retry after cooldown",
            )
        else:
            recorder.normal(
                cluster,
                events.SPLIT_BRAIN_REPAIRED,
                f"restarted pods {outcome.repaired_pods} to repair partition; majority {analysis.majority}",
            )
        return outcome
