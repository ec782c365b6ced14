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
from typing import Dict, List, Mapping, Optional

from neocluster.db.models import ConfigurationStatus
from neocluster.topology.scheduler import normalize_conf

logger = logging.getLogger(__name__)


class DriftAction(str, Enum):
    INITIAL = "INITIAL"
    NOOP = "NOOP"
    DEBOUNCE_STARTED = "DEBOUNCE_STARTED"
    DEBOUNCE_RESET = "DEBOUNCE_RESET"
    WAITING = "WAITING"
    DEFERRED = "DEFERRED"
    REVERTED = "REVERTED"
    APPLY = "APPLY"


@dataclass
class DriftDecision:
    action: DriftAction
    state: ConfigurationStatus
    requeue_after: Optional[float] = None

    @property
    def should_apply(self) -> bool:
        return self.action in (DriftAction.INITIAL, DriftAction.APPLY)

    @property
    def restart_required(self) -> bool:
        # The first rollout has nothing running to restart
        return self.action == DriftAction.APPLY


class DriftManager:
    """
    Debounces configuration changes so that bursts of edits cause one rolling restart.

    The state lives in status.configuration: the hash last applied, plus the
    pending hash and when it was first seen. Every decision is a pure function
    of (state, desired hash, now).
    """

    def __init__(self, window_seconds: float = 120.0):
        self.window_seconds = window_seconds

    def evaluate(
        self, state: ConfigurationStatus, desired_hash: str, now: datetime, defer: bool = False
    ) -> DriftDecision:
        """
        Decide what to do with a freshly derived configuration hash.

        Args:
            state: Persisted drift state
            desired_hash: Hash of the configuration derived in this pass
            now: Current time
            defer: Hold a due change back (e.g. while an upgrade owns the pods)
        """
        state = state.model_copy(deep=True)

        if state.applied_hash is None:
            state.applied_hash = desired_hash
            state.applied_at = now
            state.pending_hash = None
            state.pending_since = None
            return DriftDecision(DriftAction.INITIAL, state)

        if desired_hash == state.applied_hash:
            if state.pending_hash is not None:
                logger.info(f"Pending configuration {state.pending_hash} reverted to applied {desired_hash}")
                state.pending_hash = None
                state.pending_since = None
                return DriftDecision(DriftAction.REVERTED, state)
            return DriftDecision(DriftAction.NOOP, state)

        if state.pending_hash is None or state.pending_since is None:
            state.pending_hash = desired_hash
            state.pending_since = now
            return DriftDecision(DriftAction.DEBOUNCE_STARTED, state, requeue_after=self.window_seconds)

        if state.pending_hash != desired_hash:
            logger.debug(f"Configuration changed again ({state.pending_hash} -> {desired_hash}); restarting window")
            state.pending_hash = desired_hash
            state.pending_since = now
            return DriftDecision(DriftAction.DEBOUNCE_RESET, state, requeue_after=self.window_seconds)

        elapsed = (now - state.pending_since).total_seconds()
        if elapsed < self.window_seconds:
            return DriftDecision(DriftAction.WAITING, state, requeue_after=self.window_seconds - elapsed)

        if defer:
            return DriftDecision(DriftAction.DEFERRED, state)

        state.applied_hash = desired_hash
        state.applied_at = now
        state.pending_hash = None
        state.pending_since = None
        return DriftDecision(DriftAction.APPLY, state)


def _parse_properties(text: str) -> Dict[str, str]:
    properties = {}
    for line in normalize_conf(text).splitlines():
        key, _, value = line.partition("=")
        properties[key.strip()] = value.strip()
    return properties


def describe_changes(old_files: Mapping[str, str], new_files: Mapping[str, str]) -> List[str]:
    """List added, removed and changed settings between two rendered payloads"""
    changes = []
    for name in sorted(set(old_files) | set(new_files)):
        old = _parse_properties(old_files.get(name, ""))
        new = _parse_properties(new_files.get(name, ""))
        for key in sorted(set(old) | set(new)):
            if key not in old:
                changes.append(f"{name}: added {key}={new[key]}")
            elif key not in new:
                changes.append(f"{name}: removed {key}")
            elif old[key] != new[key]:
                changes.append(f"{name}: changed {key} {old[key]} -> {new[key]}")
    return changes
