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
Topology scheduling for clustered deployments.

Pure functions only: role-hint validation, effective per-server constraints,
the formation quorum and the rendered membership configuration. Rendering is
deterministic (every map-derived key is sorted) because its hash decides
whether pods get restarted.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from neocluster.db.models import ModeConstraint, ServerRoleHint, TopologySpec
from neocluster.exceptions import TopologyValidationError

logger = logging.getLogger(__name__)

VALID_MODES = tuple(mode.value for mode in ModeConstraint)
MODE_CONSTRAINT_KEY = "initial.server.mode_constraint"
QUORUM_KEY = "dbms.cluster.minimum_initial_system_primaries_count"
SHARED_CONFIG_FILE = "neo4j.conf"
HASH_LENGTH = 16

# Lines evaluated at container start; they differ per pod and per boot
RUNTIME_MARKERS = ("$(", "${HOSTNAME", "POD_ORDINAL")


def server_config_file(index: int) -> str:
    return f"server-{index}.conf"


@dataclass(frozen=True)
class ServerDirective:
    index: int
    mode_constraint: ModeConstraint

    @property
    def primary_eligible(self) -> bool:
        return self.mode_constraint != ModeConstraint.SECONDARY


@dataclass(frozen=True)
class ValidatedTopology:
    servers: int
    directives: Tuple[ServerDirective, ...]
    quorum: int
    clustered: bool = True
    warnings: Tuple[str, ...] = ()

    def constraint_for(self, index: int) -> ModeConstraint:
        if 0 <= index < len(self.directives):
            return self.directives[index].mode_constraint
        return ModeConstraint.NONE

    @property
    def primary_eligible(self) -> int:
        return sum(1 for d in self.directives if d.primary_eligible)

    def is_secondary(self, index: int) -> bool:
        return self.constraint_for(index) == ModeConstraint.SECONDARY


@dataclass(frozen=True)
class ConfigPayload:
    """Rendered configuration files (file name -> text) and their stable hash"""

    files: Mapping[str, str]
    hash: str


def normalize_conf(text: str) -> str:
    """Trim lines, drop blanks, comments and runtime-evaluated lines, keep the first value per key"""
    seen = set()
    lines = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if any(marker in line for marker in RUNTIME_MARKERS):
            continue
        key = line.split("=", 1)[0].strip()
        if key in seen:
            continue
        seen.add(key)
        lines.append(line)
    return "\n".join(lines) + "\n" if lines else ""


def config_hash(files: Mapping[str, str]) -> str:
    digest = hashlib.sha256()
    for name in sorted(files):
        digest.update(name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(normalize_conf(files[name]).encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:HASH_LENGTH]


class TopologyScheduler:
    """Validates declared topologies and derives per-server configuration directives"""

    def __init__(self, min_cluster_servers: int = 2):
        self.min_cluster_servers = min_cluster_servers

    def validate_role_hints(
        self, servers: int, global_constraint: Optional[str], hints: Iterable[ServerRoleHint]
    ) -> List[str]:
        """
        Check role hints against the server count.

        Every violation is collected; the caller gets the complete list in one call.

        Args:
            servers: Declared server count
            global_constraint: Constraint inherited by servers without a hint (None means NONE)
            hints: Per-server role hints

        Returns:
            Human-readable violations, empty when the topology is valid
        """
        violations = []
        if servers < self.min_cluster_servers:
            violations.append(f"cluster requires at least {self.min_cluster_servers} servers (got {servers})")

        inherited = global_constraint or ModeConstraint.NONE.value
        if inherited not in VALID_MODES:
            violations.append(
                f"invalid global mode constraint '{inherited}' (valid values: {', '.join(VALID_MODES)})"
            )
            inherited = ModeConstraint.NONE.value

        effective = {index: inherited for index in range(max(servers, 0))}
        seen = set()
        for hint in hints:
            index = hint.server_index
            usable = True
            if index < 0 or index >= servers:
                violations.append(f"server role hint index {index} is out of range (0-{servers - 1})")
                usable = False
            elif index in seen:
                violations.append(f"duplicate server role hint for server index {index}")
                usable = False
            else:
                seen.add(index)

            if hint.mode_constraint not in VALID_MODES:
                violations.append(
                    f"invalid mode constraint '{hint.mode_constraint}' for server {index} "
                    f"(valid values: {', '.join(VALID_MODES)})"
                )
            elif usable:
                effective[index] = hint.mode_constraint

        if effective and all(mode == ModeConstraint.SECONDARY.value for mode in effective.values()):
            violations.append(
                "all servers are constrained to SECONDARY mode - cluster would have no primary servers available"
            )
        return violations

    def derive(self, spec: TopologySpec) -> ValidatedTopology:
        """
        Validate the topology and derive effective per-server constraints.

        Raises:
            TopologyValidationError: carrying every violated rule
        """
        violations = self.validate_role_hints(spec.servers, spec.server_mode_constraint, spec.server_roles)
        if violations:
            raise TopologyValidationError(violations)

        inherited = ModeConstraint(spec.server_mode_constraint or ModeConstraint.NONE.value)
        hinted = {hint.server_index: ModeConstraint(hint.mode_constraint) for hint in spec.server_roles}
        directives = tuple(
            ServerDirective(index=index, mode_constraint=hinted.get(index, inherited)) for index in range(spec.servers)
        )
        eligible = sum(1 for d in directives if d.primary_eligible)
        quorum = max(1, min(spec.servers // 2 + 1, eligible))
        return ValidatedTopology(
            servers=spec.servers,
            directives=directives,
            quorum=quorum,
            clustered=True,
            warnings=tuple(self._topology_warnings(directives)),
        )

    def derive_standalone(self) -> ValidatedTopology:
        return ValidatedTopology(
            servers=1,
            directives=(ServerDirective(index=0, mode_constraint=ModeConstraint.NONE),),
            quorum=1,
            clustered=False,
        )

    def _topology_warnings(self, directives: Tuple[ServerDirective, ...]) -> List[str]:
        eligible = [d.index for d in directives if d.primary_eligible]
        warnings = []
        if len(eligible) == 1:
            warnings.append(f"only server {eligible[0]} can host primaries; losing it stops all writes")
        elif len(eligible) % 2 == 0:
            warnings.append(
                f"{len(eligible)} primary-eligible servers is an even count; "
                f"it tolerates as many failures as {len(eligible) - 1}"
            )
        return warnings

    def render(self, topology: ValidatedTopology, user_config: Optional[Mapping[str, str]] = None) -> ConfigPayload:
        """Render the configuration files for a validated topology"""
        shared: Dict[str, str] = dict(user_config or {})
        if topology.clustered:
            shared[QUORUM_KEY] = str(topology.quorum)
        files = {SHARED_CONFIG_FILE: "".join(f"{key}={shared[key]}\n" for key in sorted(shared))}
        if topology.clustered:
            for directive in topology.directives:
                files[server_config_file(directive.index)] = (
                    f"{MODE_CONSTRAINT_KEY}={directive.mode_constraint.value}\n"
                )
        ordered = {name: files[name] for name in sorted(files)}
        return ConfigPayload(files=ordered, hash=config_hash(ordered))

    def check_live_roles(
        self, topology: ValidatedTopology, hosting, index_for_address: Callable[[str], Optional[int]]
    ) -> List[str]:
        """
        Compare live database allocations with the declared constraints.

        Args:
            topology: Validated topology
            hosting: DatabaseHosting rows reported by a server
            index_for_address: Maps a server address to its server index, None when unknown

        Returns:
            Sorted mismatch descriptions
        """
        mismatches = set()
        for row in hosting:
            index = index_for_address(row.address)
            if index is None:
                continue
            constraint = topology.constraint_for(index)
            if constraint == ModeConstraint.SECONDARY and row.role == "primary":
                mismatches.add(f"server {index} is constrained to SECONDARY but hosts '{row.name}' as primary")
            elif constraint == ModeConstraint.PRIMARY and row.role == "secondary":
                mismatches.add(f"server {index} is constrained to PRIMARY but hosts '{row.name}' as secondary")
        return sorted(mismatches)
