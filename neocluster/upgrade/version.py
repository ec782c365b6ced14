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
Neo4j version parsing and upgrade-path rules.

Two numbering schemes are in use: SemVer (4.x, 5.x) and calendar versions
(2025.x and later). Only 5.26+ SemVer releases and any CalVer release are
supported; moving from CalVer back to SemVer is always a downgrade.
"""

from dataclasses import dataclass
from typing import Optional

from neocluster.exceptions import VersionCompatibilityError

CALVER_MIN_MAJOR = 2025
MIN_SUPPORTED_SEMVER_MINOR = 26


@dataclass(frozen=True, order=True)
class Version:
    major: int
    minor: int
    patch: int = 0

    @property
    def is_calver(self) -> bool:
        return self.major >= CALVER_MIN_MAJOR

    @property
    def is_semver(self) -> bool:
        return 4 <= self.major <= 10

    @property
    def is_supported(self) -> bool:
        if self.is_calver:
            return True
        return self.major == 5 and self.minor >= MIN_SUPPORTED_SEMVER_MINOR

    def __str__(self):
        if self.patch:
            return f"{self.major}.{self.minor}.{self.patch}"
        return f"{self.major}.{self.minor}"


def parse_version(value: str) -> Optional[Version]:
    """Parse tags such as "5.26.0", "v5.26.1-enterprise" or "2025.01.0"; None when unparsable"""
    if not value:
        return None
    cleaned = value.strip()
    for prefix in ("v", "neo4j-", "neo4j:"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    cleaned = cleaned.split("-", 1)[0]
    parts = cleaned.split(".")
    if len(parts) < 2:
        return None
    try:
        major = int(parts[0])
        minor = int(parts[1])
    except ValueError:
        return None
    patch = 0
    if len(parts) > 2 and parts[2].isdigit():
        patch = int(parts[2])
    return Version(major, minor, patch)


def version_from_image(image: str) -> Optional[Version]:
    if not image or ":" not in image:
        return None
    return parse_version(image.rsplit(":", 1)[-1])


def validate_upgrade_path(current: str, target: str):
    """
    Check that moving from current to target is a supported upgrade.

    Raises:
        VersionCompatibilityError: describing why the path is rejected
    """
    current_version = parse_version(current)
    target_version = parse_version(target)
    if current_version is None or target_version is None:
        raise VersionCompatibilityError(f"invalid version format (current: {current}, target: {target})")

    if current_version.is_calver and target_version.is_semver:
        raise VersionCompatibilityError("downgrade from CalVer to SemVer is not supported")

    if target_version < current_version:
        raise VersionCompatibilityError(f"downgrades are not supported (current: {current}, target: {target})")

    if current_version.is_calver and target_version.is_calver:
        return

    if current_version.is_semver and target_version.is_calver:
        if current_version.major == 5 and current_version.minor >= MIN_SUPPORTED_SEMVER_MINOR:
            return
        raise VersionCompatibilityError(
            f"upgrade from {current} to CalVer {target} requires Neo4j 5.26 or higher"
        )

    if current_version.is_semver and target_version.is_semver:
        if current_version.major == 4 or target_version.major == 4:
            raise VersionCompatibilityError(
                "Neo4j 4.x versions are not supported - only 5.26+ versions are supported"
            )
        if target_version.major != current_version.major:
            raise VersionCompatibilityError("major version upgrades are not supported")
        if current_version.major == 5:
            if min(current_version.minor, target_version.minor) >= MIN_SUPPORTED_SEMVER_MINOR:
                return
            raise VersionCompatibilityError("only Neo4j 5.26+ versions are supported")

    raise VersionCompatibilityError(f"unsupported upgrade path from {current} to {target}")
