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
Error taxonomy for the reconciliation engine.

- TransientError: infrastructure hiccups (version conflicts, timeouts, 5xx).
  Always retried with bounded backoff and never surfaced as terminal.
- ValidationError: the declared spec is invalid. Never retried; reported via
  status conditions until the cluster spec is corrected.

Split-brain is not an error at all; it is a detected state.
"""

from typing import List


class NeoClusterError(Exception):
    """Base class for all engine errors"""


class TransientError(NeoClusterError):
    """Retryable infrastructure error"""


class ConflictError(TransientError):
    """Write rejected because the object version was stale"""


class RetriesExhaustedError(TransientError):
    """Conflict retry budget was used up"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class StoreTimeoutError(TransientError):
    """A platform call exceeded its deadline"""


class StoreUnavailableError(TransientError):
    """The platform API answered with a server-side or throttling error"""


class ReconcileInProgressError(TransientError):
    """Another worker holds the reconcile lock of this object"""


class NotFoundError(NeoClusterError):
    """The requested object does not exist"""


class ValidationError(NeoClusterError):
    """The declared spec violates one or more rules"""

    def __init__(self, violations: List[str], reason: str = "ValidationFailed"):
        self.violations = list(violations)
        self.reason = reason
        super().__init__("; ".join(self.violations))


class TopologyValidationError(ValidationError):
    def __init__(self, violations: List[str]):
        super().__init__(violations, reason="ServerRoleValidationFailed")


class VersionCompatibilityError(ValidationError):
    def __init__(self, message: str):
        super().__init__([message], reason="UnsupportedUpgradePath")


class AdminQueryError(NeoClusterError):
    """The administrative query against one server pod failed"""

    def __init__(self, pod_name: str, message: str):
        super().__init__(f"{pod_name}: {message}")
        self.pod_name = pod_name
