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
Reconciliation and consistency engine for Neo4j clusters on Kubernetes.

Key components:
- ClusterStoreOps: optimistic-concurrency access to cluster objects and children
- TopologyScheduler: validates role hints and renders the membership configuration
- DriftManager: debounces configuration changes to avoid restart storms
- SplitBrainDetector: cross-checks every server's membership view and repairs partitions
- RollingUpgradeOrchestrator: migrates server versions one server at a time
- ClusterReconciler: the control loop composing all of the above
"""
