#!/usr/bin/env python3
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
CLI tool for operating Neo4j cluster objects

Usage:
    python -m neocluster.cli.cluster_manager --help
    python -m neocluster.cli.cluster_manager reconcile --namespace default --name graph
    python -m neocluster.cli.cluster_manager reconcile --all
    python -m neocluster.cli.cluster_manager status --namespace default --name graph
    python -m neocluster.cli.cluster_manager resume-upgrade --namespace default --name graph
    python -m neocluster.cli.cluster_manager abort-upgrade --namespace default --name graph
    python -m neocluster.cli.cluster_manager watch --inline
"""

import argparse
import json
import logging
import sys
import threading

from neocluster.config import get_settings, setup_logging
from neocluster.db.models import DeploymentKind, ObjectRef
from neocluster.exceptions import NeoClusterError
from neocluster.upgrade.orchestrator import ACTION_ABORT, ACTION_RESUME, UPGRADE_ACTION_ANNOTATION

logger = logging.getLogger(__name__)

KIND_CHOICES = {
    "cluster": DeploymentKind.CLUSTER,
    "standalone": DeploymentKind.STANDALONE,
}


def get_reconciler():
    from neocluster.controller.reconciler import create_cluster_reconciler

    return create_cluster_reconciler()


def object_ref(args) -> ObjectRef:
    if not args.name:
        raise SystemExit("--name is required")
    return ObjectRef(KIND_CHOICES[args.kind], args.namespace, args.name)


def run_reconciliation(args):
    """Run reconcile passes in this process, bypassing the worker queue"""
    reconciler = get_reconciler()
    if args.all:
        refs = []
        for kind in DeploymentKind:
            for raw in reconciler.ops.store.list_clusters(kind, args.namespace if args.namespace_set else None):
                refs.append(ObjectRef(kind, raw["metadata"]["namespace"], raw["metadata"]["name"]))
    else:
        refs = [object_ref(args)]

    results = {}
    for ref in refs:
        logger.info(f"Reconciling {ref.kind.value} {ref}")
        results[f"{ref.kind.value}/{ref}"] = reconciler.reconcile(ref).to_dict()
    print(json.dumps(results, indent=2))
    return results


def show_status(args):
    reconciler = get_reconciler()
    cluster = reconciler.ops.get_cluster(object_ref(args))
    status = cluster.status.to_dict()
    print(json.dumps(status, indent=2, ensure_ascii=False))
    return status


def request_upgrade_action(args, action: str):
    """Stamp the upgrade action annotation; the next pass consumes it"""
    reconciler = get_reconciler()

    def annotate(obj):
        annotations = obj.raw.setdefault("metadata", {}).setdefault("annotations", {})
        if annotations.get(UPGRADE_ACTION_ANNOTATION) == action:
            return False
        annotations[UPGRADE_ACTION_ANNOTATION] = action

    ref = object_ref(args)
    reconciler.ops.mutate_cluster(ref, annotate)
    logger.info(f"Requested upgrade {action} on {ref}")


def run_watch(args):
    from neocluster.controller.watcher import ClusterWatcher
    from neocluster.db.ops import KubernetesObjectStore

    if args.inline:
        from neocluster.metrics import start_metrics_server

        start_metrics_server(get_settings().metrics_port)
        reconciler = get_reconciler()
        lock = threading.Lock()

        def enqueue(ref: ObjectRef):
            with lock:
                result = reconciler.reconcile(ref)
            logger.info(f"Reconciled {ref}: {result.to_dict()}")

        store = reconciler.ops.store
    else:
        from config.celery_tasks import reconcile_cluster_task

        def enqueue(ref: ObjectRef):
            reconcile_cluster_task.delay(ref.kind.value, ref.namespace, ref.name)

        store = KubernetesObjectStore()

    namespace = args.namespace if args.namespace_set else None
    stop = threading.Event()
    threads = []
    for kind in DeploymentKind:
        watcher = ClusterWatcher(store, kind, enqueue, namespace=namespace)
        thread = threading.Thread(target=watcher.run, args=(stop,), name=f"watch-{kind.plural}", daemon=True)
        thread.start()
        threads.append(thread)
    try:
        for thread in threads:
            thread.join()
    except KeyboardInterrupt:
        logger.info("Stopping watchers")
        stop.set()


def main():
    parser = argparse.ArgumentParser(description="Neo4j cluster management CLI")
    parser.add_argument("--log-level", default=None, help="Logging level (default from NEOCLUSTER_LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_object_args(sub, name_required=False):
        sub.add_argument("--kind", choices=sorted(KIND_CHOICES), default="cluster", help="Cluster object kind")
        sub.add_argument("--namespace", default=None, help="Object namespace (default: default)")
        sub.add_argument("--name", required=name_required, help="Object name")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run reconcile passes in this process")
    add_object_args(reconcile_parser)
    reconcile_parser.add_argument("--all", action="store_true", help="Reconcile every cluster object")

    status_parser = subparsers.add_parser("status", help="Show the status of a cluster object")
    add_object_args(status_parser, name_required=True)

    resume_parser = subparsers.add_parser("resume-upgrade", help="Resume a paused upgrade")
    add_object_args(resume_parser, name_required=True)

    abort_parser = subparsers.add_parser("abort-upgrade", help="Abort a paused or running upgrade")
    add_object_args(abort_parser, name_required=True)

    watch_parser = subparsers.add_parser("watch", help="Watch cluster objects and enqueue reconciles")
    watch_parser.add_argument("--namespace", default=None, help="Limit the watch to one namespace")
    watch_parser.add_argument("--inline", action="store_true", help="Reconcile in this process instead of Celery")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    setup_logging(args.log_level)
    args.namespace_set = getattr(args, "namespace", None) is not None
    if getattr(args, "namespace", None) is None:
        args.namespace = "default"

    try:
        if args.command == "reconcile":
            run_reconciliation(args)
        elif args.command == "status":
            show_status(args)
        elif args.command == "resume-upgrade":
            request_upgrade_action(args, ACTION_RESUME)
        elif args.command == "abort-upgrade":
            request_upgrade_action(args, ACTION_ABORT)
        elif args.command == "watch":
            run_watch(args)
    except NeoClusterError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
