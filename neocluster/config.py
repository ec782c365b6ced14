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

from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Operator settings, overridable through NEOCLUSTER_* environment variables"""

    model_config = SettingsConfigDict(env_prefix="NEOCLUSTER_", env_file=".env", extra="ignore")

    # Reconcile cadence
    resync_interval_seconds: float = 30.0
    transient_requeue_seconds: float = 10.0
    upgrade_requeue_seconds: float = 10.0

    # Optimistic concurrency
    conflict_retry_attempts: int = 5
    conflict_retry_min_wait: float = 0.05
    conflict_retry_max_wait: float = 1.0
    kube_request_timeout: float = 10.0

    # Configuration drift
    config_debounce_seconds: float = 120.0

    # Split-brain detection
    split_brain_grace_seconds: float = 300.0
    split_brain_repair_cooldown_seconds: float = 600.0
    membership_query_timeout: float = 10.0
    membership_query_concurrency: int = 8

    # Server addressing
    bolt_port: int = 7687
    http_port: int = 7474
    cluster_domain: str = "cluster.local"

    # Worker pool
    redis_url: str = "redis://localhost:6379"
    lock_expire_seconds: int = 120
    lock_busy_retry_seconds: float = 5.0
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # Watch loop
    watch_timeout_seconds: int = 300

    # Prometheus exporter of the watch process; 0 disables it
    metrics_port: int = 0

    log_level: str = "INFO"


settings = Settings()


def get_settings() -> Settings:
    return settings


def setup_logging(level: str = None):
    """Configure root logging for CLI entry points and Celery workers"""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
