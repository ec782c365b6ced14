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

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from neo4j import Driver, GraphDatabase, Query
from neo4j.exceptions import DriverError, Neo4jError

from neocluster.db.models import ClusterObject
from neocluster.db.ops import ObjectStore
from neocluster.exceptions import AdminQueryError

logger = logging.getLogger(__name__)

SYSTEM_DATABASE = "system"


@dataclass
class ServerInfo:
    """One row of SHOW SERVERS as seen by the queried server"""

    name: str
    address: str
    state: str
    health: str
    hosting: List[str] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.state == "Enabled" and self.health == "Available"


@dataclass
class DatabaseHosting:
    """One row of SHOW DATABASES: a database allocation on one server"""

    name: str
    address: str
    role: str
    current_status: str


class Neo4jAdminClient:
    """
    Short-lived administrative connection to a single server pod.

    Uses the sync driver with small pools and short timeouts; one client is
    opened per pod per detection pass and closed right after.
    """

    def __init__(self, pod_name: str, uri: str, username: str, password: str, timeout: float = 10.0):
        self.pod_name = pod_name
        self.uri = uri
        self.timeout = timeout
        self.driver: Driver = GraphDatabase.driver(
            uri,
            auth=(username, password),
            max_connection_pool_size=5,
            connection_timeout=timeout,
            connection_acquisition_timeout=timeout,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self.driver:
            self.driver.close()
            self.driver = None

    def _run(self, statement: str, database: str = SYSTEM_DATABASE) -> List[Dict[str, Any]]:
        try:
            with self.driver.session(database=database) as session:
                result = session.run(Query(statement, timeout=self.timeout))
                return [record.data() for record in result]
        except (Neo4jError, DriverError, OSError) as e:
            raise AdminQueryError(self.pod_name, f"query failed against {self.uri}: {e}") from e

    def list_servers(self) -> List[ServerInfo]:
        """List cluster members as seen by this server"""
        rows = self._run("SHOW SERVERS YIELD name, address, state, health, hosting")
        return [
            ServerInfo(
                name=row.get("name") or "",
                address=row.get("address") or "",
                state=row.get("state") or "",
                health=row.get("health") or "",
                hosting=list(row.get("hosting") or []),
            )
            for row in rows
        ]

    def list_database_hosting(self) -> List[DatabaseHosting]:
        """List databases and the role each server hosts them in"""
        rows = self._run("SHOW DATABASES YIELD name, address, role, currentStatus")
        return [
            DatabaseHosting(
                name=row.get("name") or "",
                address=row.get("address") or "",
                role=(row.get("role") or "").lower(),
                current_status=row.get("currentStatus") or "",
            )
            for row in rows
        ]


class Neo4jClientFactory:
    """Builds per-pod admin clients from the cluster's admin secret"""

    def __init__(self, store: ObjectStore, bolt_port: int = 7687, cluster_domain: str = "cluster.local", timeout: float = 10.0):
        self.store = store
        self.bolt_port = bolt_port
        self.cluster_domain = cluster_domain
        self.timeout = timeout

    def pod_host(self, cluster: ClusterObject, pod_name: str) -> str:
        return f"{pod_name}.{cluster.name}-headless.{cluster.namespace}.svc.{self.cluster_domain}"

    def pod_uri(self, cluster: ClusterObject, pod_name: str) -> str:
        return f"bolt://{self.pod_host(cluster, pod_name)}:{self.bolt_port}"

    def credentials(self, cluster: ClusterObject) -> Tuple[str, str]:
        secret_name = cluster.spec.auth.admin_secret
        secret = self.store.get_secret(cluster.namespace, secret_name)
        data = secret.get("data") or {}
        try:
            username = base64.b64decode(data.get("username", ""), validate=True).decode("utf-8") or "neo4j"
            password = base64.b64decode(data.get("password", ""), validate=True).decode("utf-8")
        except (TypeError, ValueError) as e:
            # binascii.Error and UnicodeDecodeError are both ValueErrors
            raise AdminQueryError(f"secret/{secret_name}", f"undecodable credentials: {e}") from e
        return username, password

    def for_pod(
        self, cluster: ClusterObject, pod_name: str, credentials: Optional[Tuple[str, str]] = None
    ) -> Neo4jAdminClient:
        username, password = credentials or self.credentials(cluster)
        return Neo4jAdminClient(pod_name, self.pod_uri(cluster, pod_name), username, password, timeout=self.timeout)
