# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
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
Models for defining services, their health checks and lifecycle states.
"""
import hashlib
import json
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class ServiceState(str, Enum):
    """
    Observed state of a service in the runtime.
    """
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"

    @classmethod
    def can_transition(cls, src: "ServiceState", dst: "ServiceState") -> bool:
        """
        Whether the lifecycle permits moving directly from ``src`` to ``dst``.
        Staying in the same state is always allowed.
        """
        return src == dst or (src, dst) in _TRANSITIONS


_TRANSITIONS: FrozenSet[Tuple[ServiceState, ServiceState]] = frozenset({
    (ServiceState.ABSENT, ServiceState.RUNNING),
    (ServiceState.RUNNING, ServiceState.STOPPED),
    (ServiceState.STOPPED, ServiceState.RUNNING),
    (ServiceState.STOPPED, ServiceState.ABSENT),
    (ServiceState.RUNNING, ServiceState.UNHEALTHY),
    (ServiceState.UNHEALTHY, ServiceState.STOPPED),
    (ServiceState.UNHEALTHY, ServiceState.RUNNING),
})


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0

    def readiness_budget(self) -> float:
        """Seconds to wait for the service to report running."""
        return self.start_period + self.interval * self.retries


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service in a stack.
    """
    name: str
    image_name: str
    build_context: Optional[str] = None
    dockerfile_path: Optional[str] = None

    # Execution
    command: List[str] = []

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    internal_port: Optional[int] = None
    networks: List[str] = []

    # Lifecycle
    health_check: Optional[HealthCheck] = None
    depends_on: List[str] = []

    # Metadata
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or any(ch.isspace() for ch in value) or "/" in value:
            raise ValueError(f"invalid service name {value!r}")
        return value

    @property
    def peer_port(self) -> Optional[int]:
        """Port other services use to reach this one on the shared network."""
        if self.internal_port is not None:
            return self.internal_port
        if self.ports:
            return next(iter(self.ports))
        return None

    def published_ports(self) -> Dict[int, int]:
        """Container ports that are reachable from the host."""
        return {c: h for c, h in self.ports.items() if h is not None}

    def config_hash(self, environment: Optional[Dict[str, str]] = None) -> str:
        """
        Stable digest of everything that shapes the created container.

        :param environment: The effective environment, if it differs from
            the declared one (e.g. after discovery bindings are merged in).
        """
        payload = {
            "image": self.image_name,
            "command": self.command,
            "environment": dict(sorted((environment if environment is not None else self.environment).items())),
            "ports": {str(c): h for c, h in sorted(self.ports.items())},
            "networks": sorted(self.networks),
            "labels": dict(sorted(self.labels.items())),
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]
