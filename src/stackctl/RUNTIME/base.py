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
The narrow capability set the lifecycle core needs from a container runtime.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..MODELS.service_definition import ServiceState

# Label keys written on every container so state can be rediscovered.
LABEL_STACK = "stackctl.stack"
LABEL_SERVICE = "stackctl.service"
LABEL_CONFIG_HASH = "stackctl.config-hash"

MUTATING_OPERATIONS = frozenset({
    "create", "start", "stop", "remove", "create_network", "remove_network", "build_image",
})


@dataclass(frozen=True)
class ContainerSpec:
    """
    Everything the runtime needs to create one service container.
    """
    name: str
    image: str
    network: str
    environment: Dict[str, str] = field(default_factory=dict)
    ports: Dict[int, Optional[int]] = field(default_factory=dict)
    command: tuple = ()
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def config_hash(self) -> Optional[str]:
        return self.labels.get(LABEL_CONFIG_HASH)


@dataclass(frozen=True)
class ContainerStatus:
    """
    Result of inspecting one named service.
    """
    state: ServiceState
    config_hash: Optional[str] = None


class RuntimeBackend(ABC):
    """
    Container runtime collaborator.

    Implementations raise :class:`~stackctl.errors.RuntimeUnavailableError`
    when the runtime cannot be reached at all and
    :class:`~stackctl.errors.RuntimeOperationError` when a single call fails.
    """

    @abstractmethod
    def ping(self) -> None:
        """Raise RuntimeUnavailableError unless the runtime answers."""

    @abstractmethod
    def create(self, spec: ContainerSpec) -> None:
        """Create and start a container from ``spec``."""

    @abstractmethod
    def start(self, name: str) -> None:
        ...

    @abstractmethod
    def stop(self, name: str) -> None:
        ...

    @abstractmethod
    def remove(self, name: str) -> None:
        ...

    @abstractmethod
    def inspect(self, name: str) -> ContainerStatus:
        ...

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def create_network(self, name: str) -> None:
        ...

    @abstractmethod
    def remove_network(self, name: str) -> None:
        ...

    @abstractmethod
    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None) -> None:
        """Build ``tag`` from a build context directory."""
