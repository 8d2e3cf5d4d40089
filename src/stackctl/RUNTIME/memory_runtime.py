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
Deterministic in-process runtime backend.

Keeps containers and networks in dictionaries and records every call, which
makes it the substitute for Docker in tests and offline planning.
"""
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from ..errors import RuntimeOperationError, RuntimeUnavailableError
from ..MODELS.service_definition import ServiceState
from .base import ContainerSpec, ContainerStatus, MUTATING_OPERATIONS, RuntimeBackend


@dataclass
class _Container:
    spec: ContainerSpec
    state: ServiceState


class InMemoryRuntime(RuntimeBackend):
    """
    A fake runtime with failure injection.

    :param available: When False every call raises RuntimeUnavailableError.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.containers: Dict[str, _Container] = {}
        self.networks: Set[str] = set()
        self.images: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        # (operation, name) pairs that raise RuntimeOperationError
        self.failures: Set[Tuple[str, str]] = set()
        # services whose process exits right after being started
        self.crash_on_start: Set[str] = set()
        self._lock = threading.Lock()

    # -- test helpers --------------------------------------------------

    def mutating_calls(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in MUTATING_OPERATIONS]

    def fail(self, operation: str, name: str) -> None:
        self.failures.add((operation, name))

    def set_state(self, name: str, state: ServiceState) -> None:
        """Simulate an external change (crash, manual stop, health failure)."""
        with self._lock:
            if state == ServiceState.ABSENT:
                self.containers.pop(name, None)
            else:
                self.containers[name].state = state

    def state_of(self, name: str) -> ServiceState:
        container = self.containers.get(name)
        return container.state if container else ServiceState.ABSENT

    # -- backend API ---------------------------------------------------

    def _record(self, operation: str, name: str) -> None:
        if not self.available:
            raise RuntimeUnavailableError("in-memory runtime marked unavailable")
        self.calls.append((operation, name))
        if (operation, name) in self.failures:
            raise RuntimeOperationError(f"{operation} {name} failed (injected)")

    def _running_state(self, name: str) -> ServiceState:
        return ServiceState.STOPPED if name in self.crash_on_start else ServiceState.RUNNING

    def ping(self) -> None:
        if not self.available:
            raise RuntimeUnavailableError("in-memory runtime marked unavailable")

    def create(self, spec: ContainerSpec) -> None:
        with self._lock:
            self._record("create", spec.name)
            if spec.name in self.containers:
                raise RuntimeOperationError(f"container {spec.name} already exists")
            if spec.network not in self.networks:
                raise RuntimeOperationError(f"network {spec.network} not found")
            self.containers[spec.name] = _Container(spec, self._running_state(spec.name))

    def start(self, name: str) -> None:
        with self._lock:
            self._record("start", name)
            container = self._get(name)
            container.state = self._running_state(name)

    def stop(self, name: str) -> None:
        with self._lock:
            self._record("stop", name)
            self._get(name).state = ServiceState.STOPPED

    def remove(self, name: str) -> None:
        with self._lock:
            self._record("remove", name)
            self._get(name)
            del self.containers[name]

    def inspect(self, name: str) -> ContainerStatus:
        with self._lock:
            self._record("inspect", name)
            container = self.containers.get(name)
            if container is None:
                return ContainerStatus(ServiceState.ABSENT)
            return ContainerStatus(container.state, container.spec.config_hash)

    def network_exists(self, name: str) -> bool:
        with self._lock:
            self._record("network_exists", name)
            return name in self.networks

    def create_network(self, name: str) -> None:
        with self._lock:
            self._record("create_network", name)
            self.networks.add(name)

    def remove_network(self, name: str) -> None:
        with self._lock:
            self._record("remove_network", name)
            attached = [n for n, c in self.containers.items() if c.spec.network == name]
            if attached:
                raise RuntimeOperationError(
                    f"network {name} has active endpoints", {"containers": attached}
                )
            self.networks.discard(name)

    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None) -> None:
        with self._lock:
            self._record("build_image", tag)
            self.images.add(tag)

    def _get(self, name: str) -> _Container:
        container = self.containers.get(name)
        if container is None:
            raise RuntimeOperationError(f"container {name} not found")
        return container
