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
Read-only view of service state in the runtime.
"""
from typing import Dict, Iterable, Optional

from ..MODELS.service_definition import ServiceState
from ..RUNTIME.base import ContainerStatus, RuntimeBackend
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class StateInspector:
    """
    Returns one authoritative state per service per query.
    """
    def __init__(self, backend: RuntimeBackend):
        self.backend = backend

    def check_backend(self) -> None:
        """Raises RuntimeUnavailableError when the runtime cannot be reached."""
        self.backend.ping()

    def inspect(self, service: str) -> ContainerStatus:
        status = self.backend.inspect(service)
        logger.debug("inspected service", service=service, state=status.state.value)
        return status

    def status(self, service: str) -> ServiceState:
        return self.inspect(service).state

    def deployed_hash(self, service: str) -> Optional[str]:
        """Configuration hash recorded on the deployed container, if any."""
        return self.inspect(service).config_hash

    def snapshot(self, services: Iterable[str]) -> Dict[str, ContainerStatus]:
        """Inspect several services in one pass."""
        return {name: self.inspect(name) for name in services}
