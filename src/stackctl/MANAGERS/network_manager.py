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
Network provisioning for a stack and name-based service discovery.
"""
from typing import Dict

from pydantic import BaseModel

from ..MODELS.orchestration_config import Topology
from ..MODELS.service_definition import ServiceDefinition
from ..RUNTIME.base import RuntimeBackend
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class Network(BaseModel):
    """A provisioned network; ``created`` is True when this call created it."""
    name: str
    created: bool = False


def env_prefix(service_name: str) -> str:
    """``postgres-db`` -> ``POSTGRES_DB``."""
    return service_name.upper().replace("-", "_").replace(".", "_")


class NetworkManager:
    """
    Ensures the shared network exists and computes the environment bindings
    services use to find each other by name.
    """
    def __init__(self, backend: RuntimeBackend):
        self.backend = backend

    def exists(self, name: str) -> bool:
        return self.backend.network_exists(name)

    def ensure_network(self, name: str) -> Network:
        """
        Creates the network unless it already exists.

        :param name: Network name.
        :return: The network, flagged with whether it was created now.
        """
        if self.backend.network_exists(name):
            logger.info("network already exists", network=name)
            return Network(name=name)
        self.backend.create_network(name)
        logger.info("network created", network=name)
        return Network(name=name, created=True)

    def remove_network(self, name: str) -> bool:
        """
        Removes the network if present.

        :return: True if a network was removed.
        """
        if not self.backend.network_exists(name):
            return False
        self.backend.remove_network(name)
        logger.info("network removed", network=name)
        return True

    def get_service_discovery_env(self, service: ServiceDefinition, topology: Topology) -> Dict[str, str]:
        """
        Environment bindings for one service.

        Every dependency is addressed by its service name, which the runtime
        resolves on the shared network:
        ``DB_HOST=postgres-db``-style ``<PEER>_HOST`` / ``<PEER>_PORT`` pairs,
        plus ``PORT`` for the service's own listen port. Explicitly declared
        variables override the generated ones.
        """
        env: Dict[str, str] = {}
        for dep_name in service.depends_on:
            peer = topology.services[dep_name]
            prefix = env_prefix(peer.name)
            env[f"{prefix}_HOST"] = peer.name
            if peer.peer_port is not None:
                env[f"{prefix}_PORT"] = str(peer.peer_port)

        if service.peer_port is not None:
            env["PORT"] = str(service.peer_port)

        env.update(service.environment)
        return env
