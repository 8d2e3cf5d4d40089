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
Runtime backend backed by the Docker Engine API.
"""
from typing import Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from ..errors import RuntimeOperationError, RuntimeUnavailableError
from ..MODELS.service_definition import ServiceState
from ..UTILS.logging import get_logger
from .base import ContainerSpec, ContainerStatus, LABEL_CONFIG_HASH, RuntimeBackend

logger = get_logger(__name__)

_RUNNING_STATUSES = {"running", "restarting"}


class DockerRuntime(RuntimeBackend):
    """
    Talks to the local Docker daemon through docker-py.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        :param client: A preconfigured client; created lazily from the environment otherwise.
        """
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailableError(
                    "Docker daemon is not reachable. Start Docker and retry.",
                    {"reason": str(e)},
                ) from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except DockerException as e:
            raise RuntimeUnavailableError(
                "Docker daemon is not reachable. Start Docker and retry.",
                {"reason": str(e)},
            ) from e

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except APIError as e:
            raise RuntimeOperationError(f"{what} failed: {e.explanation or e}", {"operation": what}) from e
        except DockerException as e:
            # Anything below the API layer means the daemon went away.
            raise RuntimeUnavailableError(f"{what} failed: {e}", {"operation": what}) from e

    def create(self, spec: ContainerSpec) -> None:
        ports = {f"{c}/tcp": h for c, h in spec.ports.items() if h is not None}
        logger.debug("docker run", container=spec.name, image=spec.image)
        self._call(
            f"create {spec.name}",
            self.client.containers.run,
            spec.image,
            command=list(spec.command) or None,
            detach=True,
            name=spec.name,
            hostname=spec.name,
            environment=dict(spec.environment),
            network=spec.network,
            ports=ports,
            labels=dict(spec.labels),
            restart_policy={"Name": "no"},
        )

    def _container(self, name: str):
        try:
            return self.client.containers.get(name)
        except NotFound as e:
            raise RuntimeOperationError(f"container {name} not found", {"container": name}) from e
        except APIError as e:
            raise RuntimeOperationError(f"lookup of {name} failed: {e.explanation or e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"lookup of {name} failed: {e}") from e

    def start(self, name: str) -> None:
        self._call(f"start {name}", self._container(name).start)

    def stop(self, name: str) -> None:
        self._call(f"stop {name}", self._container(name).stop)

    def remove(self, name: str) -> None:
        self._call(f"remove {name}", self._container(name).remove, force=True)

    def inspect(self, name: str) -> ContainerStatus:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return ContainerStatus(ServiceState.ABSENT)
        except APIError as e:
            raise RuntimeOperationError(f"inspect {name} failed: {e.explanation or e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"inspect {name} failed: {e}") from e

        attrs = container.attrs or {}
        labels = (attrs.get("Config") or {}).get("Labels") or {}
        config_hash = labels.get(LABEL_CONFIG_HASH)

        if container.status not in _RUNNING_STATUSES:
            return ContainerStatus(ServiceState.STOPPED, config_hash)
        health = ((attrs.get("State") or {}).get("Health") or {}).get("Status")
        if health == "unhealthy":
            return ContainerStatus(ServiceState.UNHEALTHY, config_hash)
        return ContainerStatus(ServiceState.RUNNING, config_hash)

    def network_exists(self, name: str) -> bool:
        try:
            self.client.networks.get(name)
            return True
        except NotFound:
            return False
        except APIError as e:
            raise RuntimeOperationError(f"network lookup {name} failed: {e.explanation or e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"network lookup {name} failed: {e}") from e

    def create_network(self, name: str) -> None:
        self._call(f"create network {name}", self.client.networks.create, name, driver="bridge")

    def remove_network(self, name: str) -> None:
        try:
            network = self.client.networks.get(name)
        except NotFound:
            return
        except APIError as e:
            raise RuntimeOperationError(f"network lookup {name} failed: {e.explanation or e}") from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"network lookup {name} failed: {e}") from e
        self._call(f"remove network {name}", network.remove)

    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None) -> None:
        kwargs = {"path": context, "tag": tag, "rm": True}
        if dockerfile:
            kwargs["dockerfile"] = dockerfile
        try:
            self.client.images.build(**kwargs)
        except (APIError, ImageNotFound, BuildError) as e:
            raise RuntimeOperationError(f"build of {tag} failed: {e}", {"context": context}) from e
        except DockerException as e:
            raise RuntimeUnavailableError(f"build of {tag} failed: {e}") from e
