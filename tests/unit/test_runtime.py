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
Unit tests for the runtime adapters.
"""
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from stackctl.errors import RuntimeOperationError, RuntimeUnavailableError
from stackctl.MODELS.service_definition import ServiceState
from stackctl.RUNTIME.base import ContainerSpec, LABEL_CONFIG_HASH
from stackctl.RUNTIME.docker_runtime import DockerRuntime
from stackctl.RUNTIME.memory_runtime import InMemoryRuntime


def _container(status="running", health=None, config_hash="h1"):
    container = MagicMock()
    container.status = status
    state = {"Health": {"Status": health}} if health else {}
    container.attrs = {"Config": {"Labels": {LABEL_CONFIG_HASH: config_hash}}, "State": state}
    return container


class TestDockerRuntime:
    """Tests for DockerRuntime against a mocked docker client."""

    def test_ping_failure_is_unavailable(self):
        client = MagicMock()
        client.ping.side_effect = DockerException("connection refused")
        with pytest.raises(RuntimeUnavailableError):
            DockerRuntime(client).ping()

    def test_inspect_maps_states(self):
        client = MagicMock()
        runtime = DockerRuntime(client)

        client.containers.get.side_effect = NotFound("no such container")
        assert runtime.inspect("db").state == ServiceState.ABSENT

        client.containers.get.side_effect = None
        client.containers.get.return_value = _container("exited")
        assert runtime.inspect("db").state == ServiceState.STOPPED

        client.containers.get.return_value = _container("running", health="unhealthy")
        assert runtime.inspect("db").state == ServiceState.UNHEALTHY

        client.containers.get.return_value = _container("running", health="healthy", config_hash="abc")
        status = runtime.inspect("db")
        assert status.state == ServiceState.RUNNING
        assert status.config_hash == "abc"

    def test_create_passes_spec(self):
        client = MagicMock()
        spec = ContainerSpec(
            name="backend", image="notes-backend", network="notes-net",
            environment={"PORT": "3001"}, ports={3001: 3001, 9229: None},
            labels={LABEL_CONFIG_HASH: "abc"},
        )
        DockerRuntime(client).create(spec)

        args, kwargs = client.containers.run.call_args
        assert args == ("notes-backend",)
        assert kwargs["name"] == "backend"
        assert kwargs["network"] == "notes-net"
        assert kwargs["ports"] == {"3001/tcp": 3001}
        assert kwargs["labels"][LABEL_CONFIG_HASH] == "abc"
        assert kwargs["detach"] is True

    def test_api_error_is_operation_error(self):
        client = MagicMock()
        client.containers.get.return_value.start.side_effect = APIError("port is already allocated")
        with pytest.raises(RuntimeOperationError):
            DockerRuntime(client).start("backend")

    def test_missing_container_is_operation_error(self):
        client = MagicMock()
        client.containers.get.side_effect = NotFound("no such container")
        with pytest.raises(RuntimeOperationError):
            DockerRuntime(client).stop("backend")

    def test_network_helpers(self):
        client = MagicMock()
        runtime = DockerRuntime(client)

        client.networks.get.side_effect = NotFound("no such network")
        assert runtime.network_exists("notes-net") is False
        runtime.remove_network("notes-net")

        runtime.create_network("notes-net")
        client.networks.create.assert_called_once_with("notes-net", driver="bridge")


class TestInMemoryRuntime:
    """Tests for the in-memory runtime used by the other tests."""

    def test_create_requires_network(self):
        runtime = InMemoryRuntime()
        with pytest.raises(RuntimeOperationError):
            runtime.create(ContainerSpec(name="db", image="pg", network="net"))

    def test_network_with_containers_cannot_be_removed(self):
        runtime = InMemoryRuntime()
        runtime.create_network("net")
        runtime.create(ContainerSpec(name="db", image="pg", network="net"))
        with pytest.raises(RuntimeOperationError):
            runtime.remove_network("net")

    def test_injected_failure_is_recorded(self):
        runtime = InMemoryRuntime()
        runtime.fail("create_network", "net")
        with pytest.raises(RuntimeOperationError):
            runtime.create_network("net")
        assert runtime.mutating_calls() == [("create_network", "net")]

    def test_unavailable(self):
        runtime = InMemoryRuntime(available=False)
        with pytest.raises(RuntimeUnavailableError):
            runtime.ping()
        with pytest.raises(RuntimeUnavailableError):
            runtime.inspect("db")
