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
Unit tests for the network manager and state inspector.
"""
from stackctl.MANAGERS.network_manager import NetworkManager, env_prefix
from stackctl.MANAGERS.state_inspector import StateInspector
from stackctl.MODELS.service_definition import ServiceState
from stackctl.RUNTIME.base import ContainerSpec


class TestNetworkManager:
    """Tests for NetworkManager."""

    def test_ensure_network_creates_once(self, runtime):
        mgr = NetworkManager(runtime)
        first = mgr.ensure_network("notes-net")
        second = mgr.ensure_network("notes-net")
        assert first.created is True
        assert second.created is False
        assert runtime.mutating_calls() == [("create_network", "notes-net")]

    def test_remove_network(self, runtime):
        mgr = NetworkManager(runtime)
        assert mgr.remove_network("notes-net") is False
        mgr.ensure_network("notes-net")
        assert mgr.remove_network("notes-net") is True
        assert not mgr.exists("notes-net")

    def test_env_prefix(self):
        assert env_prefix("postgres-db") == "POSTGRES_DB"
        assert env_prefix("api.v2") == "API_V2"

    def test_get_service_discovery_env(self, runtime, topology):
        mgr = NetworkManager(runtime)
        env = mgr.get_service_discovery_env(topology.services["nginx-proxy"], topology)
        assert env == {
            "BACKEND_HOST": "backend",
            "BACKEND_PORT": "3001",
            "FRONTEND_HOST": "frontend",
            "FRONTEND_PORT": "3000",
            "PORT": "80",
        }

    def test_explicit_environment_wins(self, runtime, topology):
        backend = topology.services["backend"]
        backend.environment["POSTGRES_DB_HOST"] = "db.internal"
        env = NetworkManager(runtime).get_service_discovery_env(backend, topology)
        assert env["POSTGRES_DB_HOST"] == "db.internal"


class TestStateInspector:
    """Tests for StateInspector."""

    def test_status_and_hash(self, runtime):
        inspector = StateInspector(runtime)
        assert inspector.status("db") == ServiceState.ABSENT
        assert inspector.deployed_hash("db") is None

        runtime.create_network("net")
        runtime.create(ContainerSpec(
            name="db", image="pg", network="net", labels={"stackctl.config-hash": "abc"},
        ))
        assert inspector.status("db") == ServiceState.RUNNING
        assert inspector.deployed_hash("db") == "abc"
        assert set(inspector.snapshot(["db", "api"])) == {"db", "api"}
