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
Shared fixtures.
"""
import pytest

from stackctl.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackctl.MODELS.orchestration_config import Topology
from stackctl.MODELS.routing_config import (
    MatchKind,
    ProxyConfig,
    RateLimitZone,
    Route,
    StaticResponse,
    UpstreamGroup,
)
from stackctl.MODELS.service_definition import ServiceDefinition
from stackctl.MODELS.settings import Settings
from stackctl.RUNTIME.memory_runtime import InMemoryRuntime


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def settings():
    return Settings(ready_timeout=1.0, ready_poll_interval=0.1)


def make_topology(name: str = "notes-app") -> Topology:
    return Topology(
        name=name,
        network="notes-net",
        services={
            "postgres-db": ServiceDefinition(
                name="postgres-db",
                image_name="postgres:14-alpine",
                environment={"POSTGRES_DB": "notes_db"},
                ports={5432: 5432},
            ),
            "backend": ServiceDefinition(
                name="backend",
                image_name="notes-backend:latest",
                build_context="./backend",
                depends_on=["postgres-db"],
                internal_port=3001,
                ports={3001: 3001},
            ),
            "frontend": ServiceDefinition(
                name="frontend",
                image_name="notes-frontend:latest",
                depends_on=["backend"],
                internal_port=3000,
                ports={3000: 3000},
            ),
            "nginx-proxy": ServiceDefinition(
                name="nginx-proxy",
                image_name="notes-nginx:latest",
                depends_on=["backend", "frontend"],
                internal_port=80,
                ports={80: 8080},
            ),
        },
    )


@pytest.fixture
def topology():
    return make_topology()


@pytest.fixture
def orchestrator(runtime, settings):
    return ServiceOrchestrator(runtime, settings, sleep=lambda seconds: None)


def make_proxy_config() -> ProxyConfig:
    return ProxyConfig(
        zones=[
            RateLimitZone(name="api", rate=10, burst=20),
            RateLimitZone(name="general", rate=30, burst=50),
        ],
        upstreams=[
            UpstreamGroup(name="frontend", members=["frontend:3000"]),
            UpstreamGroup(name="backend", members=["backend-a:3001", "backend-b:3001"], keepalive=2),
        ],
        routes=[
            Route(pattern="/nginx-health", kind=MatchKind.EXACT, static_response=StaticResponse()),
            Route(pattern="/health", kind=MatchKind.EXACT, upstream="backend"),
            Route(pattern="/api/*", upstream="backend", zone="api"),
            Route(pattern="/", upstream="frontend", zone="general"),
        ],
    )


@pytest.fixture
def proxy_config():
    return make_proxy_config()
