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
Unit tests for the data models.
"""
import pytest
from pydantic import ValidationError

from stackctl.MODELS.orchestration_config import Topology
from stackctl.MODELS.plan import Action, PlannedAction
from stackctl.MODELS.routing_config import (
    MatchKind,
    ProxyConfig,
    RateLimitZone,
    Route,
    UpstreamGroup,
    split_member,
)
from stackctl.MODELS.service_definition import HealthCheck, ServiceDefinition, ServiceState
from stackctl.MODELS.settings import Settings


class TestServiceState:
    """Tests for the lifecycle transition table."""

    @pytest.mark.parametrize("src,dst", [
        (ServiceState.ABSENT, ServiceState.RUNNING),
        (ServiceState.RUNNING, ServiceState.STOPPED),
        (ServiceState.STOPPED, ServiceState.RUNNING),
        (ServiceState.STOPPED, ServiceState.ABSENT),
        (ServiceState.RUNNING, ServiceState.UNHEALTHY),
        (ServiceState.UNHEALTHY, ServiceState.STOPPED),
        (ServiceState.UNHEALTHY, ServiceState.RUNNING),
    ])
    def test_allowed(self, src, dst):
        assert ServiceState.can_transition(src, dst)

    def test_absent_cannot_become_stopped(self):
        assert not ServiceState.can_transition(ServiceState.ABSENT, ServiceState.STOPPED)
        assert not ServiceState.can_transition(ServiceState.RUNNING, ServiceState.ABSENT)

    def test_invalid_plan_is_detected(self):
        planned = PlannedAction(service="db", action=Action.REMOVE, current_state=ServiceState.RUNNING)
        assert planned.transitions() == [(ServiceState.RUNNING, ServiceState.ABSENT)]
        assert not planned.is_valid()


class TestServiceDefinition:
    """Tests for ServiceDefinition helpers."""

    def test_peer_port_prefers_internal_port(self):
        svc = ServiceDefinition(name="api", image_name="api", ports={8080: 80}, internal_port=3001)
        assert svc.peer_port == 3001
        assert ServiceDefinition(name="db", image_name="pg", ports={5432: None}).peer_port == 5432
        assert ServiceDefinition(name="x", image_name="x").peer_port is None

    def test_published_ports_skip_unpublished(self):
        svc = ServiceDefinition(name="api", image_name="api", ports={3001: 3001, 9229: None})
        assert svc.published_ports() == {3001: 3001}

    def test_config_hash_is_stable_and_sensitive(self):
        a = ServiceDefinition(name="api", image_name="api:1", environment={"A": "1", "B": "2"})
        b = ServiceDefinition(name="api", image_name="api:1", environment={"B": "2", "A": "1"})
        c = ServiceDefinition(name="api", image_name="api:2", environment={"A": "1", "B": "2"})
        assert a.config_hash() == b.config_hash()
        assert a.config_hash() != c.config_hash()
        assert a.config_hash({"A": "1"}) != a.config_hash()

    def test_invalid_name(self):
        with pytest.raises(ValidationError):
            ServiceDefinition(name="bad name", image_name="x")

    def test_readiness_budget(self):
        hc = HealthCheck(test=["CMD", "true"], interval=5, retries=6, start_period=10)
        assert hc.readiness_budget() == 40


class TestTopology:
    """Tests for Topology validation."""

    def test_services_default_to_stack_network(self):
        topology = Topology(network="net", services={"a": ServiceDefinition(name="a", image_name="a")})
        assert topology.services["a"].networks == ["net"]

    def test_service_must_join_stack_network(self):
        with pytest.raises(ValidationError):
            Topology(
                network="net",
                services={"a": ServiceDefinition(name="a", image_name="a", networks=["other"])},
            )

    def test_key_must_match_name(self):
        with pytest.raises(ValidationError):
            Topology(network="net", services={"a": ServiceDefinition(name="b", image_name="b")})


class TestRoutingConfig:
    """Tests for proxy configuration validation."""

    def test_prefix_star_is_literal_prefix(self):
        assert Route(pattern="/api/*", upstream="backend").literal == "/api/"
        assert Route(pattern="/api", kind=MatchKind.EXACT, upstream="backend").literal == "/api"

    def test_route_needs_target(self):
        with pytest.raises(ValidationError):
            Route(pattern="/")

    def test_bad_regex_rejected(self):
        with pytest.raises(ValidationError):
            Route(pattern="^/(unclosed", kind=MatchKind.REGEX, upstream="backend")

    def test_catch_all_required(self):
        with pytest.raises(ValidationError):
            ProxyConfig(
                routes=[Route(pattern="/api/", upstream="backend")],
                upstreams=[UpstreamGroup(name="backend", members=["backend:3001"])],
            )

    def test_unknown_references_rejected(self):
        with pytest.raises(ValidationError):
            ProxyConfig(
                routes=[Route(pattern="/", upstream="missing")],
                upstreams=[UpstreamGroup(name="backend", members=["backend:3001"])],
            )
        with pytest.raises(ValidationError):
            ProxyConfig(
                routes=[Route(pattern="/", upstream="backend", zone="nope")],
                upstreams=[UpstreamGroup(name="backend", members=["backend:3001"])],
            )

    def test_zone_key_validation(self):
        assert RateLimitZone(name="z", key="header:X-Api-Key", rate=1, burst=1).key == "header:X-Api-Key"
        with pytest.raises(ValidationError):
            RateLimitZone(name="z", key="cookie", rate=1, burst=1)
        with pytest.raises(ValidationError):
            RateLimitZone(name="z", rate=0, burst=1)

    def test_split_member(self):
        assert split_member("backend:3001") == ("backend", 3001)
        with pytest.raises(ValueError):
            split_member("backend")
        with pytest.raises(ValidationError):
            UpstreamGroup(name="g", members=["a:1", "a:1"])


class TestSettings:
    """Tests for Settings.from_env."""

    def test_env_and_overrides(self):
        environ = {
            "STACKCTL_FILE": "prod.yaml",
            "STACKCTL_LOG_JSON": "true",
            "STACKCTL_READY_TIMEOUT": "5",
            "STACKCTL_DESTROY_PHRASE": "bye",
        }
        settings = Settings.from_env(environ, stack_file=None, log_level="debug")
        assert settings.stack_file == "prod.yaml"
        assert settings.log_json is True
        assert settings.ready_timeout == 5.0
        assert settings.destroy_phrase == "bye"
        assert settings.log_level == "debug"

        assert Settings.from_env(environ, stack_file="other.yaml").stack_file == "other.yaml"

    def test_frozen(self):
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.log_level = "debug"
