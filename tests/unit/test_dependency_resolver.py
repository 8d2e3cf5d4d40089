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
Unit tests for dependency resolution.
"""
import pytest

from stackctl.errors import ConfigurationError, DependencyCycleError
from stackctl.MODELS.orchestration_config import Topology
from stackctl.MODELS.service_definition import ServiceDefinition
from stackctl.RUNNERS.dependency_resolver import DependencyResolver


def _topology(deps):
    return Topology(
        network="net",
        services={
            name: ServiceDefinition(name=name, image_name=name, depends_on=d)
            for name, d in deps.items()
        },
    )


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_dependencies_come_first(self, topology):
        order = DependencyResolver().resolve_order(topology)
        assert order == ["postgres-db", "backend", "frontend", "nginx-proxy"]

    def test_declaration_order_is_kept_for_independent_services(self):
        topology = _topology({"proxy": ["web"], "cache": [], "web": ["cache"], "worker": []})
        order = DependencyResolver().resolve_order(topology)
        assert order == ["cache", "web", "proxy", "worker"]

    def test_shutdown_order_is_reversed(self, topology):
        resolver = DependencyResolver()
        assert resolver.shutdown_order(topology) == list(reversed(resolver.resolve_order(topology)))

    def test_cycle_is_reported_with_path(self):
        topology = _topology({"a": ["b"], "b": ["c"], "c": ["a"]})
        with pytest.raises(DependencyCycleError) as exc:
            DependencyResolver().resolve_order(topology)
        assert exc.value.details["cycle"] == ["a", "b", "c", "a"]

    def test_cycle_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            DependencyResolver().resolve_order(_topology({"a": ["a"]}))

    def test_undeclared_dependency(self):
        with pytest.raises(ConfigurationError) as exc:
            DependencyResolver().resolve_order(_topology({"a": ["ghost"]}))
        assert exc.value.details["missing"] == ["ghost"]

    def test_dependents(self, topology):
        dependents = DependencyResolver().dependents(topology)
        assert dependents["backend"] == ["frontend", "nginx-proxy"]
        assert dependents["nginx-proxy"] == []
