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
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, List, Set

from ..errors import ConfigurationError, DependencyCycleError
from ..MODELS.orchestration_config import Topology


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, topology: Topology) -> List[str]:
        """
        Determines the correct order to start services using topological sort.
        Independent services keep their declaration order.

        :param topology: The desired topology.
        :return: Service names in the order they should be started.
        :raises ConfigurationError: If a dependency names an undeclared service.
        :raises DependencyCycleError: If a circular dependency is detected.
        """
        services = topology.services
        for name, svc in services.items():
            missing = [dep for dep in svc.depends_on if dep not in services]
            if missing:
                raise ConfigurationError(
                    f"service {name} depends on undeclared service(s): {', '.join(missing)}",
                    {"service": name, "missing": missing},
                )

        ordered: List[str] = []
        visited: Set[str] = set()
        processing: List[str] = []

        def visit(name: str) -> None:
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise DependencyCycleError(
                    f"circular dependency: {' -> '.join(cycle)}", {"cycle": cycle}
                )
            if name in visited:
                return
            processing.append(name)
            for dep in services[name].depends_on:
                visit(dep)
            processing.pop()
            visited.add(name)
            ordered.append(name)

        for name in services:
            visit(name)

        return ordered

    def shutdown_order(self, topology: Topology) -> List[str]:
        """Reverse of the startup order: dependents go first."""
        return list(reversed(self.resolve_order(topology)))

    def dependents(self, topology: Topology) -> Dict[str, List[str]]:
        """Direct dependents of every service."""
        result: Dict[str, List[str]] = {name: [] for name in topology.services}
        for name, svc in topology.services.items():
            for dep in svc.depends_on:
                result[dep].append(name)
        return result
