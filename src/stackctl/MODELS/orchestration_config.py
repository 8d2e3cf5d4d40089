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
Models for the overall stack: the topology and the proxy configuration.
"""
from typing import Dict, Optional

from pydantic import BaseModel, model_validator

from .routing_config import ProxyConfig
from .service_definition import ServiceDefinition


class Topology(BaseModel):
    """
    Desired set of services for one deployment unit.
    Every service is attached to the single shared network.
    """
    name: str = "stack"
    network: str
    services: Dict[str, ServiceDefinition]

    @model_validator(mode="after")
    def _attach_network(self) -> "Topology":
        for key, svc in self.services.items():
            if svc.name != key:
                raise ValueError(f"service key {key!r} does not match its name {svc.name!r}")
            if not svc.networks:
                svc.networks = [self.network]
            elif self.network not in svc.networks:
                raise ValueError(
                    f"service {key!r} must be attached to the stack network {self.network!r}"
                )
        return self

    def service(self, name: str) -> ServiceDefinition:
        return self.services[name]


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a stack file: services plus optional proxy rules.
    """
    topology: Topology
    proxy: Optional[ProxyConfig] = None
    # service that runs the reverse proxy, used for the entrypoint summary
    proxy_service: Optional[str] = None

    @model_validator(mode="after")
    def _check_proxy_service(self) -> "OrchestrationConfig":
        if self.proxy_service and self.proxy_service not in self.topology.services:
            raise ValueError(f"proxy service {self.proxy_service!r} is not declared")
        return self
