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
Declarative reverse-proxy configuration: routes, rate-limit zones and upstream groups.
"""
import re
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


class MatchKind(str, Enum):
    """
    How a route pattern is compared against the request path.
    """
    EXACT = "exact"
    PREFIX = "prefix"
    REGEX = "regex"


class StaticResponse(BaseModel):
    """
    A response the proxy answers by itself, without touching an upstream.
    """
    status: int = Field(200, ge=100, le=599)
    body: str = "healthy\n"
    content_type: str = "text/plain"


class Route(BaseModel):
    """
    A single location rule.
    """
    pattern: str
    kind: MatchKind = MatchKind.PREFIX
    upstream: Optional[str] = None
    static_response: Optional[StaticResponse] = None
    zone: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self) -> "Route":
        if self.static_response is None and not self.upstream:
            raise ValueError(f"route {self.pattern!r} needs an upstream or a static response")
        if self.kind == MatchKind.REGEX:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"route {self.pattern!r} is not a valid regex: {e}")
        elif not self.pattern.startswith("/"):
            raise ValueError(f"route {self.pattern!r} must start with '/'")
        return self

    @property
    def is_static(self) -> bool:
        return self.static_response is not None

    @property
    def literal(self) -> str:
        """
        The literal text compared for exact and prefix routes.
        A trailing ``*`` on a prefix pattern is shorthand (``/api/*`` -> ``/api/``).
        """
        if self.kind == MatchKind.PREFIX and self.pattern.endswith("*"):
            return self.pattern[:-1]
        return self.pattern


class RateLimitZone(BaseModel):
    """
    A named request-rate budget applied per key.
    """
    name: str
    key: str = "client_address"
    rate: float = Field(..., gt=0, description="Sustained requests per second")
    burst: int = Field(..., ge=1, description="Bucket capacity in tokens")

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if value != "client_address" and not (value.startswith("header:") and len(value) > 7):
            raise ValueError("zone key must be 'client_address' or 'header:<Name>'")
        return value


class UpstreamGroup(BaseModel):
    """
    A set of interchangeable backend endpoints.
    """
    name: str
    members: List[str] = Field(..., min_length=1)
    keepalive: int = Field(16, ge=0)
    health_path: str = "/health"
    probe_interval: float = Field(5.0, gt=0)
    probe_timeout: float = Field(2.0, gt=0)
    healthy_threshold: int = Field(2, ge=1)
    request_timeout: float = Field(30.0, gt=0)

    @field_validator("members")
    @classmethod
    def _check_members(cls, value: List[str]) -> List[str]:
        for member in value:
            split_member(member)
        if len(set(value)) != len(value):
            raise ValueError("duplicate upstream members")
        return value


def split_member(member: str) -> Tuple[str, int]:
    """Split a ``host:port`` member string."""
    host, sep, port = member.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"upstream member {member!r} must be host:port")
    return host, int(port)


class ProxyConfig(BaseModel):
    """
    Full routing configuration consumed by the dispatcher.
    """
    routes: List[Route]
    zones: List[RateLimitZone] = []
    upstreams: List[UpstreamGroup] = []

    @model_validator(mode="after")
    def _check_references(self) -> "ProxyConfig":
        zone_names = [z.name for z in self.zones]
        group_names = [g.name for g in self.upstreams]
        if len(set(zone_names)) != len(zone_names):
            raise ValueError("duplicate rate-limit zone names")
        if len(set(group_names)) != len(group_names):
            raise ValueError("duplicate upstream group names")

        for route in self.routes:
            if route.zone and route.zone not in zone_names:
                raise ValueError(f"route {route.pattern!r} references unknown zone {route.zone!r}")
            if not route.is_static and route.upstream not in group_names:
                raise ValueError(
                    f"route {route.pattern!r} references unknown upstream {route.upstream!r}"
                )

        if not any(r.kind == MatchKind.PREFIX and r.literal == "/" for r in self.routes):
            raise ValueError("a catch-all prefix route '/' is required")
        return self

    def zone(self, name: str) -> RateLimitZone:
        for z in self.zones:
            if z.name == name:
                return z
        raise KeyError(name)

    def group(self, name: str) -> UpstreamGroup:
        for g in self.upstreams:
            if g.name == name:
                return g
        raise KeyError(name)
