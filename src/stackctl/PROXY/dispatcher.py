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
Request dispatch: route matching, admission and forwarding to an upstream.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from ..errors import AdmissionError, RateLimitedError, StackctlError
from ..MODELS.routing_config import ProxyConfig, Route
from ..UTILS.logging import get_logger
from .rate_limiter import Admission, RateLimiter, key_for
from .routing_table import RouteTableHolder
from .upstream_pool import UpstreamPoolManager

logger = get_logger(__name__)

# Hop-by-hop headers are not forwarded.
_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
}


@dataclass
class ProxyRequest:
    method: str
    path: str
    client_address: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class ProxyResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    route: Optional[Route] = None


class Dispatcher:
    """
    Sends one request through the routing, admission and pooling stages.

    Every failure becomes an HTTP status; nothing raises out of
    :meth:`dispatch` for a request-level problem.
    """
    def __init__(
        self,
        config: ProxyConfig,
        limiter: Optional[RateLimiter] = None,
        pool: Optional[UpstreamPoolManager] = None,
    ):
        """
        :param config: Validated routing configuration.
        :param limiter: Rate limiter; built from the config's zones when omitted.
        :param pool: Upstream pool; built from the config's groups when omitted.
        """
        self.config = config
        self.routes = RouteTableHolder(config)
        self.limiter = limiter or RateLimiter(config.zones)
        self.pool = pool or UpstreamPoolManager(config.upstreams)

    def dispatch(self, request: ProxyRequest) -> ProxyResponse:
        route = self.routes.match(request.path)
        # reload publishes the config before the routes that depend on it
        config = self.config

        if route.is_static:
            static = route.static_response
            return ProxyResponse(
                status=static.status,
                body=static.body.encode("utf-8"),
                headers={"content-type": static.content_type},
                route=route,
            )

        try:
            if route.zone:
                zone = config.zone(route.zone)
                key = key_for(zone, request.client_address, request.headers)
                if self.limiter.admit(zone.name, key) == Admission.REJECT:
                    raise RateLimitedError(
                        f"rate limit exceeded in zone {zone.name}", {"zone": zone.name, "key": key}
                    )
            connection = self.pool.acquire(route.upstream)
            group = self.pool.group_config(route.upstream)
        except AdmissionError as e:
            log = logger.info if isinstance(e, RateLimitedError) else logger.warning
            log("request refused", path=request.path, code=e.code)
            return self._error(e.status_code, e.message, route)
        except StackctlError as e:
            logger.error("request not routable", path=request.path, code=e.code, error=e.message)
            return self._error(500, "proxy misconfigured", route)

        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS}
        headers["X-Forwarded-For"] = request.client_address
        reusable = False
        try:
            upstream = connection.request(
                request.method,
                request.path,
                headers=headers,
                content=request.body or None,
                timeout=group.request_timeout,
            )
            reusable = True
        except httpx.TimeoutException:
            logger.warning("upstream timed out", group=group.name, member=connection.member)
            return self._error(504, "upstream timed out", route)
        except httpx.HTTPError as e:
            logger.warning("upstream error", group=group.name, member=connection.member, error=str(e))
            return self._error(502, "bad gateway", route)
        finally:
            self.pool.release(connection, reusable=reusable)

        response_headers = {
            k: v for k, v in upstream.headers.items() if k.lower() not in _HOP_HEADERS
        }
        return ProxyResponse(
            status=upstream.status_code, body=upstream.content, headers=response_headers, route=route
        )

    def reload(self, config: ProxyConfig) -> None:
        """
        Publishes a new configuration generation. Zones and groups it
        introduces are registered before the routes that use them go live;
        existing buckets, pools and health state carry over.
        """
        self.limiter.add_zones(config.zones)
        self.pool.add_groups(config.upstreams)
        self.config = config
        self.routes.reload(config)

    @staticmethod
    def _error(status: int, message: str, route: Route) -> ProxyResponse:
        return ProxyResponse(
            status=status,
            body=f"{message}\n".encode("utf-8"),
            headers={"content-type": "text/plain"},
            route=route,
        )
