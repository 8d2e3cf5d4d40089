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
Converter for generating an nginx configuration from the proxy rules.
"""
import math
import os
from typing import Optional

from jinja2 import Template

from ..MODELS.routing_config import MatchKind, ProxyConfig, RateLimitZone, Route

NGINX_TEMPLATE = """\
events {
    worker_connections 1024;
}

http {
{%- for zone in zones %}
    limit_req_zone {{ zone.variable }} zone={{ zone.name }}:10m rate={{ zone.rate }};
{%- endfor %}
{% for group in upstreams %}
    upstream {{ group.name }} {
{%- for member in group.members %}
        server {{ member }};
{%- endfor %}
{%- if group.keepalive %}
        keepalive {{ group.keepalive }};
{%- endif %}
    }
{% endfor %}
    server {
        listen {{ listen }};
{% for loc in locations %}
        location {{ loc.modifier }}{{ loc.pattern }} {
{%- if loc.static %}
            access_log off;
            default_type {{ loc.static.content_type }};
            return {{ loc.static.status }} {{ loc.static.body | tojson }};
{%- else %}
{%- if loc.zone %}
            limit_req zone={{ loc.zone.name }} burst={{ loc.zone.burst }} nodelay;
{%- endif %}
            proxy_pass http://{{ loc.upstream }};
            proxy_http_version 1.1;
            proxy_set_header Connection "";
            proxy_set_header Host $host;
            proxy_set_header X-Real-IP $remote_addr;
            proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
            proxy_read_timeout {{ loc.timeout }}s;
{%- endif %}
        }
{% endfor %}
    }
}
"""

# ^~ keeps nginx from letting a regex override a matching prefix
_MODIFIERS = {MatchKind.EXACT: "= ", MatchKind.PREFIX: "^~ ", MatchKind.REGEX: "~ "}


def _zone_variable(zone: RateLimitZone) -> str:
    if zone.key.startswith("header:"):
        return "$http_" + zone.key[len("header:"):].lower().replace("-", "_")
    return "$binary_remote_addr"


def _zone_rate(zone: RateLimitZone) -> str:
    # nginx only accepts integral rates
    if zone.rate >= 1 and float(zone.rate).is_integer():
        return f"{int(zone.rate)}r/s"
    return f"{max(1, math.ceil(zone.rate * 60))}r/m"


class NginxConverter:
    """
    Renders a ProxyConfig as an nginx.conf.
    """

    def __init__(self, config: ProxyConfig, listen: int = 80):
        """
        Initializes the nginx converter.

        :param config: The proxy configuration.
        :param listen: Port the server block listens on.
        """
        self.config = config
        self.listen = listen
        self.template = Template(NGINX_TEMPLATE)

    def _location(self, route: Route) -> dict:
        zone = self.config.zone(route.zone) if route.zone else None
        group = self.config.group(route.upstream) if not route.is_static else None
        return {
            "modifier": _MODIFIERS[route.kind],
            "pattern": route.literal,
            "static": route.static_response,
            "zone": zone,
            "upstream": route.upstream,
            "timeout": int(group.request_timeout) if group else None,
        }

    def render(self) -> str:
        zones = [
            {"name": z.name, "variable": _zone_variable(z), "rate": _zone_rate(z)}
            for z in self.config.zones
        ]
        return self.template.render(
            zones=zones,
            upstreams=self.config.upstreams,
            listen=self.listen,
            locations=[self._location(r) for r in self.config.routes],
        )

    def convert(self, output_path: Optional[str] = None) -> str:
        """
        Renders the configuration, writing it to ``output_path`` when given.

        :return: The rendered configuration.
        """
        content = self.render()
        if output_path:
            directory = os.path.dirname(output_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(output_path, "w") as f:
                f.write(content)
        return content
