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
Parser for stack YAML files.
"""
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import ConfigurationError
from ..MODELS.orchestration_config import OrchestrationConfig, Topology
from ..MODELS.routing_config import ProxyConfig
from ..MODELS.service_definition import HealthCheck, ServiceDefinition
from ..UTILS.logging import get_logger
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = get_logger(__name__)

_DURATION = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Seconds from a number or a compose-style duration (``10s``, ``1m30s``).
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ConfigurationError(f"invalid duration {value!r}")
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def load_context(environ: Mapping[str, str], env_file: Optional[str]) -> Dict[str, str]:
    """
    Interpolation context: the process environment overlaid with the
    values of ``env_file`` when it exists.
    """
    context = dict(environ)
    if env_file and os.path.isfile(env_file):
        for key, value in dotenv_values(env_file).items():
            if value is not None:
                context[key] = value
        logger.debug("loaded env file", path=env_file)
    return context


class StackParser:
    """
    Parser for stack files: one topology plus optional proxy rules.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an environment context for interpolation.

        :param context: Variables for interpolation; an empty context when omitted.
        """
        self.context = context if context is not None else {}

    def parse(self, stack_path: str) -> OrchestrationConfig:
        """
        Parses a stack file from a path.

        :param stack_path: Path to the stack file.
        :return: Parsed configuration.
        :raises ConfigurationError: If the file is missing or invalid.
        """
        try:
            with open(stack_path, "r") as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"cannot read stack file {stack_path}: {e.strerror}", {"path": stack_path})
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> OrchestrationConfig:
        """
        Parses a stack file from a string.

        :param content: YAML content of the stack file.
        :return: Parsed configuration.
        """
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"stack file is not valid YAML: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError("stack file must be a mapping")

        interpolator = EnvironmentInterpolator(self.context)
        data = interpolator.interpolate_tree(data)
        for name in sorted(set(interpolator.missing)):
            logger.warning("variable is not set, using an empty string", variable=name)

        services_spec = data.get("services") or {}
        if not isinstance(services_spec, dict) or not services_spec:
            raise ConfigurationError("stack file declares no services")

        try:
            services = {name: self._parse_service(name, spec or {}) for name, spec in services_spec.items()}
            topology = Topology(
                name=data.get("name", "stack"),
                network=data.get("network") or f"{data.get('name', 'stack')}-net",
                services=services,
            )
            proxy, proxy_service = None, None
            if data.get("proxy"):
                proxy_spec = dict(data["proxy"])
                proxy_service = proxy_spec.pop("service", None)
                proxy = ProxyConfig(**proxy_spec)
            return OrchestrationConfig(topology=topology, proxy=proxy, proxy_service=proxy_service)
        except ValidationError as e:
            raise ConfigurationError(f"invalid stack file: {e}", {"errors": e.errors(include_url=False)})
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid stack file: {e}")

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(
                f"service {name} must be a mapping, got {type(spec).__name__}", {"service": name}
            )
        if not spec.get("image"):
            raise ConfigurationError(f"service {name} has no image", {"service": name})

        # Ports, compose style: "host:container" or "container"
        ports: Dict[int, Optional[int]] = {}
        for p in spec.get("ports", []):
            if isinstance(p, dict):
                ports[int(p["target"])] = int(p["published"]) if p.get("published") else None
                continue
            parts = str(p).split(":")
            if len(parts) == 2:
                ports[int(parts[1])] = int(parts[0])
            else:
                ports[int(parts[0])] = None

        # Environment
        environment: Dict[str, str] = {}
        env_spec = spec.get("environment", {})
        if isinstance(env_spec, list):
            for e in env_spec:
                if "=" in e:
                    k, v = e.split("=", 1)
                    environment[k] = v
        elif isinstance(env_spec, dict):
            environment = {k: "" if v is None else str(v) for k, v in env_spec.items()}

        build = spec.get("build")
        build_context = build.get("context") if isinstance(build, dict) else build
        dockerfile = build.get("dockerfile") if isinstance(build, dict) else None

        depends_on = spec.get("depends_on", [])
        if isinstance(depends_on, dict):
            depends_on = list(depends_on.keys())

        return ServiceDefinition(
            name=name,
            image_name=spec["image"],
            build_context=build_context,
            dockerfile_path=dockerfile,
            command=self._to_list(spec.get("command")),
            environment=environment,
            ports=ports,
            internal_port=spec.get("internal_port"),
            networks=self._to_list(spec.get("networks")),
            health_check=self._parse_health_check(spec.get("healthcheck")),
            depends_on=list(depends_on),
            labels={k: str(v) for k, v in (spec.get("labels") or {}).items()},
        )

    def _parse_health_check(self, spec: Optional[Dict[str, Any]]) -> Optional[HealthCheck]:
        if not spec:
            return None
        values: Dict[str, Any] = {"test": self._to_list(spec.get("test"))}
        for key in ("interval", "timeout", "start_period"):
            if key in spec:
                values[key] = parse_duration(spec[key])
        if "retries" in spec:
            values["retries"] = int(spec["retries"])
        return HealthCheck(**values)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
