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
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, List

from ..errors import ConfigurationError

# ${VAR}, ${VAR:-default}, ${VAR:+value}, ${VAR:?message}; $$ is a literal $
_PATTERN = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([-+?])([^}]*))?\}")


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and ${VAR:?message}.
    """
    def __init__(self, context: Dict[str, str]):
        """
        :param context: Variables available to templates.
        """
        self.context = context
        self.missing: List[str] = []

    def interpolate(self, template: str) -> str:
        """
        Interpolates environment variables in the template string.

        An unset ``${VAR}`` becomes an empty string and is remembered in
        ``missing``.

        :param template: The string containing ${VAR} placeholders.
        :return: The interpolated string.
        :raises ConfigurationError: If a ``${VAR:?message}`` variable is unset or empty.
        """
        def replace(match: "re.Match") -> str:
            if match.group(0) == "$$":
                return "$"
            var_name, modifier, alt_value = match.group(1), match.group(2), match.group(3)
            value = self.context.get(var_name)

            if modifier == "-":
                return value if value else alt_value
            if modifier == "+":
                return alt_value if value else ""
            if modifier == "?":
                if not value:
                    raise ConfigurationError(
                        f"{var_name}: {alt_value or 'required variable is not set'}",
                        {"variable": var_name},
                    )
                return value
            if value is None:
                self.missing.append(var_name)
                return ""
            return value

        return _PATTERN.sub(replace, template)

    def interpolate_tree(self, data: Any) -> Any:
        """
        Interpolates every string inside parsed YAML data. Mapping keys are
        left untouched.
        """
        if isinstance(data, str):
            return self.interpolate(data)
        if isinstance(data, dict):
            return {k: self.interpolate_tree(v) for k, v in data.items()}
        if isinstance(data, list):
            return [self.interpolate_tree(v) for v in data]
        return data
