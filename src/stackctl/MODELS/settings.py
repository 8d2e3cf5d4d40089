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
Process-wide settings, built once at startup and passed explicitly.
"""
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DESTROY_PHRASE = "destroy-app"


def _env_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings(BaseModel):
    """
    Immutable runtime settings.

    Nothing below the CLI reads the environment; the CLI builds one
    ``Settings`` with :meth:`from_env` and hands it to each component.
    """

    model_config = ConfigDict(frozen=True)

    stack_file: str = "stack.yaml"
    env_file: Optional[str] = ".env"
    log_level: str = "info"
    log_json: bool = False
    destroy_phrase: str = DEFAULT_DESTROY_PHRASE
    ready_timeout: float = Field(60.0, gt=0)
    ready_poll_interval: float = Field(1.0, gt=0)
    lock_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str], **overrides: Any) -> "Settings":
        """
        Build settings from ``STACKCTL_*`` variables; explicit overrides win.

        :param environ: The environment mapping to read (usually ``os.environ``).
        :param overrides: Values coming from CLI flags. ``None`` means "not given".
        """
        values: Dict[str, Any] = {}
        if "STACKCTL_FILE" in environ:
            values["stack_file"] = environ["STACKCTL_FILE"]
        if "STACKCTL_ENV_FILE" in environ:
            values["env_file"] = environ["STACKCTL_ENV_FILE"] or None
        if "STACKCTL_LOG_LEVEL" in environ:
            values["log_level"] = environ["STACKCTL_LOG_LEVEL"]
        if "STACKCTL_LOG_JSON" in environ:
            values["log_json"] = _env_bool(environ["STACKCTL_LOG_JSON"])
        if "STACKCTL_DESTROY_PHRASE" in environ:
            values["destroy_phrase"] = environ["STACKCTL_DESTROY_PHRASE"]
        if "STACKCTL_READY_TIMEOUT" in environ:
            values["ready_timeout"] = float(environ["STACKCTL_READY_TIMEOUT"])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
