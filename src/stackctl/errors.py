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
Error taxonomy shared by the lifecycle and request paths.
"""
from typing import Any, Dict, Optional


class StackctlError(Exception):
    """Base exception carrying a stable code and structured details."""

    code = "STACKCTL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in plan reports and CLI output."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(StackctlError):
    """Invalid stack, routing or pool configuration."""

    code = "CONFIGURATION_ERROR"


class DependencyCycleError(ConfigurationError):
    code = "DEPENDENCY_CYCLE"


class PrerequisiteError(StackctlError):
    """A fatal environment problem; nothing may be mutated."""

    code = "PREREQUISITE_ERROR"


class RuntimeUnavailableError(PrerequisiteError):
    """The runtime backend cannot be reached."""

    code = "RUNTIME_UNAVAILABLE"


class RuntimeOperationError(StackctlError):
    """A single runtime call failed for one service or network."""

    code = "RUNTIME_OPERATION_FAILED"


class ConfirmationRequiredError(StackctlError):
    """A destructive operation was requested without the confirmation token."""

    code = "CONFIRMATION_REQUIRED"


class ReconcileInProgressError(StackctlError):
    code = "RECONCILE_IN_PROGRESS"


class AdmissionError(StackctlError):
    """A request was refused before reaching an upstream."""

    code = "ADMISSION_REJECTED"
    status_code = 503


class RateLimitedError(AdmissionError):
    code = "RATE_LIMITED"
    status_code = 429


class GroupUnavailableError(AdmissionError):
    """Every member of an upstream group is unhealthy."""

    code = "GROUP_UNAVAILABLE"
    status_code = 503
