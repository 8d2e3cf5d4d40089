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
Action plans and structured reconciliation results.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .service_definition import ServiceState


class Mode(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"
    DRY_RUN = "dry-run"


class Action(str, Enum):
    """
    What the orchestrator does to one service.
    """
    NOOP = "noop"
    CREATE = "create"        # absent -> running
    START = "start"          # stopped -> running
    RECREATE = "recreate"    # stopped -> absent -> running
    RESTART = "restart"      # unhealthy -> stopped -> running
    STOP = "stop"            # running -> stopped -> absent (destroy)
    REMOVE = "remove"        # stopped -> absent (destroy)


# States each action passes through, in order, starting from the current one.
ACTION_PATHS = {
    Action.NOOP: [],
    Action.CREATE: [ServiceState.RUNNING],
    Action.START: [ServiceState.RUNNING],
    Action.RECREATE: [ServiceState.ABSENT, ServiceState.RUNNING],
    Action.RESTART: [ServiceState.STOPPED, ServiceState.RUNNING],
    Action.STOP: [ServiceState.STOPPED, ServiceState.ABSENT],
    Action.REMOVE: [ServiceState.ABSENT],
}


class Outcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    BLOCKED = "blocked"
    PLANNED = "planned"


class PlannedAction(BaseModel):
    service: str
    action: Action
    current_state: ServiceState
    reason: str = ""

    @property
    def mutates(self) -> bool:
        return self.action != Action.NOOP

    def transitions(self) -> List[Tuple[ServiceState, ServiceState]]:
        """State edges this action walks through."""
        edges = []
        current = self.current_state
        for nxt in ACTION_PATHS[self.action]:
            edges.append((current, nxt))
            current = nxt
        return edges

    def is_valid(self) -> bool:
        return all(ServiceState.can_transition(a, b) for a, b in self.transitions())


class ServiceResult(BaseModel):
    service: str
    action: Action
    outcome: Outcome
    state: Optional[ServiceState] = None
    error: Optional[str] = None


class NetworkResult(BaseModel):
    name: str
    action: str  # "create", "remove", "noop", "keep"
    outcome: Outcome = Outcome.OK
    error: Optional[str] = None


class ReconcileResult(BaseModel):
    """
    Outcome of one reconcile call: the plan plus what happened to each service.
    """
    topology: str
    mode: Mode
    destroy: bool = False
    plan: List[PlannedAction] = []
    results: List[ServiceResult] = []
    network: Optional[NetworkResult] = None

    def _names(self, outcome: Outcome) -> List[str]:
        return [r.service for r in self.results if r.outcome == outcome]

    @property
    def succeeded(self) -> List[str]:
        return self._names(Outcome.OK)

    @property
    def failed(self) -> List[str]:
        return self._names(Outcome.FAILED)

    @property
    def blocked(self) -> List[str]:
        return self._names(Outcome.BLOCKED)

    @property
    def ok(self) -> bool:
        network_ok = self.network is None or self.network.outcome != Outcome.FAILED
        return not self.failed and not self.blocked and network_ok

    def result_for(self, service: str) -> Optional[ServiceResult]:
        for r in self.results:
            if r.service == service:
                return r
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "topology": self.topology,
            "mode": self.mode.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "blocked": self.blocked,
        }
