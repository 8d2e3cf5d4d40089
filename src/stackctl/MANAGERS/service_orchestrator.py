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
Reconciliation of a stack topology: bring up, tear down, or plan.
"""
import math
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ..errors import ConfirmationRequiredError, ReconcileInProgressError, RuntimeOperationError
from ..MODELS.orchestration_config import Topology
from ..MODELS.plan import (
    Action,
    Mode,
    NetworkResult,
    Outcome,
    PlannedAction,
    ReconcileResult,
    ServiceResult,
)
from ..MODELS.service_definition import ServiceDefinition, ServiceState
from ..MODELS.settings import Settings
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIME.base import (
    ContainerSpec,
    ContainerStatus,
    LABEL_CONFIG_HASH,
    LABEL_SERVICE,
    LABEL_STACK,
    RuntimeBackend,
)
from ..UTILS.logging import get_logger
from .network_manager import NetworkManager
from .state_inspector import StateInspector

logger = get_logger(__name__)

# One writer per deployment unit within this process.
_DEPLOYMENT_LOCKS: Dict[str, threading.Lock] = {}
_DEPLOYMENT_LOCKS_GUARD = threading.Lock()


def _last_state(retry_state: RetryCallState) -> ServiceState:
    outcome = retry_state.outcome
    if outcome.failed:
        raise outcome.exception()
    return outcome.result()


class ServiceOrchestrator:
    """
    Moves the runtime towards a desired topology.

    Service mutations go through :meth:`_mutate` and network mutations
    through :class:`NetworkManager`. Dry-run reaches neither, so a dry run
    cannot change anything.
    """
    def __init__(
        self,
        backend: RuntimeBackend,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        :param backend: The runtime collaborator.
        :param settings: Immutable settings; defaults are used when omitted.
        :param sleep: Sleep function used while waiting for services to come up.
        """
        self.backend = backend
        self.settings = settings or Settings()
        self.inspector = StateInspector(backend)
        self.network_manager = NetworkManager(backend)
        self.resolver = DependencyResolver()
        self._sleep = sleep

    # -- public API ----------------------------------------------------

    def reconcile(
        self,
        topology: Topology,
        mode: Mode,
        confirmation: Optional[str] = None,
        destroy: bool = False,
    ) -> ReconcileResult:
        """
        Reconciles the runtime with ``topology``.

        :param topology: Desired services and network.
        :param mode: ``APPLY`` brings everything up, ``DESTROY`` tears it down,
            ``DRY_RUN`` only computes the plan.
        :param confirmation: Must equal the configured destroy phrase for ``DESTROY``.
        :param destroy: With ``DRY_RUN``, plan a teardown instead of a bring-up.
        :raises ConfirmationRequiredError: Destroy without a valid token; nothing is touched.
        :raises RuntimeUnavailableError: The runtime is unreachable.
        """
        if mode == Mode.DESTROY and confirmation != self.settings.destroy_phrase:
            raise ConfirmationRequiredError(
                "destroy requires the confirmation phrase",
                {"topology": topology.name},
            )

        order = self.resolver.resolve_order(topology)

        with self._deployment_lock(topology.name):
            self.inspector.check_backend()
            if mode == Mode.DRY_RUN:
                return self._dry_run(topology, order, destroy)
            if mode == Mode.APPLY:
                return self._apply(topology, order)
            return self._destroy(topology, list(reversed(order)))

    def plan(self, topology: Topology, destroy: bool = False) -> List[PlannedAction]:
        """Computes the action plan without touching anything."""
        order = self.resolver.resolve_order(topology)
        if destroy:
            order.reverse()
        statuses = self.inspector.snapshot(order)
        planned = []
        for name in order:
            svc = topology.services[name]
            if destroy:
                planned.append(self._plan_destroy(svc, statuses[name]))
            else:
                spec = self.container_spec(topology, svc)
                planned.append(self._plan_apply(svc, statuses[name], spec.config_hash))
        return planned

    def ps(self, topology: Topology) -> Dict[str, ServiceState]:
        """
        Returns the status of all services.
        """
        return {name: self.inspector.status(name) for name in topology.services}

    def container_spec(self, topology: Topology, svc: ServiceDefinition) -> ContainerSpec:
        """Creation spec for ``svc`` including discovery bindings and tracking labels."""
        env = self.network_manager.get_service_discovery_env(svc, topology)
        labels = dict(svc.labels)
        labels[LABEL_STACK] = topology.name
        labels[LABEL_SERVICE] = svc.name
        labels[LABEL_CONFIG_HASH] = svc.config_hash(env)
        return ContainerSpec(
            name=svc.name,
            image=svc.image_name,
            network=topology.network,
            environment=env,
            ports=dict(svc.ports),
            command=tuple(svc.command),
            labels=labels,
        )

    # -- planning ------------------------------------------------------

    def _plan_apply(self, svc: ServiceDefinition, status: ContainerStatus, desired_hash: Optional[str]) -> PlannedAction:
        state = status.state
        if state == ServiceState.RUNNING:
            reason = "already running"
            if status.config_hash and status.config_hash != desired_hash:
                reason += " (configuration drift; stop it to have it recreated)"
            action = Action.NOOP
        elif state == ServiceState.STOPPED:
            if status.config_hash is None:
                action, reason = Action.RECREATE, "stopped with unknown configuration"
            elif status.config_hash != desired_hash:
                action, reason = Action.RECREATE, "stopped and configuration changed"
            else:
                action, reason = Action.START, "stopped"
        elif state == ServiceState.UNHEALTHY:
            action, reason = Action.RESTART, "unhealthy"
        else:
            action, reason = Action.CREATE, "absent"
        return PlannedAction(service=svc.name, action=action, current_state=state, reason=reason)

    def _plan_destroy(self, svc: ServiceDefinition, status: ContainerStatus) -> PlannedAction:
        state = status.state
        if state in (ServiceState.RUNNING, ServiceState.UNHEALTHY):
            action, reason = Action.STOP, state.value
        elif state == ServiceState.STOPPED:
            action, reason = Action.REMOVE, "stopped"
        else:
            action, reason = Action.NOOP, "already absent"
        return PlannedAction(service=svc.name, action=action, current_state=state, reason=reason)

    # -- modes ---------------------------------------------------------

    def _dry_run(self, topology: Topology, order: List[str], destroy: bool) -> ReconcileResult:
        plan = self.plan(topology, destroy=destroy)
        results = [
            ServiceResult(
                service=p.service,
                action=p.action,
                outcome=Outcome.PLANNED if p.mutates else Outcome.OK,
                state=p.current_state,
            )
            for p in plan
        ]
        exists = self.network_manager.exists(topology.network)
        if destroy:
            net_action = "remove" if exists else "noop"
        else:
            net_action = "noop" if exists else "create"
        network = NetworkResult(
            name=topology.network,
            action=net_action,
            outcome=Outcome.PLANNED if net_action != "noop" else Outcome.OK,
        )
        for p in plan:
            logger.info("planned", service=p.service, action=p.action.value, reason=p.reason)
        return ReconcileResult(
            topology=topology.name, mode=Mode.DRY_RUN, destroy=destroy,
            plan=plan, results=results, network=network,
        )

    def _apply(self, topology: Topology, order: List[str]) -> ReconcileResult:
        result = ReconcileResult(topology=topology.name, mode=Mode.APPLY)

        try:
            network = self.network_manager.ensure_network(topology.network)
            result.network = NetworkResult(
                name=network.name, action="create" if network.created else "noop"
            )
        except RuntimeOperationError as e:
            logger.error("network provisioning failed", network=topology.network, error=str(e))
            result.network = NetworkResult(
                name=topology.network, action="create", outcome=Outcome.FAILED, error=str(e)
            )
            for name in order:
                result.results.append(ServiceResult(
                    service=name, action=Action.NOOP, outcome=Outcome.BLOCKED,
                    error=f"network {topology.network} unavailable",
                ))
            return result

        outcomes: Dict[str, Outcome] = {}
        for name in order:
            svc = topology.services[name]
            spec = self.container_spec(topology, svc)
            status = self.inspector.inspect(name)
            planned = self._plan_apply(svc, status, spec.config_hash)
            result.plan.append(planned)

            service_result = self._apply_one(svc, spec, planned, outcomes)
            outcomes[name] = service_result.outcome
            result.results.append(service_result)

        logger.info("apply finished", **result.summary())
        return result

    def _apply_one(
        self,
        svc: ServiceDefinition,
        spec: ContainerSpec,
        planned: PlannedAction,
        outcomes: Dict[str, Outcome],
    ) -> ServiceResult:
        blockers = [d for d in svc.depends_on if outcomes.get(d) != Outcome.OK]
        if not blockers:
            # Dependencies are checked again right before acting on the dependent.
            blockers = [d for d in svc.depends_on if self.inspector.status(d) != ServiceState.RUNNING]
        if blockers:
            logger.warning("service blocked", service=svc.name, waiting_on=blockers)
            return ServiceResult(
                service=svc.name, action=planned.action, outcome=Outcome.BLOCKED,
                state=planned.current_state,
                error=f"dependencies not running: {', '.join(blockers)}",
            )

        if not planned.mutates:
            logger.info("service up to date", service=svc.name, reason=planned.reason)
            return ServiceResult(
                service=svc.name, action=planned.action, outcome=Outcome.OK, state=planned.current_state
            )

        logger.info("applying", service=svc.name, action=planned.action.value, reason=planned.reason)
        try:
            self._execute(planned, spec)
            state = self._wait_until_running(svc)
        except RuntimeOperationError as e:
            logger.error("service failed", service=svc.name, action=planned.action.value, error=str(e))
            return ServiceResult(
                service=svc.name, action=planned.action, outcome=Outcome.FAILED, error=str(e)
            )

        if state != ServiceState.RUNNING:
            logger.error("service did not come up", service=svc.name, state=state.value)
            return ServiceResult(
                service=svc.name, action=planned.action, outcome=Outcome.FAILED, state=state,
                error=f"service did not reach running (last state: {state.value})",
            )
        return ServiceResult(service=svc.name, action=planned.action, outcome=Outcome.OK, state=state)

    def _destroy(self, topology: Topology, order: List[str]) -> ReconcileResult:
        result = ReconcileResult(topology=topology.name, mode=Mode.DESTROY, destroy=True)

        for name in order:
            svc = topology.services[name]
            planned = self._plan_destroy(svc, self.inspector.inspect(name))
            result.plan.append(planned)
            if planned.mutates:
                logger.info("tearing down", service=name, action=planned.action.value)
            try:
                self._execute(planned, None)
            except RuntimeOperationError as e:
                logger.error("teardown failed", service=name, error=str(e))
                result.results.append(ServiceResult(
                    service=name, action=planned.action, outcome=Outcome.FAILED, error=str(e)
                ))
                continue
            result.results.append(ServiceResult(
                service=name, action=planned.action, outcome=Outcome.OK, state=ServiceState.ABSENT
            ))

        referencing = [
            r.service for r in result.results
            if r.outcome != Outcome.OK and topology.network in topology.services[r.service].networks
        ]
        if referencing:
            result.network = NetworkResult(
                name=topology.network, action="keep",
                error=f"still referenced by: {', '.join(referencing)}",
            )
        else:
            try:
                removed = self.network_manager.remove_network(topology.network)
                result.network = NetworkResult(name=topology.network, action="remove" if removed else "noop")
            except RuntimeOperationError as e:
                logger.error("network removal failed", network=topology.network, error=str(e))
                result.network = NetworkResult(
                    name=topology.network, action="remove", outcome=Outcome.FAILED, error=str(e)
                )

        logger.info("destroy finished", **result.summary())
        return result

    # -- execution -----------------------------------------------------

    def _mutate(self, operation: str, *args) -> None:
        logger.debug("runtime call", operation=operation, target=getattr(args[0], "name", args[0]))
        getattr(self.backend, operation)(*args)

    def _execute(self, planned: PlannedAction, spec: Optional[ContainerSpec]) -> None:
        if not planned.is_valid():
            raise RuntimeOperationError(
                f"refusing invalid transition for {planned.service}: {planned.transitions()}"
            )
        name = planned.service
        action = planned.action
        if action == Action.CREATE:
            self._mutate("create", spec)
        elif action == Action.START:
            try:
                self._mutate("start", name)
            except RuntimeOperationError as e:
                logger.warning("start failed, recreating", service=name, error=str(e))
                self._mutate("remove", name)
                self._mutate("create", spec)
        elif action == Action.RECREATE:
            self._mutate("remove", name)
            self._mutate("create", spec)
        elif action == Action.RESTART:
            self._mutate("stop", name)
            self._mutate("start", name)
        elif action == Action.STOP:
            self._mutate("stop", name)
            self._mutate("remove", name)
        elif action == Action.REMOVE:
            self._mutate("remove", name)

    def _wait_until_running(self, svc: ServiceDefinition) -> ServiceState:
        """
        Polls the inspector until the service reports running or its
        readiness budget is spent; returns the last observed state.
        """
        interval = self.settings.ready_poll_interval
        budget = svc.health_check.readiness_budget() if svc.health_check else self.settings.ready_timeout
        attempts = max(1, math.ceil(budget / interval) + 1)
        retrying = Retrying(
            stop=stop_after_delay(budget) | stop_after_attempt(attempts),
            wait=wait_fixed(interval),
            retry=(
                retry_if_result(lambda state: state != ServiceState.RUNNING)
                | retry_if_exception_type(RuntimeOperationError)
            ),
            retry_error_callback=_last_state,
            sleep=self._sleep,
        )
        return retrying(self.inspector.status, svc.name)

    @contextmanager
    def _deployment_lock(self, unit: str) -> Iterator[None]:
        with _DEPLOYMENT_LOCKS_GUARD:
            lock = _DEPLOYMENT_LOCKS.setdefault(unit, threading.Lock())
        timeout = self.settings.lock_timeout
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise ReconcileInProgressError(
                f"another reconcile of {unit} is in progress", {"topology": unit}
            )
        try:
            yield
        finally:
            lock.release()

    def endpoints(self, topology: Topology) -> List[Tuple[str, str]]:
        """Host-reachable URLs of services with published ports."""
        urls = []
        for name, svc in topology.services.items():
            for host_port in svc.published_ports().values():
                urls.append((name, f"http://localhost:{host_port}"))
        return urls
