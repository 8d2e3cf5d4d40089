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
Active health probing of upstream members, feeding the pool's membership.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from ..MODELS.routing_config import UpstreamGroup
from ..PROXY.upstream_pool import UpstreamPoolManager
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProbeResult:
    """Outcome of the latest probe of one member."""

    healthy: bool
    status_code: Optional[int] = None
    error: str = ""
    checked_at: Optional[str] = None


class HealthMonitor:
    """
    Probes every member of every upstream group with an HTTP GET on the
    group's health path and reports the result to the pool.

    One daemon thread per (group, member) pair; each thread only touches
    its own member's health.
    """

    def __init__(
        self,
        groups: Iterable[UpstreamGroup],
        pool: UpstreamPoolManager,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initializes the health monitor.

        :param groups: Upstream groups to probe.
        :param pool: Pool that receives the health marks.
        :param transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.groups = list(groups)
        self.pool = pool
        self._client = httpx.Client(transport=transport)
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._results: Dict[Tuple[str, str], ProbeResult] = {}

    def start(self) -> None:
        """
        Starts one probing thread per member.
        """
        self._stop.clear()
        for group in self.groups:
            for member in group.members:
                thread = threading.Thread(
                    target=self._probe_loop,
                    args=(group, member),
                    name=f"probe-{group.name}-{member}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)

    def stop(self) -> None:
        """
        Stops all probing threads and closes the HTTP client.

        Waits long enough for a probe already in flight to hit its timeout.
        """
        self._stop.set()
        join_timeout = max((g.probe_timeout for g in self.groups), default=0.0) + 1.0
        for thread in self._threads:
            thread.join(timeout=join_timeout)
        self._threads = []
        self._client.close()

    def get_result(self, group: str, member: str) -> Optional[ProbeResult]:
        return self._results.get((group, member))

    def probe_once(self) -> Dict[Tuple[str, str], ProbeResult]:
        """Probes every member once, synchronously."""
        for group in self.groups:
            for member in group.members:
                self.probe(group, member)
        return dict(self._results)

    def probe(self, group: UpstreamGroup, member: str) -> ProbeResult:
        """
        Runs a single probe and marks the member in the pool.
        A timeout or a non-2xx answer counts as a failure.
        """
        url = f"http://{member}{group.health_path}"
        try:
            response = self._client.get(url, timeout=group.probe_timeout)
            healthy = response.is_success
            result = ProbeResult(
                healthy=healthy,
                status_code=response.status_code,
                error="" if healthy else f"status {response.status_code}",
            )
        except httpx.TimeoutException:
            result = ProbeResult(healthy=False, error="probe timed out")
        except httpx.HTTPError as e:
            result = ProbeResult(healthy=False, error=str(e))

        result.checked_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        previous = self._results.get((group.name, member))
        if previous is None or previous.healthy != result.healthy:
            logger.info(
                "probe result changed", group=group.name, member=member,
                healthy=result.healthy, error=result.error,
            )
        self._results[(group.name, member)] = result
        self.pool.mark_health(member, result.healthy, group_name=group.name)
        return result

    def _probe_loop(self, group: UpstreamGroup, member: str) -> None:
        while not self._stop.is_set():
            try:
                self.probe(group, member)
            except RuntimeError:
                # httpx refuses requests on a client closed by stop().
                if self._stop.is_set():
                    break
                raise
            self._stop.wait(group.probe_interval)
