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
Connection pooling and health-driven membership for upstream groups.
"""
import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional

import httpx

from ..errors import ConfigurationError, GroupUnavailableError
from ..MODELS.routing_config import UpstreamGroup
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class UpstreamConnection:
    """
    A reusable client bound to one upstream member.
    """
    def __init__(self, group: str, member: str, client: httpx.Client):
        self.group = group
        self.member = member
        self.client = client
        self.closed = False

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self.client.request(method, path, **kwargs)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.client.close()

    def __repr__(self) -> str:
        return f"UpstreamConnection({self.group}/{self.member})"


ConnectionFactory = Callable[[UpstreamGroup, str], UpstreamConnection]


def default_connection_factory(group: UpstreamGroup, member: str) -> UpstreamConnection:
    client = httpx.Client(base_url=f"http://{member}", timeout=group.request_timeout)
    return UpstreamConnection(group.name, member, client)


class _Member:
    def __init__(self, address: str):
        self.address = address
        self.healthy = True
        self.success_streak = 0
        self.idle: Deque[UpstreamConnection] = deque()


class _Group:
    def __init__(self, config: UpstreamGroup):
        self.config = config
        self.members = [_Member(m) for m in config.members]
        self.next_index = 0
        self.lock = threading.Lock()

    def member(self, address: str) -> Optional[_Member]:
        for m in self.members:
            if m.address == address:
                return m
        return None


class UpstreamPoolManager:
    """
    Hands out connections to healthy members of a group in round-robin order.

    Each member keeps at most ``keepalive`` idle connections; surplus
    connections are closed when released. A member marked unhealthy leaves
    the rotation at once and returns after ``healthy_threshold`` consecutive
    healthy marks.
    """
    def __init__(
        self,
        groups: Iterable[UpstreamGroup],
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self._groups: Dict[str, _Group] = {g.name: _Group(g) for g in groups}
        self._factory = connection_factory or default_connection_factory

    def _group(self, name: str) -> _Group:
        group = self._groups.get(name)
        if group is None:
            raise ConfigurationError(f"unknown upstream group {name!r}", {"group": name})
        return group

    def add_groups(self, groups: Iterable[UpstreamGroup]) -> List[str]:
        """
        Registers groups not known yet. Known groups keep their members,
        health state and idle connections.

        :return: Names of the groups added.
        """
        added = {g.name: _Group(g) for g in groups if g.name not in self._groups}
        if added:
            self._groups = {**self._groups, **added}
            logger.info("upstream groups added", groups=sorted(added))
        return sorted(added)

    def group_config(self, name: str) -> UpstreamGroup:
        return self._group(name).config

    def acquire(self, group_name: str) -> UpstreamConnection:
        """
        Takes a connection to the next healthy member.

        :raises ConfigurationError: For an unknown group.
        :raises GroupUnavailableError: When no member is healthy.
        """
        group = self._group(group_name)
        with group.lock:
            count = len(group.members)
            chosen = None
            for offset in range(count):
                candidate = group.members[(group.next_index + offset) % count]
                if candidate.healthy:
                    chosen = candidate
                    group.next_index = (group.next_index + offset + 1) % count
                    break
            if chosen is None:
                raise GroupUnavailableError(
                    f"no healthy members in upstream group {group_name}", {"group": group_name}
                )
            if chosen.idle:
                return chosen.idle.pop()

        return self._factory(group.config, chosen.address)

    def release(self, connection: UpstreamConnection, reusable: bool = True) -> None:
        """
        Returns a connection after use.

        :param reusable: False after a timeout or transport error; the
            connection is closed instead of pooled.
        """
        group = self._groups.get(connection.group)
        keep = False
        if group is not None and reusable and not connection.closed:
            with group.lock:
                member = group.member(connection.member)
                if member is not None and member.healthy and len(member.idle) < group.config.keepalive:
                    member.idle.append(connection)
                    keep = True
        if not keep:
            connection.close()

    def mark_health(self, member: str, healthy: bool, group_name: Optional[str] = None) -> None:
        """
        Records a probe result for ``member`` in every group that lists it,
        or only in ``group_name`` when given.
        """
        groups = [self._group(group_name)] if group_name else list(self._groups.values())
        for group in groups:
            stale: List[UpstreamConnection] = []
            with group.lock:
                m = group.member(member)
                if m is None:
                    continue
                if not healthy:
                    m.success_streak = 0
                    if m.healthy:
                        m.healthy = False
                        stale.extend(m.idle)
                        m.idle.clear()
                        logger.warning("upstream member down", group=group.config.name, member=member)
                elif not m.healthy:
                    m.success_streak += 1
                    if m.success_streak >= group.config.healthy_threshold:
                        m.healthy = True
                        m.success_streak = 0
                        logger.info("upstream member back", group=group.config.name, member=member)
            for conn in stale:
                conn.close()

    def healthy_members(self, group_name: str) -> List[str]:
        group = self._group(group_name)
        with group.lock:
            return [m.address for m in group.members if m.healthy]

    def idle_count(self, group_name: str, member: str) -> int:
        group = self._group(group_name)
        with group.lock:
            m = group.member(member)
            return len(m.idle) if m else 0

    def close(self) -> None:
        """Closes every pooled connection."""
        for group in self._groups.values():
            with group.lock:
                conns = [c for m in group.members for c in m.idle]
                for m in group.members:
                    m.idle.clear()
            for conn in conns:
                conn.close()
