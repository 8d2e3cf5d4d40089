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
Location matching for inbound request paths.
"""
import re
import threading
from typing import Dict, List, Pattern, Tuple

from ..MODELS.routing_config import MatchKind, ProxyConfig, Route


class RoutingTable:
    """
    Immutable lookup structure built from a list of routes.

    Precedence: exact match, then the longest literal prefix (earlier
    declaration wins among equal lengths), then regex routes in declaration
    order.
    """
    def __init__(self, routes: List[Route]):
        """
        :param routes: Routes in declaration order.
        """
        exact: Dict[str, Route] = {}
        prefixes: List[Route] = []
        regexes: List[Tuple[Pattern, Route]] = []
        for route in routes:
            if route.kind == MatchKind.EXACT:
                exact.setdefault(route.literal, route)
            elif route.kind == MatchKind.PREFIX:
                prefixes.append(route)
            else:
                regexes.append((re.compile(route.pattern), route))

        # sorted() is stable, so declaration order survives among equal lengths
        self._exact = exact
        self._prefixes = tuple(sorted(prefixes, key=lambda r: len(r.literal), reverse=True))
        self._regexes = tuple(regexes)
        self.routes = tuple(routes)

    @classmethod
    def from_config(cls, config: ProxyConfig) -> "RoutingTable":
        return cls(config.routes)

    def match(self, path: str) -> Route:
        """
        Finds the route for ``path``.

        :param path: Request path; a query string is ignored.
        :return: The winning route.
        :raises LookupError: If nothing matches, which a validated config's
            catch-all route rules out.
        """
        path = path.split("?", 1)[0] or "/"

        route = self._exact.get(path)
        if route is not None:
            return route

        for route in self._prefixes:
            if path.startswith(route.literal):
                return route

        for pattern, route in self._regexes:
            if pattern.search(path):
                return route

        raise LookupError(f"no route matches {path!r}")


class RouteTableHolder:
    """
    Publishes the current routing table.

    Readers take ``current`` without locking; ``reload`` builds a new table
    and swaps the reference in one assignment, so a request sees either the
    old table or the new one.
    """
    def __init__(self, config: ProxyConfig):
        self._table = RoutingTable.from_config(config)
        self._reload_lock = threading.Lock()

    @property
    def current(self) -> RoutingTable:
        return self._table

    def match(self, path: str) -> Route:
        return self._table.match(path)

    def reload(self, config: ProxyConfig) -> RoutingTable:
        table = RoutingTable.from_config(config)
        with self._reload_lock:
            self._table = table
        return table
