from __future__ import annotations

import posixpath
from typing import Iterable


def _normalize_extension(entry: str) -> str:
    entry = entry.strip().lower()
    if not entry:
        return ""
    return entry if entry.startswith(".") else f".{entry}"


class RoutePolicy:
    """Decides which request paths skip authentication.

    File extensions are checked first (``.css`` or ``css`` both whitelist
    ``/app/main.css``). Route entries ending in ``*`` match anything below the
    prefix but not the prefix itself; other entries match exactly, ignoring a
    trailing slash.
    """

    def __init__(
        self,
        unprotected_routes: Iterable[str] = (),
        whitelist_file_types: Iterable[str] = (),
    ) -> None:
        self.unprotected_routes = [route for route in unprotected_routes if route]
        self.whitelist_extensions = {
            ext for ext in (_normalize_extension(e) for e in whitelist_file_types) if ext
        }

    def _extension_allowed(self, path: str) -> bool:
        if not self.whitelist_extensions:
            return False
        _, extension = posixpath.splitext(path)
        return extension.lower() in self.whitelist_extensions

    @staticmethod
    def _route_matches(route: str, path: str) -> bool:
        if route.endswith("*"):
            prefix = route[:-1]
            if not path.startswith(prefix):
                return False
            rest = path[len(prefix):]
            return len(rest) > 0 and rest != "/"
        if path == route:
            return True
        normalized_route = route if route.endswith("/") else route + "/"
        normalized_path = path if path.endswith("/") else path + "/"
        return normalized_path == normalized_route

    def is_unprotected_route(self, path: str) -> bool:
        if self._extension_allowed(path):
            return True
        return any(self._route_matches(route, path) for route in self.unprotected_routes)
