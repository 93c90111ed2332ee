"""Cache key derivation and cacheability rules for request paths."""

from __future__ import annotations

from typing import Iterable

from starlette.datastructures import URL

from ..common.settings import DEFAULT_NON_CACHEABLE_PREFIXES


class PathClassifier:
    """Decides whether a request path is exempt from caching.

    Matching is a case-sensitive prefix test against an ordered list, so
    ``/wp-admin`` also covers ``/wp-admin/edit.php`` and ``/wp-admin-ajax``.
    """

    def __init__(self, prefixes: Iterable[str] = DEFAULT_NON_CACHEABLE_PREFIXES) -> None:
        self._prefixes = tuple(prefixes)

    @property
    def prefixes(self) -> tuple[str, ...]:
        return self._prefixes

    def is_non_cacheable(self, path: str) -> bool:
        return path.startswith(self._prefixes)


def cache_key(url: URL | str) -> str:
    """Return ``hostname + path + search`` for the request URL.

    The search component keeps its leading ``?`` and is empty when the request
    has no query string. The port is not part of the key.
    """
    if isinstance(url, str):
        url = URL(url)
    search = f"?{url.query}" if url.query else ""
    return f"{url.hostname or ''}{url.path}{search}"
