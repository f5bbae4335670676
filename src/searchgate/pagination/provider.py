"""
Adapter between the opaque search provider and the pagination orchestrator.
"""

from __future__ import annotations

import inspect
from typing import Any, Callable, Mapping, Optional, Union

import structlog

from searchgate.protocols import SearchPage, SearchProviderProtocol
from searchgate.recovery.errors import ProviderResponseError

logger = structlog.get_logger(__name__)

_TOKEN_FIELDS = ("continuation_token", "continuationToken", "vqd", "token")


def _field(response: Any, name: str) -> Any:
    if isinstance(response, Mapping):
        return response.get(name)
    return getattr(response, name, None)


def to_search_page(response: Any) -> SearchPage:
    """Normalize a provider response into a ``SearchPage``."""
    if isinstance(response, SearchPage):
        return response
    if response is None:
        raise ProviderResponseError("provider returned no response")

    results = _field(response, "results")
    if results is None:
        raise ProviderResponseError(f"response of type {type(response).__name__} has no results")
    if isinstance(results, tuple):
        results = list(results)
    if not isinstance(results, list):
        raise ProviderResponseError(f"results must be a list, got {type(results).__name__}")

    token = None
    for name in _TOKEN_FIELDS:
        value = _field(response, name)
        if value:
            token = str(value)
            break

    return SearchPage(results=results, continuation_token=token)


class ProviderAdapter:
    """
    Wraps a provider so the orchestrator sees one narrow capability:
    fetch a page, optionally continued by a token.

    The provider may be an object with a ``search`` method or a bare
    callable, and may be sync or async.
    """

    def __init__(self, provider: Union[SearchProviderProtocol, Callable[..., Any]]):
        search = getattr(provider, "search", None)
        if callable(search):
            self._search: Callable[..., Any] = search
        elif callable(provider):
            self._search = provider
        else:
            raise TypeError("provider must be callable or expose a search() method")
        self.provider = provider

    async def fetch(
        self,
        query: str,
        options: Mapping[str, Any],
        continuation_token: Optional[str] = None,
    ) -> SearchPage:
        response = self._search(query, options, continuation_token)
        if inspect.isawaitable(response):
            response = await response
        page = to_search_page(response)
        logger.debug(
            "Provider page received",
            results=len(page.results),
            continued=continuation_token is not None,
            token_returned=page.continuation_token is not None,
        )
        return page
