"""Knowledge base search collaborator."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from .constants import DEFAULT_SEARCH_MAX_RESULTS
from .errors import TransportError
from .network import HttpxActionExecutor, NetworkActionExecutor

logger = logging.getLogger(__name__)


class SearchService(Protocol):
    async def search(
        self,
        query: str,
        max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        """Return ranked results for ``query``."""


class HttpSearchService(SearchService):
    """Posts ``{query, filters, limit}`` to a search API and reads ``results``."""

    def __init__(self, url: str, network: Optional[NetworkActionExecutor] = None) -> None:
        self.url = url
        self.network = network or HttpxActionExecutor()

    async def search(
        self,
        query: str,
        max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        response = await self.network.invoke(
            "POST",
            self.url,
            body={"query": query, "filters": filters or {}, "limit": max_results},
        )
        if not response.ok:
            raise TransportError(
                f"Search API returned {response.status_code}", status_code=response.status_code
            )
        body = response.body
        if isinstance(body, list):
            results = body
        elif isinstance(body, dict):
            results = body.get("results", [])
        else:
            raise TransportError("Search API returned a non-JSON body")
        return list(results)[:max_results]


class InMemorySearchService(SearchService):
    """Case-insensitive substring search over a fixed list of documents."""

    def __init__(self, documents: Optional[list[dict[str, Any]]] = None) -> None:
        self.documents = documents or []

    async def search(
        self,
        query: str,
        max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        needle = query.lower()
        hits = [
            doc
            for doc in self.documents
            if needle in " ".join(str(v) for v in doc.values()).lower()
            and all(doc.get(k) == v for k, v in (filters or {}).items())
        ]
        logger.debug(f"In-memory search '{query}' matched {len(hits)} document(s)")
        return hits[:max_results]
