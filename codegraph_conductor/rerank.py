"""Cross-encoder re-ranking providers.

A reranker scores ``(query, document)`` pairs and is used as a second stage
over the top of the fused candidate list.  Inputs are cut to the model's
token budget before sending (about four characters per token); the caller's
documents are never modified.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import RerankSettings
from .errors import ProviderError
from .http_client import ProviderHTTPClient

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class RerankLimits:
    max_query_tokens: int
    max_documents: int
    max_total_tokens: int


@dataclass
class RerankResult:
    index: int
    relevance_score: float
    document: Optional[str] = None


VOYAGE_RERANK_LIMITS: Dict[str, RerankLimits] = {
    "rerank-2": RerankLimits(2000, 1000, 300_000),
    "rerank-2-lite": RerankLimits(2000, 1000, 300_000),
    "rerank-1": RerankLimits(2000, 1000, 100_000),
    "rerank-lite-1": RerankLimits(1000, 1000, 300_000),
}
DEFAULT_RERANK_LIMITS = RerankLimits(1000, 1000, 100_000)


def truncate_for_rerank(
    query: str,
    documents: List[str],
    limits: RerankLimits,
) -> Tuple[str, List[str]]:
    """Fit *query* and *documents* into *limits*.

    The query is cut to ``max_query_tokens``; at most ``max_documents`` are
    kept and the remaining token budget is split evenly between them.
    """
    query_chars = limits.max_query_tokens * CHARS_PER_TOKEN
    trimmed_query = query[:query_chars]
    kept = documents[: limits.max_documents]
    if not kept:
        return trimmed_query, []
    query_tokens = -(-len(trimmed_query) // CHARS_PER_TOKEN)
    budget_tokens = max(limits.max_total_tokens - query_tokens * len(kept), len(kept))
    per_doc_chars = max(1, (budget_tokens // len(kept)) * CHARS_PER_TOKEN)
    return trimmed_query, [doc[:per_doc_chars] for doc in kept]


class RerankProvider(ABC):
    name: str = "base"
    model: str = ""

    @property
    @abstractmethod
    def limits(self) -> RerankLimits:
        ...

    @abstractmethod
    async def rerank(
        self,
        query: str,
        documents: List[str],
        top_k: Optional[int] = None,
        return_documents: bool = False,
        truncation: bool = True,
    ) -> List[RerankResult]:
        """Scores for (a subset of) *documents*, sorted by relevance descending."""

    async def aclose(self) -> None:
        """Release network resources."""


class VoyageReranker(RerankProvider):
    """Voyage AI ``POST /v1/rerank``.

    Models: ``rerank-2`` (default, best quality), ``rerank-2-lite``,
    ``rerank-1`` and ``rerank-lite-1`` (legacy).
    """

    name = "voyage"

    def __init__(
        self,
        api_key: str,
        model: str = "rerank-2",
        base_url: str = "https://api.voyageai.com",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self._http = ProviderHTTPClient(
            self.name, base_url, api_key=api_key, timeout_seconds=timeout_seconds, transport=transport,
        )
        logger.info("VoyageReranker initialized (model=%s)", model)

    @property
    def limits(self) -> RerankLimits:
        return VOYAGE_RERANK_LIMITS.get(self.model, DEFAULT_RERANK_LIMITS)

    async def rerank(
        self,
        query: str,
        documents: List[str],
        top_k: Optional[int] = None,
        return_documents: bool = False,
        truncation: bool = True,
    ) -> List[RerankResult]:
        if not documents:
            return []
        payload: Dict[str, Any] = {
            "query": query,
            "documents": documents,
            "model": self.model,
            "return_documents": return_documents,
            "truncation": truncation,
        }
        if top_k is not None:
            payload["top_k"] = top_k
        logger.debug("rerank() model=%s documents=%d top_k=%s", self.model, len(documents), top_k)
        body = await self._http.post_json("/v1/rerank", payload)

        data = body.get("data")
        if not isinstance(data, list):
            raise ProviderError("Voyage AI returned an invalid rerank response", provider=self.name)
        results: List[RerankResult] = []
        for item in data:
            if not isinstance(item, dict) or not isinstance(item.get("index"), int):
                continue
            index = item["index"]
            if not 0 <= index < len(documents):
                continue
            try:
                score = float(item.get("relevance_score") or 0.0)
            except (TypeError, ValueError):
                logger.warning("Dropping rerank result %d with bad score %r", index, item.get("relevance_score"))
                continue
            results.append(RerankResult(index=index, relevance_score=score, document=item.get("document")))
        results.sort(key=lambda r: (-r.relevance_score, r.index))
        return results

    async def aclose(self) -> None:
        await self._http.aclose()


def get_reranker(
    settings: RerankSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[RerankProvider]:
    """The configured reranker, or ``None`` when re-ranking is off."""
    provider = settings.provider.lower()
    if provider in ("", "none"):
        return None
    if provider != "voyage":
        logger.warning("Unknown rerank provider '%s', re-ranking disabled.", settings.provider)
        return None
    if not settings.api_key:
        logger.warning("Voyage reranker configured without an API key, re-ranking disabled.")
        return None
    return VoyageReranker(
        api_key=settings.api_key,
        model=settings.model,
        base_url=settings.base_url,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )
