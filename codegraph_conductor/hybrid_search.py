"""Hybrid retrieval: structural + semantic candidates, RRF fusion, optional rerank.

Pipeline
--------
1. Structural (lexical + in-degree boost) and semantic (query embedding +
   vector search) candidates are gathered concurrently.
2. The two lists are fused with Reciprocal Rank Fusion.
3. Optionally the top ``rerank_top_k`` candidates are re-scored by a
   cross-encoder; the rest keep their fused order.
4. The list is cut to ``limit``.

Any failure on the semantic side (provider error or timeout, dimension
mismatch, empty index) degrades the answer to structural-only instead of
failing the query.  A reranker failure keeps the fused order.  Degraded
responses are flagged and never cached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple

from .cache import SemanticCache, make_cache_key
from .config import FusionSettings
from .embeddings import EmbeddingProvider, is_zero_vector
from .errors import ConductorError
from .fusion import apply_rerank, fuse
from .models import Entity, FusedHit, RankedHit, SearchResponse
from .rerank import RerankProvider, truncate_for_rerank
from .storage import GraphStore

logger = logging.getLogger(__name__)

# degradation code for provider failures outside the error taxonomy
UNEXPECTED_FAILURE = "OPERATION_FAILED"


def document_text(entity: Optional[Entity]) -> str:
    """Text a reranker or embedder sees for *entity*."""
    if entity is None:
        return ""
    parts = [f"{entity.kind} {entity.qualname}"]
    if entity.docstring:
        parts.append(entity.docstring)
    if entity.code:
        parts.append(entity.code)
    return "\n".join(parts)


class SemanticUnavailable(Exception):
    """The semantic side produced nothing usable; carries a degradation reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class HybridSearchEngine:
    def __init__(
        self,
        store: GraphStore,
        embedder: EmbeddingProvider,
        reranker: Optional[RerankProvider] = None,
        fusion: Optional[FusionSettings] = None,
        cache: Optional[SemanticCache] = None,
        scope: str = "",
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.reranker = reranker
        self.fusion = fusion or FusionSettings()
        self.cache = cache
        self.scope = scope

    # ------------------------------------------------------------------
    # Candidate sources
    # ------------------------------------------------------------------

    async def structural_hits(
        self,
        query: str,
        limit: int,
        kinds: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
    ) -> List[RankedHit]:
        rows = await asyncio.to_thread(self.store.lexical_search, query, limit, kinds, languages)
        return [
            RankedHit(entity_id=e.id, score=score, source="structural", rank=i, entity=e)
            for i, (e, score) in enumerate(rows, start=1)
        ]

    async def embed_query(self, text: str) -> List[float]:
        vector = await self.embedder.embed(text, input_type="query")
        if is_zero_vector(vector):
            raise SemanticUnavailable("semantic_query_empty")
        return vector

    async def semantic_hits(
        self,
        query: str,
        limit: int,
        kinds: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
    ) -> List[RankedHit]:
        """Vector candidates for *query*.

        Raises :class:`SemanticUnavailable` when the index is empty, and lets
        provider / mismatch errors propagate.
        """
        model_key = self.embedder.model_key
        vs = self.store.get_vector_store(model_key)
        if await asyncio.to_thread(vs.count) == 0:
            raise SemanticUnavailable("semantic_index_empty")
        vector = await self.embed_query(query)
        rows = await asyncio.to_thread(
            self.store.vector_search, model_key, vector, limit, kinds, languages,
        )
        return [
            RankedHit(entity_id=e.id, score=score, source="semantic", rank=i, entity=e)
            for i, (e, score) in enumerate(rows, start=1)
        ]

    # ------------------------------------------------------------------
    # Hybrid search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        limit: int = 10,
        rerank: bool = True,
        rerank_top_k: Optional[int] = None,
        k: Optional[int] = None,
        structural_weight: Optional[float] = None,
        semantic_weight: Optional[float] = None,
        kinds: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
        use_cache: bool = True,
    ) -> SearchResponse:
        k = self.fusion.k if k is None else k
        structural_weight = self.fusion.structural_weight if structural_weight is None else structural_weight
        semantic_weight = self.fusion.semantic_weight if semantic_weight is None else semantic_weight
        do_rerank = rerank and self.reranker is not None
        top_k = rerank_top_k or self.fusion.rerank_multiplier * limit

        cache_key = make_cache_key(query, self.scope, {
            "limit": limit, "k": k, "sw": structural_weight, "mw": semantic_weight,
            "rerank": do_rerank, "topK": top_k if do_rerank else None,
            "kinds": sorted(kinds or []), "languages": sorted(languages or []),
            "model": self.embedder.model_key,
        })
        if use_cache and self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        started = time.perf_counter()
        response = SearchResponse(query=query, hits=[])
        candidates = max(self.fusion.candidate_limit, limit)

        structural, semantic = await asyncio.gather(
            self.structural_hits(query, candidates, kinds, languages),
            self._semantic_or_reason(query, candidates, kinds, languages),
        )
        semantic_hits, reason = semantic
        if reason:
            response.mark_degraded(reason)
        response.timings_ms["retrieval"] = (time.perf_counter() - started) * 1000

        fused = fuse(structural, semantic_hits, k=k,
                     structural_weight=structural_weight, semantic_weight=semantic_weight)

        if do_rerank and fused:
            rerank_started = time.perf_counter()
            fused = await self._rerank(query, fused, top_k, response)
            response.timings_ms["rerank"] = (time.perf_counter() - rerank_started) * 1000

        response.hits = fused[:limit]
        response.timings_ms["total"] = (time.perf_counter() - started) * 1000

        if use_cache and self.cache is not None:
            self.cache.set(cache_key, response)
        return response

    async def _semantic_or_reason(
        self,
        query: str,
        limit: int,
        kinds: Optional[Sequence[str]],
        languages: Optional[Sequence[str]],
    ) -> Tuple[List[RankedHit], str]:
        try:
            return await self.semantic_hits(query, limit, kinds, languages), ""
        except SemanticUnavailable as exc:
            return [], exc.reason
        except ConductorError as exc:
            logger.warning("Semantic search unavailable, using structural only: %s", exc.message)
            return [], f"semantic_unavailable:{exc.code}"
        except Exception as exc:
            logger.warning("Semantic search failed, using structural only: %s: %s",
                           type(exc).__name__, exc, exc_info=True)
            return [], f"semantic_unavailable:{UNEXPECTED_FAILURE}"

    async def _rerank(
        self,
        query: str,
        fused: List[FusedHit],
        top_k: int,
        response: SearchResponse,
    ) -> List[FusedHit]:
        assert self.reranker is not None
        limits = self.reranker.limits
        prefix = fused[: min(top_k, limits.max_documents)]
        documents = [document_text(h.entity) for h in prefix]
        sent_query, sent_docs = truncate_for_rerank(query, documents, limits)
        try:
            results = await self.reranker.rerank(sent_query, sent_docs, truncation=True)
        except ConductorError as exc:
            logger.warning("Rerank failed, keeping fused order: %s", exc.message)
            response.mark_degraded(f"rerank_failed:{exc.code}")
            return fused
        except Exception as exc:
            logger.warning("Rerank failed, keeping fused order: %s: %s",
                           type(exc).__name__, exc, exc_info=True)
            response.mark_degraded(f"rerank_failed:{UNEXPECTED_FAILURE}")
            return fused

        scores = {r.index: r.relevance_score for r in results if 0 <= r.index < len(prefix)}
        reordered, partial = apply_rerank(fused, scores, len(prefix))
        response.reranked = True
        if partial:
            response.mark_degraded("rerank_partial")
        return reordered
