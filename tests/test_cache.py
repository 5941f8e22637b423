"""Tests for the search response cache."""

from codegraph_conductor.cache import SemanticCache, make_cache_key
from codegraph_conductor.models import FusedHit, SearchResponse


def _response(query: str = "q", degraded: bool = False) -> SearchResponse:
    response = SearchResponse(query=query, hits=[FusedHit(entity_id="e1", fused_score=0.5)])
    if degraded:
        response.mark_degraded("semantic_index_empty")
    return response


class TestCacheKey:
    def test_query_is_normalised(self):
        params = {"limit": 10}
        assert make_cache_key("Parse  File", "s", params) == make_cache_key("parse file", "s", params)

    def test_scope_and_params_matter(self):
        base = make_cache_key("q", "s", {"limit": 10})
        assert make_cache_key("q", "other", {"limit": 10}) != base
        assert make_cache_key("q", "s", {"limit": 20}) != base


class TestSemanticCache:
    def test_hit_and_miss(self):
        cache = SemanticCache()
        assert cache.get("k") is None

        assert cache.set("k", _response()) is True
        cached = cache.get("k")

        assert cached.cached is True
        assert cached.hits[0].entity_id == "e1"
        assert cache.stats() == {"size": 1, "maxEntries": 256, "hits": 1, "misses": 1, "hitRate": 0.5}

    def test_returned_copies_are_independent(self):
        cache = SemanticCache()
        original = _response()
        cache.set("k", original)
        original.hits.clear()

        first = cache.get("k")
        first.hits[0].fused_score = 99.0

        assert cache.get("k").hits[0].fused_score == 0.5

    def test_degraded_responses_are_not_cached(self):
        cache = SemanticCache()
        assert cache.set("k", _response(degraded=True)) is False
        assert len(cache) == 0

    def test_lru_eviction(self):
        cache = SemanticCache(max_entries=2)
        cache.set("a", _response("a"))
        cache.set("b", _response("b"))
        cache.get("a")
        cache.set("c", _response("c"))

        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None

    def test_clear(self):
        cache = SemanticCache()
        cache.set("k", _response())
        cache.clear()
        assert len(cache) == 0
