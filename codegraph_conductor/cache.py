"""LRU cache for hybrid search responses."""

from __future__ import annotations

import copy
import hashlib
import json
from collections import OrderedDict
from typing import Any, Dict, Optional

from .models import SearchResponse


def make_cache_key(query: str, scope: str, params: Dict[str, Any]) -> str:
    """Normalised query text + search parameters + project scope."""
    normalized = " ".join(query.lower().split())
    raw = json.dumps({"q": normalized, "scope": scope, "p": params}, sort_keys=True, default=str)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class SemanticCache:
    def __init__(self, max_entries: int = 256) -> None:
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, SearchResponse]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[SearchResponse]:
        if key in self._entries:
            self._entries.move_to_end(key)
            self.hits += 1
            response = copy.deepcopy(self._entries[key])
            response.cached = True
            return response
        self.misses += 1
        return None

    def set(self, key: str, response: SearchResponse) -> bool:
        """Store *response*; degraded responses are refused."""
        if response.degraded:
            return False
        self._entries[key] = copy.deepcopy(response)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "maxEntries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(self.hits / total, 4) if total else 0.0,
        }
