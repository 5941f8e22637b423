"""Workers behind the conductor: parser, indexer, semantic, query, system.

Each worker exposes one coroutine per operation, named ``op_<operation>``,
taking the validated argument model and the request id.  Store access goes
through :func:`asyncio.to_thread` so SQLite / LanceDB work never blocks the
event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set, Tuple

from . import __version__
from .bus import SEMANTIC_EMBEDDINGS_UPDATED, SEMANTIC_WARMUP_ENTITIES, KnowledgeBus
from .cache import SemanticCache
from .config import CacheSettings, IndexSettings
from .embeddings import EmbeddingProvider, is_zero_vector
from .errors import NotFoundError, UnknownOperation
from .hybrid_search import HybridSearchEngine, SemanticUnavailable, document_text
from .indexer import Indexer
from .models import EmbeddingRecord, Entity, PartialFailure, Relationship
from .operations import (
    AnalyzeCodeImpactArgs,
    AnalyzeHotspotsArgs,
    CleanIndexArgs,
    ClearBusTopicArgs,
    CrossLanguageSearchArgs,
    DetectCodeClonesArgs,
    EmbedEntitiesArgs,
    FindRelatedConceptsArgs,
    FindSimilarCodeArgs,
    GetAgentMetricsArgs,
    GetGraphArgs,
    GetGraphHealthArgs,
    HybridSearchArgs,
    IndexArgs,
    ListEntityRelationshipsArgs,
    ListFileEntitiesArgs,
    NoArgs,
    OperationArgs,
    ParseFileArgs,
    QueryArgs,
    SemanticSearchArgs,
    SuggestRefactoringArgs,
    WarmupArgs,
)
from .query import QueryPlan, QueryPlanner
from .refactoring import code_metrics, sort_suggestions, suggest_for_entity
from .storage import GraphStore

if TYPE_CHECKING:
    from .conductor import Conductor

logger = logging.getLogger(__name__)

DEPENDENCY_TYPES = ("calls", "imports", "extends")
CLONE_KINDS = ("function", "method", "class")
CLONE_NEIGHBOURS = 10


def entity_summary(entity: Entity) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "name": entity.name,
        "qualname": entity.qualname,
        "kind": entity.kind,
        "filePath": entity.file_path,
        "startLine": entity.span.start_line,
        "endLine": entity.span.end_line,
    }


def normalize_file_path(file_path: str) -> str:
    """Stored paths are posix and relative, without a leading ``./``."""
    path = file_path.replace("\\", "/")
    return path[2:] if path.startswith("./") else path


def relationship_dict(rel: Relationship) -> Dict[str, Any]:
    return {
        "sourceId": rel.source_id,
        "targetId": rel.target_id,
        "type": rel.type,
        "confidence": rel.confidence,
    }


class BaseAgent:
    name = "base"

    async def handle(self, operation: str, args: OperationArgs, request_id: str) -> Any:
        handler = getattr(self, f"op_{operation}", None)
        if handler is None:
            raise UnknownOperation(operation, request_id=request_id)
        return await handler(args, request_id)


# ===================================================================
# Parser / Indexer
# ===================================================================

class ParserAgent(BaseAgent):
    """Parses single files on demand; never writes."""

    name = "parser"

    def __init__(self, indexer: Indexer) -> None:
        self.indexer = indexer

    async def op_parse_file(self, args: ParseFileArgs, request_id: str) -> Dict[str, Any]:
        parsed = await self.indexer.parse_only(args.file_path, args.root)
        return {
            "path": parsed.path,
            "language": parsed.language,
            "backend": self.indexer.parser.backend,
            "entities": [
                {
                    "name": e.name,
                    "qualname": e.qualname,
                    "kind": e.kind,
                    "startLine": e.span.start_line,
                    "startColumn": e.span.start_column,
                    "endLine": e.span.end_line,
                    "endColumn": e.span.end_column,
                    "docstring": e.docstring,
                    "metadata": e.metadata,
                }
                for e in parsed.entities
            ],
            "relationships": [
                {"source": r.source, "target": r.target, "type": r.type, "targetModule": r.target_module}
                for r in parsed.relationships
            ],
        }


class IndexerAgent(BaseAgent):
    name = "indexer"

    def __init__(self, indexer: Indexer) -> None:
        self.indexer = indexer

    async def op_index(self, args: IndexArgs, request_id: str) -> Dict[str, Any]:
        summary = await self.indexer.index_directory(
            args.directory,
            incremental=args.incremental,
            reset=args.reset,
            exclude_patterns=args.exclude_patterns,
            full_scan=args.full_scan,
            request_id=request_id,
        )
        return summary.to_dict()

    async def op_clean_index(self, args: CleanIndexArgs, request_id: str) -> Dict[str, Any]:
        summary = await self.indexer.index_directory(
            args.directory,
            incremental=False,
            reset=True,
            exclude_patterns=args.exclude_patterns,
            full_scan=True,
            request_id=request_id,
        )
        return summary.to_dict()

    async def op_reset_graph(self, args: NoArgs, request_id: str) -> Dict[str, Any]:
        await self.indexer.reset()
        logger.info("[%s] Graph reset", request_id)
        return {"reset": True}


# ===================================================================
# Semantic
# ===================================================================

class SemanticAgent(BaseAgent):
    """Owns embeddings: writes them, searches them, derives similarity analyses."""

    name = "semantic"

    def __init__(
        self,
        store: GraphStore,
        engine: HybridSearchEngine,
        embedder: EmbeddingProvider,
        bus: KnowledgeBus,
        cache: SemanticCache,
        cache_settings: Optional[CacheSettings] = None,
        index_settings: Optional[IndexSettings] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.embedder = embedder
        self.bus = bus
        self.cache = cache
        self.cache_settings = cache_settings or CacheSettings()
        self.index_settings = index_settings or IndexSettings()

    @property
    def model_key(self) -> str:
        return self.embedder.model_key

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def op_hybrid_search(self, args: HybridSearchArgs, request_id: str) -> Dict[str, Any]:
        response = await self.engine.search(
            args.query,
            limit=args.limit,
            rerank=args.rerank,
            rerank_top_k=args.rerank_top_k,
            k=args.k,
            structural_weight=args.structural_weight,
            semantic_weight=args.semantic_weight,
            kinds=args.kinds,
            languages=args.languages,
            use_cache=args.use_cache,
        )
        if response.degraded:
            logger.info("[%s] hybrid_search degraded: %s", request_id, ", ".join(response.degraded_reasons))
        return response.to_dict()

    async def op_semantic_search(self, args: SemanticSearchArgs, request_id: str) -> Dict[str, Any]:
        try:
            hits = await self.engine.semantic_hits(args.query, args.limit, args.kinds)
        except SemanticUnavailable as exc:
            return {"query": args.query, "results": [], "total": 0, "degraded": True,
                    "degradedReasons": [exc.reason]}
        return {
            "query": args.query,
            "results": [
                {"entityId": h.entity_id, "score": h.score, "entity": h.entity.to_dict() if h.entity else None}
                for h in hits
            ],
            "total": len(hits),
            "degraded": False,
            "degradedReasons": [],
        }

    async def op_find_similar_code(self, args: FindSimilarCodeArgs, request_id: str) -> Dict[str, Any]:
        vector = await self.embedder.embed(args.code)
        if is_zero_vector(vector):
            return {"results": [], "total": 0, "threshold": args.threshold}
        rows = await asyncio.to_thread(self.store.vector_search, self.model_key, vector, args.limit)
        results = [
            {"entityId": e.id, "similarity": round(score, 6), "entity": entity_summary(e)}
            for e, score in rows
            if score >= args.threshold
        ]
        return {"results": results, "total": len(results), "threshold": args.threshold}

    async def op_cross_language_search(self, args: CrossLanguageSearchArgs, request_id: str) -> Dict[str, Any]:
        response = await self.engine.search(args.query, limit=args.limit, languages=args.languages)
        by_language: Dict[str, int] = {}
        for hit in response.hits:
            if hit.entity is not None:
                by_language[hit.entity.language] = by_language.get(hit.entity.language, 0) + 1
        payload = response.to_dict()
        payload["languages"] = by_language
        return payload

    async def op_find_related_concepts(self, args: FindRelatedConceptsArgs, request_id: str) -> Dict[str, Any]:
        entity = await asyncio.to_thread(self.store.get_entity, args.entity_id)
        if entity is None:
            raise NotFoundError(f"Entity not found: {args.entity_id}", request_id=request_id)

        vector = await self._vector_for(entity)
        similar: List[Dict[str, Any]] = []
        if vector is not None:
            rows = await asyncio.to_thread(
                self.store.vector_search, self.model_key, vector, args.limit, None, None, {entity.id},
            )
            similar = [
                {"entityId": e.id, "similarity": round(score, 6), "entity": entity_summary(e)}
                for e, score in rows
            ]

        outgoing = await asyncio.to_thread(self.store.neighbors, entity.id, DEPENDENCY_TYPES)
        incoming = await asyncio.to_thread(self.store.reverse_neighbors, entity.id, DEPENDENCY_TYPES)
        neighbour_ids = [r.target_id for r in outgoing] + [r.source_id for r in incoming]
        neighbours = await asyncio.to_thread(self.store.get_entities, neighbour_ids)
        graph = [
            {"direction": "out", "type": r.type, "entity": entity_summary(neighbours[r.target_id])}
            for r in outgoing if r.target_id in neighbours
        ] + [
            {"direction": "in", "type": r.type, "entity": entity_summary(neighbours[r.source_id])}
            for r in incoming if r.source_id in neighbours
        ]
        return {"entity": entity_summary(entity), "similar": similar, "graphNeighbors": graph[: args.limit]}

    async def op_detect_code_clones(self, args: DetectCodeClonesArgs, request_id: str) -> Dict[str, Any]:
        entities = await asyncio.to_thread(
            self.store.list_entities, args.max_entities, 0, CLONE_KINDS, args.scope or "",
        )
        vectors = await self._vectors_for(entities)
        ids = [e.id for e in entities if e.id in vectors]
        pairs = await asyncio.to_thread(self._similar_pairs, ids, vectors, args.min_similarity)

        # Union-find over pairs above the threshold.
        parent: Dict[str, str] = {i: i for i in ids}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for a, b, _ in pairs:
            ra, rb = find(a), find(b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

        by_id = {e.id: e for e in entities}
        groups: Dict[str, List[str]] = {}
        for a, b, _ in pairs:
            root = find(a)
            members = groups.setdefault(root, [])
            for x in (a, b):
                if x not in members:
                    members.append(x)
        best: Dict[str, float] = {}
        for a, _, sim in pairs:
            root = find(a)
            best[root] = max(best.get(root, 0.0), sim)

        clone_groups = [
            {
                "similarity": round(best[root], 6),
                "entities": [entity_summary(by_id[m]) for m in sorted(members)],
            }
            for root, members in groups.items()
        ]
        clone_groups.sort(key=lambda g: (-g["similarity"], g["entities"][0]["id"]))
        return {
            "minSimilarity": args.min_similarity,
            "scanned": len(ids),
            "groups": clone_groups,
            "totalGroups": len(clone_groups),
        }

    def _similar_pairs(
        self, ids: Sequence[str], vectors: Dict[str, List[float]], min_similarity: float,
    ) -> List[Tuple[str, str, float]]:
        """Nearest-neighbour pairs within *ids*, each pair reported once."""
        in_scope = set(ids)
        pairs: Dict[Tuple[str, str], float] = {}
        for entity_id in ids:
            rows = self.store.vector_search(
                self.model_key, vectors[entity_id], CLONE_NEIGHBOURS, CLONE_KINDS, None, {entity_id},
            )
            for other, score in rows:
                if other.id not in in_scope or score < min_similarity:
                    continue
                key = (min(entity_id, other.id), max(entity_id, other.id))
                pairs[key] = max(pairs.get(key, 0.0), score)
        return [(a, b, s) for (a, b), s in sorted(pairs.items())]

    async def _vector_for(self, entity: Entity) -> Optional[List[float]]:
        vectors = await self._vectors_for([entity])
        return vectors.get(entity.id)

    async def _vectors_for(self, entities: Sequence[Entity]) -> Dict[str, List[float]]:
        """Current vectors for *entities*, embedding the ones that are missing or stale."""
        if not entities:
            return {}
        ids = [e.id for e in entities]
        hashes = await asyncio.to_thread(self.store.embedding_hashes, self.model_key, ids)
        fresh = [e for e in entities if hashes.get(e.id) == e.content_hash]
        stale = [e for e in entities if hashes.get(e.id) != e.content_hash]
        vs = self.store.get_vector_store(self.model_key)
        vectors = await asyncio.to_thread(vs.get_vectors, [e.id for e in fresh])
        if stale:
            embedded, _ = await self._embed(stale)
            vectors.update(embedded)
        return vectors

    # ------------------------------------------------------------------
    # Embedding maintenance
    # ------------------------------------------------------------------

    async def _embed(self, entities: Sequence[Entity]) -> Tuple[Dict[str, List[float]], PartialFailure]:
        """Embed and persist *entities* in batches."""
        vectors: Dict[str, List[float]] = {}
        failures = PartialFailure()
        batch_size = max(1, self.index_settings.embed_batch_size)
        for start in range(0, len(entities), batch_size):
            batch = list(entities[start: start + batch_size])
            result = await self.embedder.embed_batch([document_text(e) for e in batch])
            for failure in result.failures.failures:
                failures.add(batch[int(failure.item)].id, failure.code, failure.message)
            records: List[EmbeddingRecord] = []
            for entity, vector in zip(batch, result.vectors):
                if vector is None:
                    continue
                if is_zero_vector(vector):
                    failures.add(entity.id, "EMPTY_EMBEDDING", "entity text produced no features")
                    continue
                records.append(EmbeddingRecord(
                    entity_id=entity.id,
                    vector=vector,
                    dimension=len(vector),
                    provider=self.embedder.name,
                    model=self.embedder.model,
                    content_hash=entity.content_hash,
                ))
                vectors[entity.id] = vector
            await asyncio.to_thread(self.store.upsert_embeddings, self.model_key, records)
        return vectors, failures

    async def op_embed_entities(self, args: EmbedEntitiesArgs, request_id: str) -> Dict[str, Any]:
        entities = await asyncio.to_thread(self.store.entities_needing_embedding, self.model_key, args.limit)
        vectors, failures = await self._embed(entities)
        if vectors:
            self.cache.clear()
            self.bus.publish(SEMANTIC_EMBEDDINGS_UPDATED, {
                "modelKey": self.model_key, "count": len(vectors), "requestId": request_id,
            })
        logger.info("[%s] Embedded %d/%d entities (%s)", request_id, len(vectors), len(entities), self.model_key)
        return {
            "modelKey": self.model_key,
            "candidates": len(entities),
            "embedded": len(vectors),
            "failed": len(failures.failures),
            "failures": failures.to_list(),
        }

    async def op_warmup(self, args: WarmupArgs, request_id: str) -> Dict[str, Any]:
        limit = args.limit or self.cache_settings.warmup_limit
        recent = await asyncio.to_thread(self.store.recently_changed_entities, limit)
        hashes = await asyncio.to_thread(self.store.embedding_hashes, self.model_key, [e.id for e in recent])
        stale = [e for e in recent if hashes.get(e.id) != e.content_hash]
        vectors, failures = await self._embed(stale)
        pruned = await asyncio.to_thread(self.store.prune_embeddings, self.model_key)
        if vectors or pruned:
            self.cache.clear()
        self.bus.publish(SEMANTIC_WARMUP_ENTITIES, {
            "modelKey": self.model_key,
            "entityIds": sorted(vectors),
            "pruned": pruned,
            "requestId": request_id,
        })
        logger.info("[%s] Warmup embedded %d entities, pruned %d", request_id, len(vectors), pruned)
        return {
            "modelKey": self.model_key,
            "considered": len(recent),
            "embedded": len(vectors),
            "pruned": pruned,
            "failed": len(failures.failures),
            "failures": failures.to_list(),
        }


# ===================================================================
# Query
# ===================================================================

class QueryAgent(BaseAgent):
    """Read-only graph queries and natural-language query execution."""

    name = "query"

    def __init__(self, store: GraphStore, engine: HybridSearchEngine, planner: Optional[QueryPlanner] = None) -> None:
        self.store = store
        self.engine = engine
        self.planner = planner or QueryPlanner()

    async def _resolve(self, id_or_name: str, file_path: Optional[str] = None) -> Entity:
        entity = await asyncio.to_thread(self.store.find_entity, id_or_name, file_path)
        if entity is None:
            raise NotFoundError(f"Entity not found: {id_or_name}")
        return entity

    # ------------------------------------------------------------------
    # Natural language
    # ------------------------------------------------------------------

    async def op_query(self, args: QueryArgs, request_id: str) -> Dict[str, Any]:
        plan = self.planner.plan(args.query, args.limit)
        logger.debug("[%s] query plan: %s", request_id, plan)
        try:
            results = await self.execute_plan(plan)
        except NotFoundError as exc:
            return {"plan": plan.to_dict(), "results": [], "total": 0, "message": exc.message}
        return {"plan": plan.to_dict(), "results": results, "total": len(results)}

    async def execute_plan(self, plan: QueryPlan) -> List[Dict[str, Any]]:
        if plan.intent == "search":
            response = await self.engine.search(plan.raw, limit=plan.limit, kinds=plan.kinds or None)
            return [h.to_dict() for h in response.hits]

        if plan.intent == "file_entities":
            entities = await asyncio.to_thread(
                self.store.get_entities_for_file, plan.file_path or "", plan.kinds or None,
            )
            return [entity_summary(e) for e in entities[: plan.limit]]

        if plan.intent == "definition":
            defs = await asyncio.to_thread(self.store.find_definitions, [plan.target.split(".")[-1]])
            matches = [
                e for e in defs.get(plan.target.split(".")[-1], [])
                if (not plan.kinds or e.kind in plan.kinds)
                and (e.qualname == plan.target or e.name == plan.target or e.qualname.endswith("." + plan.target))
            ]
            if not matches:
                raise NotFoundError(f"No definition found for '{plan.target}'")
            return [entity_summary(e) for e in matches[: plan.limit]]

        entity = await self._resolve(plan.target or "")
        if plan.intent == "impact":
            impacted = await self._impacted([entity.id], depth=2)
            return [dict(entity_summary(e), depth=d) for e, d in impacted[: plan.limit]]

        if plan.intent in ("callers", "subclasses"):
            edge = "calls" if plan.intent == "callers" else "extends"
            rels = await asyncio.to_thread(self.store.reverse_neighbors, entity.id, [edge])
            ids = [r.source_id for r in rels]
        else:
            rels = await asyncio.to_thread(self.store.neighbors, entity.id, ["calls"])
            ids = [r.target_id for r in rels]
        found = await asyncio.to_thread(self.store.get_entities, ids)
        return [entity_summary(found[i]) for i in ids if i in found][: plan.limit]

    # ------------------------------------------------------------------
    # Graph reads
    # ------------------------------------------------------------------

    async def op_list_file_entities(self, args: ListFileEntitiesArgs, request_id: str) -> Dict[str, Any]:
        path = normalize_file_path(args.file_path)
        record = await asyncio.to_thread(self.store.get_file, path)
        if record is None:
            raise NotFoundError(f"File not indexed: {args.file_path}", request_id=request_id)
        entities = await asyncio.to_thread(self.store.get_entities_for_file, path, args.entity_types)
        return {
            "filePath": path,
            "status": record.status,
            "entities": [entity_summary(e) for e in entities],
            "total": len(entities),
        }

    async def op_list_entity_relationships(
        self, args: ListEntityRelationshipsArgs, request_id: str,
    ) -> Dict[str, Any]:
        entity = await self._resolve(args.entity_id or args.entity_name or "", args.file_path)
        types = args.relationship_types
        seen_edges: Set[Tuple[str, str, str]] = set()
        edges: List[Dict[str, Any]] = []
        visited = {entity.id}
        queue = deque([(entity.id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= args.depth:
                continue
            outgoing = await asyncio.to_thread(self.store.neighbors, current, types)
            incoming = await asyncio.to_thread(self.store.reverse_neighbors, current, types)
            for rel, nxt, direction in (
                [(r, r.target_id, "outgoing") for r in outgoing]
                + [(r, r.source_id, "incoming") for r in incoming]
            ):
                if rel.key in seen_edges:
                    continue
                seen_edges.add(rel.key)
                edges.append(dict(relationship_dict(rel), direction=direction, depth=depth + 1))
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append((nxt, depth + 1))

        names = await asyncio.to_thread(self.store.get_entities, sorted(visited))
        for edge in edges:
            src, dst = names.get(edge["sourceId"]), names.get(edge["targetId"])
            edge["source"] = src.qualname if src else edge["sourceId"]
            edge["target"] = dst.qualname if dst else edge["targetId"]
        return {"entity": entity_summary(entity), "relationships": edges, "total": len(edges)}

    async def _impacted(self, roots: Sequence[str], depth: int) -> List[Tuple[Entity, int]]:
        """Entities that (transitively) depend on *roots*, with hop distance."""
        seen: Dict[str, int] = {r: 0 for r in roots}
        queue = deque((r, 0) for r in roots)
        while queue:
            current, hops = queue.popleft()
            if hops >= depth:
                continue
            for rel in await asyncio.to_thread(self.store.reverse_neighbors, current, DEPENDENCY_TYPES):
                if rel.source_id not in seen:
                    seen[rel.source_id] = hops + 1
                    queue.append((rel.source_id, hops + 1))
        impacted_ids = [i for i in seen if i not in roots]
        found = await asyncio.to_thread(self.store.get_entities, impacted_ids)
        ordered = sorted(
            ((found[i], seen[i]) for i in impacted_ids if i in found),
            key=lambda item: (item[1], item[0].file_path, item[0].span.start_line, item[0].id),
        )
        return ordered

    async def _impact_ascii(self, root: Entity, depth: int) -> str:
        lines: List[str] = []
        queue = deque([(root.id, 0)])
        seen = {root.id}
        while queue:
            current, level = queue.popleft()
            node = await asyncio.to_thread(self.store.get_entity, current)
            if node is None:
                continue
            prefix = "  " * level
            lines.append(f"{prefix}{node.qualname}")
            if level >= depth:
                continue
            for rel in await asyncio.to_thread(self.store.reverse_neighbors, current, DEPENDENCY_TYPES):
                src = await asyncio.to_thread(self.store.get_entity, rel.source_id)
                label = src.qualname if src else rel.source_id
                lines.append(f"{prefix}  <-{rel.type}- {label}")
                if rel.source_id not in seen:
                    seen.add(rel.source_id)
                    queue.append((rel.source_id, level + 1))
        return "\n".join(lines)

    async def op_analyze_code_impact(self, args: AnalyzeCodeImpactArgs, request_id: str) -> Dict[str, Any]:
        if args.entity_id:
            roots = [await self._resolve(args.entity_id, args.file_path)]
        else:
            roots = await asyncio.to_thread(self.store.get_entities_for_file, args.file_path or "")
            roots = [e for e in roots if e.kind != "import"]
            if not roots:
                raise NotFoundError(f"No entities indexed for file: {args.file_path}", request_id=request_id)

        impacted = await self._impacted([r.id for r in roots], args.depth)
        files = sorted({e.file_path for e, _ in impacted})
        if len(impacted) >= 20 or len(files) >= 5:
            risk = "high"
        elif len(impacted) >= 5:
            risk = "medium"
        else:
            risk = "low"
        payload: Dict[str, Any] = {
            "roots": [entity_summary(r) for r in roots],
            "depth": args.depth,
            "impacted": [dict(entity_summary(e), depth=d) for e, d in impacted],
            "totalImpacted": len(impacted),
            "affectedFiles": files,
            "riskLevel": risk,
        }
        if len(roots) == 1:
            payload["graph"] = await self._impact_ascii(roots[0], args.depth)
        return payload

    async def op_analyze_hotspots(self, args: AnalyzeHotspotsArgs, request_id: str) -> Dict[str, Any]:
        if args.metric == "changes":
            recent = await asyncio.to_thread(self.store.recently_changed_entities, args.limit)
            rows = [(e, e.updated_at) for e in recent]
        else:
            rows = await asyncio.to_thread(self.store.hotspots, args.metric, args.limit)
        return {
            "metric": args.metric,
            "hotspots": [dict(entity_summary(e), score=score) for e, score in rows],
            "total": len(rows),
        }

    async def op_suggest_refactoring(self, args: SuggestRefactoringArgs, request_id: str) -> Dict[str, Any]:
        path = normalize_file_path(args.file_path)
        record = await asyncio.to_thread(self.store.get_file, path)
        if record is None:
            raise NotFoundError(f"File not indexed: {args.file_path}", request_id=request_id)
        in_file = await asyncio.to_thread(
            self.store.get_entities_for_file, path, ["function", "method", "class"],
        )

        targets = in_file
        if args.entity_id:
            targets = [e for e in in_file if e.id == args.entity_id]
            if not targets:
                raise NotFoundError(f"Entity {args.entity_id} is not in {path}", request_id=request_id)
        elif args.focus_area:
            focus = args.focus_area
            targets = [
                e for e in in_file
                if e.name == focus or e.qualname == focus or e.qualname.startswith(focus + ".")
            ]
            if not targets:
                raise NotFoundError(f"No entity named {focus} in {path}", request_id=request_id)
        if args.start_line is not None or args.end_line is not None:
            start = args.start_line or 1
            end = args.end_line
            targets = [
                e for e in targets
                if e.span.end_line >= start and (end is None or e.span.start_line < end)
            ]

        degrees = await asyncio.to_thread(self.store.degree_counts, [e.id for e in targets])
        suggestions: List[Dict[str, Any]] = []
        for entity in targets:
            methods = 0
            if entity.kind == "class":
                prefix = entity.qualname + "."
                methods = sum(1 for e in in_file if e.kind == "method" and e.qualname.startswith(prefix)
                              and "." not in e.qualname[len(prefix):])
            fan_in, fan_out = degrees.get(entity.id, (0, 0))
            suggestions.extend(suggest_for_entity(entity, code_metrics(entity), fan_in, fan_out, methods))

        return {
            "filePath": path,
            "analyzed": len(targets),
            "suggestions": sort_suggestions(suggestions),
            "total": len(suggestions),
        }

    async def op_get_graph(self, args: GetGraphArgs, request_id: str) -> Dict[str, Any]:
        if args.query:
            rows = await asyncio.to_thread(self.store.lexical_search, args.query, args.limit)
            entities = [e for e, _ in rows]
        else:
            entities = await asyncio.to_thread(self.store.list_entities, args.limit)
        rels = await asyncio.to_thread(self.store.relationships_among, [e.id for e in entities])
        return {
            "entities": [entity_summary(e) for e in entities],
            "relationships": [relationship_dict(r) for r in rels],
            "totalEntities": len(entities),
            "totalRelationships": len(rels),
        }

    async def op_get_graph_stats(self, args: NoArgs, request_id: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.store.stats)

    async def op_get_graph_health(self, args: GetGraphHealthArgs, request_id: str) -> Dict[str, Any]:
        stats = await asyncio.to_thread(self.store.stats)
        issues: List[str] = []
        if stats["entities"] < args.min_entities:
            issues.append(f"only {stats['entities']} entities (minimum {args.min_entities})")
        if stats["relationships"] < args.min_relationships:
            issues.append(f"only {stats['relationships']} relationships (minimum {args.min_relationships})")
        if stats["failedFiles"]:
            issues.append(f"{stats['failedFiles']} files failed to index")
        sample = await asyncio.to_thread(self.store.list_entities, args.sample) if args.sample else []
        return {
            "healthy": not issues,
            "issues": issues,
            "stats": stats,
            "sample": [entity_summary(e) for e in sample],
        }


# ===================================================================
# System
# ===================================================================

class SystemAgent(BaseAgent):
    name = "system"

    def __init__(self, conductor: "Conductor") -> None:
        self.conductor = conductor

    async def op_get_metrics(self, args: NoArgs, request_id: str) -> Dict[str, Any]:
        return self.conductor.get_metrics()

    async def op_get_agent_metrics(self, args: GetAgentMetricsArgs, request_id: str) -> Dict[str, Any]:
        return self.conductor.get_agent_metrics(args.worker)

    async def op_get_bus_stats(self, args: NoArgs, request_id: str) -> Dict[str, Any]:
        return {"topics": self.conductor.bus.get_stats(), "handlerErrors": self.conductor.bus.handler_errors}

    async def op_clear_bus_topic(self, args: ClearBusTopicArgs, request_id: str) -> Dict[str, Any]:
        cleared = self.conductor.bus.clear_topic(args.topic)
        return {"topic": args.topic, "cleared": cleared}

    async def op_get_version(self, args: NoArgs, request_id: str) -> Dict[str, Any]:
        return {"name": "codegraph-conductor", "version": __version__}
