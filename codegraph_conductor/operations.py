"""Static operation table: name -> worker + argument model.

Arguments are validated here, before admission, so a malformed call never
takes a worker slot.  Field names accept both ``snake_case`` and the
``camelCase`` spelling used on the wire (``filePath``, ``excludePatterns``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import UnknownOperation, ValidationError

EntityKind = Literal["function", "method", "class", "variable", "import"]
RelationshipType = Literal["calls", "imports", "extends", "contains"]


class OperationArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class NoArgs(OperationArgs):
    pass


# ---------------------------------------------------------------------------
# indexer
# ---------------------------------------------------------------------------

class IndexArgs(OperationArgs):
    directory: str = Field(..., min_length=1, description="Directory to index")
    incremental: bool = Field(True, description="Skip files whose hash is unchanged")
    reset: bool = Field(False, description="Drop the graph before indexing")
    exclude_patterns: List[str] = Field(default_factory=list, description="Glob patterns to skip")
    full_scan: bool = Field(False, description="Re-parse every file even when unchanged")


class CleanIndexArgs(OperationArgs):
    directory: str = Field(..., min_length=1)
    exclude_patterns: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------

class ParseFileArgs(OperationArgs):
    file_path: str = Field(..., min_length=1, description="File to parse")
    root: Optional[str] = Field(None, description="Project root for relative paths")


# ---------------------------------------------------------------------------
# semantic
# ---------------------------------------------------------------------------

class HybridSearchArgs(OperationArgs):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=200)
    rerank: bool = True
    rerank_top_k: Optional[int] = Field(None, ge=1, le=1000)
    k: Optional[int] = Field(None, ge=0, description="RRF constant")
    structural_weight: Optional[float] = Field(None, ge=0.0)
    semantic_weight: Optional[float] = Field(None, ge=0.0)
    kinds: Optional[List[EntityKind]] = None
    languages: Optional[List[str]] = None
    use_cache: bool = True


class SemanticSearchArgs(OperationArgs):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=200)
    kinds: Optional[List[EntityKind]] = None


class FindSimilarCodeArgs(OperationArgs):
    code: str = Field(..., min_length=1)
    threshold: float = Field(0.5, ge=0.0, le=1.0)
    limit: int = Field(10, ge=1, le=200)


class CrossLanguageSearchArgs(OperationArgs):
    query: str = Field(..., min_length=1)
    languages: Optional[List[str]] = None
    limit: int = Field(10, ge=1, le=200)


class FindRelatedConceptsArgs(OperationArgs):
    entity_id: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=100)


class DetectCodeClonesArgs(OperationArgs):
    min_similarity: float = Field(0.8, ge=0.0, le=1.0)
    scope: Optional[str] = Field(None, description="File path prefix to restrict the scan")
    max_entities: int = Field(500, ge=2, le=5000)


class EmbedEntitiesArgs(OperationArgs):
    limit: int = Field(500, ge=1, le=100_000)


class WarmupArgs(OperationArgs):
    limit: Optional[int] = Field(None, ge=1, le=100_000)


# ---------------------------------------------------------------------------
# query
# ---------------------------------------------------------------------------

class QueryArgs(OperationArgs):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=200)


class ListFileEntitiesArgs(OperationArgs):
    file_path: str = Field(..., min_length=1)
    entity_types: Optional[List[EntityKind]] = None


class ListEntityRelationshipsArgs(OperationArgs):
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    file_path: Optional[str] = None
    depth: int = Field(1, ge=1, le=5)
    relationship_types: Optional[List[RelationshipType]] = None

    @model_validator(mode="after")
    def _needs_entity(self) -> "ListEntityRelationshipsArgs":
        if not (self.entity_id or self.entity_name):
            raise ValueError("entityId or entityName is required")
        return self


class AnalyzeCodeImpactArgs(OperationArgs):
    entity_id: Optional[str] = None
    file_path: Optional[str] = None
    depth: int = Field(2, ge=1, le=10)

    @model_validator(mode="after")
    def _needs_target(self) -> "AnalyzeCodeImpactArgs":
        if not (self.entity_id or self.file_path):
            raise ValueError("entityId or filePath is required")
        return self


class AnalyzeHotspotsArgs(OperationArgs):
    metric: Literal["complexity", "changes", "coupling"] = "complexity"
    limit: int = Field(10, ge=1, le=200)


class SuggestRefactoringArgs(OperationArgs):
    file_path: str = Field(..., min_length=1, description="File to analyze for refactoring")
    focus_area: Optional[str] = Field(None, description="Entity name to focus on")
    entity_id: Optional[str] = Field(None, description="Exact entity id to analyze")
    start_line: Optional[int] = Field(None, ge=1, description="1-based start line")
    end_line: Optional[int] = Field(None, ge=1, description="1-based end line (exclusive)")

    @model_validator(mode="after")
    def _line_range(self) -> "SuggestRefactoringArgs":
        if self.start_line is not None and self.end_line is not None and self.end_line <= self.start_line:
            raise ValueError("endLine must be greater than startLine")
        return self


class GetGraphArgs(OperationArgs):
    query: Optional[str] = None
    limit: int = Field(100, ge=1, le=5000)


class GetGraphHealthArgs(OperationArgs):
    min_entities: int = Field(1, ge=0)
    min_relationships: int = Field(0, ge=0)
    sample: int = Field(5, ge=0, le=50)


# ---------------------------------------------------------------------------
# system
# ---------------------------------------------------------------------------

class GetAgentMetricsArgs(OperationArgs):
    worker: Optional[str] = None


class ClearBusTopicArgs(OperationArgs):
    topic: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------

WORKERS = ("parser", "indexer", "semantic", "query", "system")


@dataclass(frozen=True)
class OperationSpec:
    name: str
    worker: str
    args_model: Type[OperationArgs]
    description: str


def _spec(name: str, worker: str, args_model: Type[OperationArgs], description: str) -> OperationSpec:
    return OperationSpec(name, worker, args_model, description)


OPERATIONS: Dict[str, OperationSpec] = {s.name: s for s in (
    _spec("index", "indexer", IndexArgs, "Index a directory (incremental by default)"),
    _spec("clean_index", "indexer", CleanIndexArgs, "Reset the graph, then index from scratch"),
    _spec("reset_graph", "indexer", NoArgs, "Drop all graph and vector data"),
    _spec("parse_file", "parser", ParseFileArgs, "Parse one file without writing"),
    _spec("hybrid_search", "semantic", HybridSearchArgs, "Structural + semantic search with RRF and rerank"),
    _spec("semantic_search", "semantic", SemanticSearchArgs, "Vector-only search"),
    _spec("find_similar_code", "semantic", FindSimilarCodeArgs, "Entities similar to a code snippet"),
    _spec("cross_language_search", "semantic", CrossLanguageSearchArgs, "Hybrid search across languages"),
    _spec("find_related_concepts", "semantic", FindRelatedConceptsArgs, "Vector and graph neighbours of an entity"),
    _spec("detect_code_clones", "semantic", DetectCodeClonesArgs, "Groups of near-identical entities"),
    _spec("embed_entities", "semantic", EmbedEntitiesArgs, "Embed entities that are missing or stale"),
    _spec("warmup", "semantic", WarmupArgs, "Embed the most recently changed entities"),
    _spec("query", "query", QueryArgs, "Natural-language query over the graph"),
    _spec("list_file_entities", "query", ListFileEntitiesArgs, "Entities defined in a file"),
    _spec("list_entity_relationships", "query", ListEntityRelationshipsArgs, "Edges around an entity"),
    _spec("analyze_code_impact", "query", AnalyzeCodeImpactArgs, "What depends on an entity or file"),
    _spec("analyze_hotspots", "query", AnalyzeHotspotsArgs, "Most complex / coupled / changed entities"),
    _spec("suggest_refactoring", "query", SuggestRefactoringArgs, "Refactoring candidates in a file"),
    _spec("get_graph", "query", GetGraphArgs, "Entities and relationships dump"),
    _spec("get_graph_stats", "query", NoArgs, "Entity and relationship counts"),
    _spec("get_graph_health", "query", GetGraphHealthArgs, "Health thresholds and a sample"),
    _spec("get_metrics", "system", NoArgs, "Metrics snapshot"),
    _spec("get_agent_metrics", "system", GetAgentMetricsArgs, "Per-worker and per-operation metrics"),
    _spec("get_bus_stats", "system", NoArgs, "Knowledge bus topic stats"),
    _spec("clear_bus_topic", "system", ClearBusTopicArgs, "Clear retained state of one bus topic"),
    _spec("get_version", "system", NoArgs, "Package version"),
)}


def get_operation(name: str) -> OperationSpec:
    spec = OPERATIONS.get(name)
    if spec is None:
        raise UnknownOperation(name)
    return spec


def validate_args(spec: OperationSpec, args: Optional[Mapping[str, Any]]) -> OperationArgs:
    if args is not None and not isinstance(args, Mapping):
        raise ValidationError(
            f"Arguments for '{spec.name}' must be an object",
            [{"field": "", "message": f"expected an object, got {type(args).__name__}"}],
        )
    try:
        return spec.args_model.model_validate(dict(args or {}))
    except PydanticValidationError as exc:
        issues = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid arguments for '{spec.name}'", issues) from exc
