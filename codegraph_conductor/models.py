"""Core data models used by indexing, retrieval, and orchestration layers."""

from __future__ import annotations

import hashlib
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


def content_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_entity_id(file_path: str, kind: str, qualname: str, start_line: int) -> str:
    """Derive an id for a newly inserted entity.

    Only used on insert; updates keep whatever id the entity already has.
    """
    raw = f"{file_path}\x00{kind}\x00{qualname}\x00{start_line}"
    return f"{kind}:{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]}"


@dataclass
class Span:
    start_line: int
    start_column: int
    end_line: int
    end_column: int


@dataclass
class Entity:
    id: str
    name: str
    qualname: str
    kind: str
    file_path: str
    span: Span
    language: str
    code: str = ""
    docstring: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_hash: str = ""
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("code")
        return payload


@dataclass
class Relationship:
    source_id: str
    target_id: str
    type: str
    confidence: float = 1.0

    @property
    def key(self) -> tuple:
        return (self.source_id, self.target_id, self.type)


@dataclass
class PendingRelationship:
    """An edge whose target has not been indexed yet."""

    source_id: str
    target_name: str
    type: str
    file_path: str
    target_module: str = ""

    @property
    def key(self) -> tuple:
        return (self.source_id, self.target_name, self.type)


@dataclass
class FileRecord:
    path: str
    hash: str
    language: str
    last_indexed: float = 0.0
    status: str = "indexed"
    error: str = ""


@dataclass
class ParsedEntity:
    """Parser output: an entity before it has been given a stored id."""

    name: str
    qualname: str
    kind: str
    span: Span
    code: str
    docstring: str = ""
    parent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        return content_digest(f"{self.kind}\n{self.docstring}\n{self.code}")


@dataclass
class SymbolicRelationship:
    """Parser output: ``source`` is a local qualname, ``target`` a raw name."""

    source: str
    target: str
    type: str
    target_module: str = ""


@dataclass
class ParsedFile:
    path: str
    language: str
    entities: List[ParsedEntity]
    relationships: List[SymbolicRelationship]


@dataclass
class EntityDiff:
    inserted: List[Entity] = field(default_factory=list)
    updated: List[Entity] = field(default_factory=list)
    deleted: List[Entity] = field(default_factory=list)
    unchanged: List[Entity] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)

    @property
    def current(self) -> List[Entity]:
        return self.inserted + self.updated + self.unchanged


@dataclass
class CommitResult:
    entities_inserted: int = 0
    entities_updated: int = 0
    entities_deleted: int = 0
    relationships_written: int = 0
    relationships_deleted: int = 0
    pending_resolved: int = 0

    @property
    def writes(self) -> int:
        return (
            self.entities_inserted + self.entities_updated + self.entities_deleted
            + self.relationships_written + self.relationships_deleted + self.pending_resolved
        )


@dataclass
class ItemFailure:
    item: str
    code: str
    message: str


@dataclass
class PartialFailure:
    """Per-item failures of a batch operation that did not abort the batch."""

    failures: List[ItemFailure] = field(default_factory=list)

    def add(self, item: str, code: str, message: str) -> None:
        self.failures.append(ItemFailure(item=item, code=code, message=message))

    def __bool__(self) -> bool:
        return bool(self.failures)

    def to_list(self) -> List[Dict[str, str]]:
        return [asdict(f) for f in self.failures]


@dataclass
class IndexSummary:
    directory: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deleted_files: int = 0
    entities_inserted: int = 0
    entities_updated: int = 0
    entities_deleted: int = 0
    relationships_written: int = 0
    changed_entity_ids: List[str] = field(default_factory=list)
    failures: PartialFailure = field(default_factory=PartialFailure)
    duration_ms: float = 0.0

    def absorb(self, commit: CommitResult) -> None:
        self.entities_inserted += commit.entities_inserted
        self.entities_updated += commit.entities_updated
        self.entities_deleted += commit.entities_deleted
        self.relationships_written += commit.relationships_written

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directory": self.directory,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "deletedFiles": self.deleted_files,
            "entitiesInserted": self.entities_inserted,
            "entitiesUpdated": self.entities_updated,
            "entitiesDeleted": self.entities_deleted,
            "relationshipsWritten": self.relationships_written,
            "changedEntities": len(self.changed_entity_ids),
            "failures": self.failures.to_list(),
            "durationMs": round(self.duration_ms, 2),
        }


@dataclass
class EmbeddingRecord:
    entity_id: str
    vector: List[float]
    dimension: int
    provider: str
    model: str
    content_hash: str = ""


@dataclass
class RankedHit:
    entity_id: str
    score: float
    source: str
    rank: int = 0
    entity: Optional[Entity] = None


@dataclass
class FusedHit:
    entity_id: str
    fused_score: float
    structural_score: Optional[float] = None
    semantic_score: Optional[float] = None
    structural_rank: Optional[int] = None
    semantic_rank: Optional[int] = None
    rerank_score: Optional[float] = None
    entity: Optional[Entity] = None

    @property
    def score(self) -> float:
        return self.rerank_score if self.rerank_score is not None else self.fused_score

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "entityId": self.entity_id,
            "score": self.score,
            "fusedScore": self.fused_score,
            "structuralScore": self.structural_score,
            "semanticScore": self.semantic_score,
            "structuralRank": self.structural_rank,
            "semanticRank": self.semantic_rank,
            "rerankScore": self.rerank_score,
        }
        if self.entity is not None:
            payload["entity"] = self.entity.to_dict()
        return payload


@dataclass
class SearchResponse:
    query: str
    hits: List[FusedHit]
    degraded: bool = False
    degraded_reasons: List[str] = field(default_factory=list)
    reranked: bool = False
    cached: bool = False
    timings_ms: Dict[str, float] = field(default_factory=dict)

    def mark_degraded(self, reason: str) -> None:
        self.degraded = True
        if reason not in self.degraded_reasons:
            self.degraded_reasons.append(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "results": [h.to_dict() for h in self.hits],
            "total": len(self.hits),
            "degraded": self.degraded,
            "degradedReasons": list(self.degraded_reasons),
            "reranked": self.reranked,
            "cached": self.cached,
            "timingsMs": {k: round(v, 2) for k, v in self.timings_ms.items()},
        }


@dataclass(eq=False)
class Task:
    """One submitted operation; lives only while the conductor runs it.

    ``status`` moves queued -> running -> done | failed | cancelled, or
    queued -> rejected when the worker is at its limit.
    """

    request_id: str
    operation: str
    worker: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    submitted_at: float = field(default_factory=time.time)
    status: str = "queued"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "operation": self.operation,
            "worker": self.worker,
            "priority": self.priority,
            "submittedAt": self.submitted_at,
            "status": self.status,
        }


@dataclass
class BusMessage:
    topic: str
    payload: Any
    published_at: float = field(default_factory=time.time)


@dataclass
class WorkerState:
    name: str
    limit: int
    in_flight: int = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    completed: int = 0
    cancelled: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "inFlight": self.in_flight,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "failed": self.failed,
            "completed": self.completed,
            "cancelled": self.cancelled,
        }
