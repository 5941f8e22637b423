"""Persistence layer for the code graph knowledge store.

Architecture:

- **SQLite** for structured data (entities, relationships, pending
  relationships, files, embedding metadata) and graph traversal queries.
- **LanceDB** (via :class:`~codegraph_conductor.vector_store.VectorStore`)
  for vector similarity search, one table per embedding model.

Ownership: the indexer is the only writer of entity / relationship / file
rows (:meth:`GraphStore.apply_file_diff`, :meth:`GraphStore.delete_file`);
embedding rows are written only by the semantic worker
(:meth:`GraphStore.upsert_embeddings`, :meth:`GraphStore.prune_embeddings`).
Every write method runs in a single SQLite transaction, so a failure leaves
previously committed state untouched.
"""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import EmbeddingMismatchError, StorageError
from .models import (
    CommitResult,
    EmbeddingRecord,
    Entity,
    EntityDiff,
    FileRecord,
    PendingRelationship,
    Relationship,
    Span,
)
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")
_CAMEL_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")
_IN_CHUNK = 500

_ENTITY_COLUMNS = (
    "id, name, qualname, kind, file_path, start_line, start_column, end_line, "
    "end_column, language, code, docstring, metadata, content_hash, updated_at"
)


def split_identifier(name: str) -> List[str]:
    """``validateEmail`` / ``validate_email`` -> ``["validate", "email"]``."""
    parts: List[str] = []
    for chunk in name.split("_"):
        parts.extend(p.lower() for p in _CAMEL_RE.findall(chunk))
    return parts


def query_tokens(text: str) -> List[str]:
    tokens: List[str] = []
    for raw in _TOKEN_RE.findall(text):
        lowered = raw.lower()
        if lowered not in tokens:
            tokens.append(lowered)
    return tokens


def _like_escape(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _chunks(items: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i: i + size]


class GraphStore:
    """Hybrid store: SQLite for structure, LanceDB for vectors."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir
        self.project_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = project_dir / "graph.db"
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()
        # Per-model vector store cache: model_key -> VectorStore
        self._vector_stores: Dict[str, VectorStore] = {}

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS entities (
                    id           TEXT PRIMARY KEY,
                    name         TEXT NOT NULL,
                    qualname     TEXT NOT NULL,
                    kind         TEXT NOT NULL,
                    file_path    TEXT NOT NULL,
                    start_line   INTEGER NOT NULL,
                    start_column INTEGER NOT NULL,
                    end_line     INTEGER NOT NULL,
                    end_column   INTEGER NOT NULL,
                    language     TEXT NOT NULL,
                    code         TEXT NOT NULL DEFAULT '',
                    docstring    TEXT NOT NULL DEFAULT '',
                    metadata     TEXT,
                    content_hash TEXT NOT NULL,
                    updated_at   REAL NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_identity ON entities(
                    file_path, name, start_line, start_column, end_line, end_column
                );
                CREATE INDEX IF NOT EXISTS idx_entities_file ON entities(file_path);
                CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
                CREATE INDEX IF NOT EXISTS idx_entities_updated ON entities(updated_at);

                CREATE TABLE IF NOT EXISTS relationships (
                    source_id  TEXT NOT NULL REFERENCES entities(id),
                    target_id  TEXT NOT NULL REFERENCES entities(id),
                    type       TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 1.0,
                    file_path  TEXT NOT NULL,
                    PRIMARY KEY (source_id, target_id, type)
                );
                CREATE INDEX IF NOT EXISTS idx_rel_target ON relationships(target_id);
                CREATE INDEX IF NOT EXISTS idx_rel_file ON relationships(file_path);

                CREATE TABLE IF NOT EXISTS pending_relationships (
                    source_id     TEXT NOT NULL REFERENCES entities(id),
                    target_name   TEXT NOT NULL,
                    type          TEXT NOT NULL,
                    file_path     TEXT NOT NULL,
                    target_module TEXT NOT NULL DEFAULT '',
                    PRIMARY KEY (source_id, target_name, type)
                );
                CREATE INDEX IF NOT EXISTS idx_pending_name ON pending_relationships(target_name);
                CREATE INDEX IF NOT EXISTS idx_pending_file ON pending_relationships(file_path);

                CREATE TABLE IF NOT EXISTS files (
                    path         TEXT PRIMARY KEY,
                    hash         TEXT NOT NULL,
                    language     TEXT NOT NULL,
                    last_indexed REAL NOT NULL,
                    status       TEXT NOT NULL DEFAULT 'indexed',
                    error        TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS embeddings (
                    entity_id    TEXT NOT NULL,
                    model_key    TEXT NOT NULL,
                    provider     TEXT NOT NULL,
                    model        TEXT NOT NULL,
                    dimension    INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    updated_at   REAL NOT NULL,
                    PRIMARY KEY (entity_id, model_key)
                );
            """)

    def _write(self, fn, *args: Any) -> Any:
        """Run *fn(cursor, ...)* inside one transaction."""
        with self._lock:
            try:
                with self.conn:
                    return fn(self.conn.cursor(), *args)
            except sqlite3.Error as exc:
                logger.warning("SQLite transaction rolled back: %s", exc)
                raise StorageError(f"Store write failed: {exc}") from exc

    def _read(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Store read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"],
            name=row["name"],
            qualname=row["qualname"],
            kind=row["kind"],
            file_path=row["file_path"],
            span=Span(row["start_line"], row["start_column"], row["end_line"], row["end_column"]),
            language=row["language"],
            code=row["code"],
            docstring=row["docstring"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            content_hash=row["content_hash"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _entity_params(e: Entity) -> Tuple[Any, ...]:
        return (
            e.id, e.name, e.qualname, e.kind, e.file_path,
            e.span.start_line, e.span.start_column, e.span.end_line, e.span.end_column,
            e.language, e.code, e.docstring,
            json.dumps(e.metadata, sort_keys=True) if e.metadata else None,
            e.content_hash, e.updated_at,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file_hash(self, path: str) -> Optional[str]:
        rows = self._read("SELECT hash FROM files WHERE path = ?", (path,))
        return rows[0]["hash"] if rows and rows[0]["hash"] else None

    def get_file(self, path: str) -> Optional[FileRecord]:
        rows = self._read("SELECT * FROM files WHERE path = ?", (path,))
        if not rows:
            return None
        r = rows[0]
        return FileRecord(r["path"], r["hash"], r["language"], r["last_indexed"], r["status"], r["error"])

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._read("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        def _tx(cur: sqlite3.Cursor) -> None:
            cur.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

        self._write(_tx)

    def list_files(self) -> List[FileRecord]:
        return [
            FileRecord(r["path"], r["hash"], r["language"], r["last_indexed"], r["status"], r["error"])
            for r in self._read("SELECT * FROM files ORDER BY path")
        ]

    def mark_file_failed(self, path: str, language: str, error: str) -> None:
        """Record a failed attempt without touching the last good hash."""

        def _tx(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT INTO files (path, hash, language, last_indexed, status, error)
                VALUES (?, '', ?, ?, 'failed', ?)
                ON CONFLICT(path) DO UPDATE SET status = 'failed', error = excluded.error
                """,
                (path, language, time.time(), error[:2000]),
            )

        self._write(_tx)

    # ------------------------------------------------------------------
    # Indexer writes
    # ------------------------------------------------------------------

    def apply_file_diff(
        self,
        record: FileRecord,
        diff: EntityDiff,
        relationships: Sequence[Relationship],
        pending: Sequence[PendingRelationship],
    ) -> CommitResult:
        """Commit one file's entity diff, edges and hash in a single transaction.

        The file hash is written last, inside the same transaction, so a
        half-applied diff can never leave the new hash behind.
        """

        def _tx(cur: sqlite3.Cursor) -> CommitResult:
            result = CommitResult()
            deleted_ids = [e.id for e in diff.deleted]
            if deleted_ids:
                self._delete_entities(cur, deleted_ids, record.path, result)
            if diff.updated:
                # Spans may shift past each other; park them before rewriting.
                cur.executemany(
                    "UPDATE entities SET start_line = -rowid, start_column = -1 WHERE id = ?",
                    [(e.id,) for e in diff.updated],
                )
            if diff.inserted:
                cur.executemany(
                    f"INSERT INTO entities ({_ENTITY_COLUMNS}) VALUES "
                    "(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [self._entity_params(e) for e in diff.inserted],
                )
                result.entities_inserted = len(diff.inserted)
            if diff.updated:
                cur.executemany(
                    """
                    UPDATE entities SET name = ?, qualname = ?, kind = ?, file_path = ?,
                        start_line = ?, start_column = ?, end_line = ?, end_column = ?,
                        language = ?, code = ?, docstring = ?, metadata = ?,
                        content_hash = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    [self._entity_params(e)[1:] + (e.id,) for e in diff.updated],
                )
                result.entities_updated = len(diff.updated)

            self._replace_relationships(cur, record.path, relationships, result)
            self._replace_pending(cur, record.path, pending)
            promotable = diff.inserted + diff.updated
            if promotable:
                self._promote_pending(cur, promotable, record.path, result)

            cur.execute(
                """
                INSERT INTO files (path, hash, language, last_indexed, status, error)
                VALUES (?, ?, ?, ?, 'indexed', '')
                ON CONFLICT(path) DO UPDATE SET hash = excluded.hash,
                    language = excluded.language, last_indexed = excluded.last_indexed,
                    status = 'indexed', error = ''
                """,
                (record.path, record.hash, record.language, record.last_indexed or time.time()),
            )
            return result

        return self._write(_tx)

    def delete_file(self, path: str) -> CommitResult:
        """Remove a file with its entities; incoming edges become pending."""

        def _tx(cur: sqlite3.Cursor) -> CommitResult:
            result = CommitResult()
            ids = [r[0] for r in cur.execute("SELECT id FROM entities WHERE file_path = ?", (path,))]
            if ids:
                self._delete_entities(cur, ids, path, result)
            cur.execute("DELETE FROM relationships WHERE file_path = ?", (path,))
            cur.execute("DELETE FROM pending_relationships WHERE file_path = ?", (path,))
            cur.execute("DELETE FROM files WHERE path = ?", (path,))
            return result

        return self._write(_tx)

    def _delete_entities(
        self,
        cur: sqlite3.Cursor,
        ids: Sequence[str],
        owner_path: str,
        result: CommitResult,
    ) -> None:
        for chunk in _chunks(list(ids)):
            marks = ",".join("?" * len(chunk))
            # Edges from other files into deleted entities wait for a new target.
            incoming = cur.execute(
                f"""
                SELECT r.source_id, r.type, r.file_path, e.name, e.file_path AS target_file
                FROM relationships r JOIN entities e ON e.id = r.target_id
                WHERE r.target_id IN ({marks}) AND r.file_path != ?
                """,
                list(chunk) + [owner_path],
            ).fetchall()
            cur.executemany(
                """
                INSERT OR IGNORE INTO pending_relationships
                    (source_id, target_name, type, file_path, target_module)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (r["source_id"], r["name"], r["type"], r["file_path"], module_name(r["target_file"]))
                    for r in incoming
                ],
            )
            cur.execute(
                f"DELETE FROM relationships WHERE source_id IN ({marks}) OR target_id IN ({marks})",
                list(chunk) + list(chunk),
            )
            result.relationships_deleted += cur.rowcount
            cur.execute(f"DELETE FROM pending_relationships WHERE source_id IN ({marks})", list(chunk))
            cur.execute(f"DELETE FROM entities WHERE id IN ({marks})", list(chunk))
            result.entities_deleted += cur.rowcount

    def _replace_relationships(
        self,
        cur: sqlite3.Cursor,
        path: str,
        relationships: Sequence[Relationship],
        result: CommitResult,
    ) -> None:
        existing = {
            (r["source_id"], r["target_id"], r["type"]): r["confidence"]
            for r in cur.execute(
                "SELECT source_id, target_id, type, confidence FROM relationships WHERE file_path = ?",
                (path,),
            )
        }
        wanted = {rel.key: rel.confidence for rel in relationships}
        stale = [key for key in existing if key not in wanted]
        if stale:
            cur.executemany(
                "DELETE FROM relationships WHERE source_id = ? AND target_id = ? AND type = ?",
                stale,
            )
            result.relationships_deleted += len(stale)
        changed = [
            (key[0], key[1], key[2], conf, path)
            for key, conf in wanted.items()
            if existing.get(key) != conf
        ]
        if changed:
            cur.executemany(
                """
                INSERT OR REPLACE INTO relationships (source_id, target_id, type, confidence, file_path)
                VALUES (?, ?, ?, ?, ?)
                """,
                changed,
            )
            result.relationships_written += len(changed)

    def _replace_pending(
        self,
        cur: sqlite3.Cursor,
        path: str,
        pending: Sequence[PendingRelationship],
    ) -> None:
        existing = {
            (r["source_id"], r["target_name"], r["type"])
            for r in cur.execute(
                "SELECT source_id, target_name, type FROM pending_relationships WHERE file_path = ?",
                (path,),
            )
        }
        wanted = {p.key: p for p in pending}
        stale = [key for key in existing if key not in wanted]
        if stale:
            cur.executemany(
                "DELETE FROM pending_relationships WHERE source_id = ? AND target_name = ? AND type = ?",
                stale,
            )
        fresh = [p for key, p in wanted.items() if key not in existing]
        if fresh:
            cur.executemany(
                """
                INSERT OR REPLACE INTO pending_relationships
                    (source_id, target_name, type, file_path, target_module)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(p.source_id, p.target_name, p.type, p.file_path, p.target_module) for p in fresh],
            )

    def _promote_pending(
        self,
        cur: sqlite3.Cursor,
        new_entities: Sequence[Entity],
        path: str,
        result: CommitResult,
    ) -> None:
        by_name: Dict[str, List[Entity]] = {}
        for e in new_entities:
            if e.kind != "import":
                by_name.setdefault(e.name, []).append(e)
        if not by_name:
            return
        names = list(by_name)
        for chunk in _chunks(names):
            marks = ",".join("?" * len(chunk))
            rows = cur.execute(
                f"""
                SELECT source_id, target_name, type, file_path, target_module
                FROM pending_relationships
                WHERE target_name IN ({marks}) AND file_path != ?
                """,
                list(chunk) + [path],
            ).fetchall()
            for row in rows:
                candidates = by_name[row["target_name"]]
                module = row["target_module"]
                in_module = [c for c in candidates if module and module_matches(c.file_path, module)]
                target = in_module[0] if in_module else candidates[0]
                cur.execute(
                    """
                    INSERT OR IGNORE INTO relationships (source_id, target_id, type, confidence, file_path)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (row["source_id"], target.id, row["type"], 0.9 if in_module else 0.8, row["file_path"]),
                )
                cur.execute(
                    "DELETE FROM pending_relationships WHERE source_id = ? AND target_name = ? AND type = ?",
                    (row["source_id"], row["target_name"], row["type"]),
                )
                result.pending_resolved += 1

    def drop_unqualified_pending(self, paths: Sequence[str]) -> int:
        """Drop pending edges without a module hint that originate in *paths*."""

        def _tx(cur: sqlite3.Cursor) -> int:
            dropped = 0
            for chunk in _chunks(list(paths)):
                marks = ",".join("?" * len(chunk))
                cur.execute(
                    f"DELETE FROM pending_relationships WHERE target_module = '' AND file_path IN ({marks})",
                    list(chunk),
                )
                dropped += cur.rowcount
            return dropped

        return self._write(_tx)

    def reset(self) -> None:
        """Drop every row and every vector table."""

        def _tx(cur: sqlite3.Cursor) -> None:
            for table in ("relationships", "pending_relationships", "embeddings", "entities", "files", "meta"):
                cur.execute(f"DELETE FROM {table}")

        self._write(_tx)
        lister = self.get_vector_store("tables")
        for key in lister.list_model_tables():
            self.get_vector_store(key).clear()
        self._vector_stores.clear()

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        rows = self._read(f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE id = ?", (entity_id,))
        return self._to_entity(rows[0]) if rows else None

    def get_entities(self, ids: Sequence[str]) -> Dict[str, Entity]:
        out: Dict[str, Entity] = {}
        for chunk in _chunks(list(ids)):
            marks = ",".join("?" * len(chunk))
            for row in self._read(f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE id IN ({marks})", chunk):
                out[row["id"]] = self._to_entity(row)
        return out

    def get_entities_for_file(self, path: str, kinds: Optional[Sequence[str]] = None) -> List[Entity]:
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE file_path = ?"
        params: List[Any] = [path]
        if kinds:
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(kinds)
        sql += " ORDER BY start_line, start_column, id"
        return [self._to_entity(r) for r in self._read(sql, params)]

    def find_definitions(self, names: Sequence[str]) -> Dict[str, List[Entity]]:
        """Non-import entities by name, deterministic order within each name."""
        out: Dict[str, List[Entity]] = {}
        for chunk in _chunks(list(names)):
            marks = ",".join("?" * len(chunk))
            rows = self._read(
                f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE name IN ({marks}) "
                "AND kind != 'import' ORDER BY file_path, start_line, id",
                chunk,
            )
            for row in rows:
                out.setdefault(row["name"], []).append(self._to_entity(row))
        return out

    def find_entity(self, id_or_name: str, file_path: Optional[str] = None) -> Optional[Entity]:
        """Resolve an id, qualname or name (optionally scoped to a file)."""
        entity = self.get_entity(id_or_name)
        if entity is not None:
            return entity
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE (qualname = ? OR name = ?) AND kind != 'import'"
        params: List[Any] = [id_or_name, id_or_name]
        if file_path:
            sql += " AND file_path = ?"
            params.append(file_path)
        sql += " ORDER BY (qualname = ?) DESC, file_path, start_line LIMIT 1"
        params.append(id_or_name)
        rows = self._read(sql, params)
        return self._to_entity(rows[0]) if rows else None

    def list_entities(
        self,
        limit: int = 100,
        offset: int = 0,
        kinds: Optional[Sequence[str]] = None,
        path_prefix: str = "",
    ) -> List[Entity]:
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE 1 = 1"
        params: List[Any] = []
        if kinds:
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(kinds)
        if path_prefix:
            # substr instead of LIKE so '_' and '%' in paths match literally
            sql += " AND substr(file_path, 1, ?) = ?"
            params.extend([len(path_prefix), path_prefix])
        sql += " ORDER BY file_path, start_line, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [self._to_entity(r) for r in self._read(sql, params)]

    def recently_changed_entities(self, limit: int) -> List[Entity]:
        rows = self._read(
            f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE kind != 'import' "
            "ORDER BY updated_at DESC, id LIMIT ?",
            (limit,),
        )
        return [self._to_entity(r) for r in rows]

    # ------------------------------------------------------------------
    # Relationship reads
    # ------------------------------------------------------------------

    def relationships_for_file(self, path: str) -> List[Relationship]:
        return [
            Relationship(r["source_id"], r["target_id"], r["type"], r["confidence"])
            for r in self._read(
                "SELECT * FROM relationships WHERE file_path = ? ORDER BY source_id, target_id, type",
                (path,),
            )
        ]

    def pending_for_file(self, path: str) -> List[PendingRelationship]:
        return [
            PendingRelationship(r["source_id"], r["target_name"], r["type"], r["file_path"], r["target_module"])
            for r in self._read(
                "SELECT * FROM pending_relationships WHERE file_path = ? ORDER BY source_id, target_name",
                (path,),
            )
        ]

    def neighbors(self, entity_id: str, types: Optional[Sequence[str]] = None) -> List[Relationship]:
        return self._edges("source_id", entity_id, types)

    def reverse_neighbors(self, entity_id: str, types: Optional[Sequence[str]] = None) -> List[Relationship]:
        return self._edges("target_id", entity_id, types)

    def _edges(self, column: str, entity_id: str, types: Optional[Sequence[str]]) -> List[Relationship]:
        sql = f"SELECT * FROM relationships WHERE {column} = ?"
        params: List[Any] = [entity_id]
        if types:
            sql += f" AND type IN ({','.join('?' * len(types))})"
            params.extend(types)
        sql += " ORDER BY source_id, target_id, type"
        return [
            Relationship(r["source_id"], r["target_id"], r["type"], r["confidence"])
            for r in self._read(sql, params)
        ]

    def relationships_among(self, ids: Sequence[str]) -> List[Relationship]:
        """Edges whose both endpoints are in *ids*."""
        wanted = set(ids)
        out: List[Relationship] = []
        for chunk in _chunks(list(ids)):
            marks = ",".join("?" * len(chunk))
            for r in self._read(
                f"SELECT * FROM relationships WHERE source_id IN ({marks}) "
                "ORDER BY source_id, target_id, type",
                chunk,
            ):
                if r["target_id"] in wanted:
                    out.append(Relationship(r["source_id"], r["target_id"], r["type"], r["confidence"]))
        return out

    def degree_counts(self, ids: Sequence[str]) -> Dict[str, Tuple[int, int]]:
        """``{id: (in_degree, out_degree)}`` ignoring ``contains`` edges."""
        out: Dict[str, Tuple[int, int]] = {i: (0, 0) for i in ids}
        for chunk in _chunks(list(ids)):
            marks = ",".join("?" * len(chunk))
            for row in self._read(
                f"SELECT target_id, COUNT(*) AS n FROM relationships WHERE target_id IN ({marks}) "
                "AND type != 'contains' GROUP BY target_id",
                chunk,
            ):
                out[row["target_id"]] = (row["n"], out[row["target_id"]][1])
            for row in self._read(
                f"SELECT source_id, COUNT(*) AS n FROM relationships WHERE source_id IN ({marks}) "
                "AND type != 'contains' GROUP BY source_id",
                chunk,
            ):
                out[row["source_id"]] = (out[row["source_id"]][0], row["n"])
        return out

    def hotspots(self, metric: str, limit: int) -> List[Tuple[Entity, float]]:
        if metric == "coupling":
            score_sql = (
                "(SELECT COUNT(*) FROM relationships r WHERE r.type != 'contains' "
                "AND (r.source_id = e.id OR r.target_id = e.id))"
            )
        elif metric == "fan_in":
            score_sql = (
                "(SELECT COUNT(*) FROM relationships r WHERE r.type != 'contains' AND r.target_id = e.id)"
            )
        else:
            # complexity: size in lines plus outgoing calls
            score_sql = (
                "(e.end_line - e.start_line + 1) + (SELECT COUNT(*) FROM relationships r "
                "WHERE r.type = 'calls' AND r.source_id = e.id)"
            )
        rows = self._read(
            f"SELECT {', '.join('e.' + c.strip() for c in _ENTITY_COLUMNS.split(','))}, "
            f"{score_sql} AS score FROM entities e "
            "WHERE e.kind IN ('function', 'method', 'class') ORDER BY score DESC, e.id LIMIT ?",
            (limit,),
        )
        return [(self._to_entity(r), float(r["score"])) for r in rows]

    # ------------------------------------------------------------------
    # Structural (lexical) search
    # ------------------------------------------------------------------

    def lexical_search(
        self,
        query: str,
        limit: int = 50,
        kinds: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
        file_filter: Optional[str] = None,
    ) -> List[Tuple[Entity, float]]:
        """Rank entities by token matches on name / qualname / docs / code.

        A small in-degree boost favours symbols that are referenced a lot.
        Import entities are excluded unless *kinds* asks for them.
        """
        tokens = query_tokens(query)
        if not tokens:
            return []

        clauses: List[str] = []
        params: List[Any] = []
        for token in tokens:
            pattern = f"%{_like_escape(token)}%"
            clauses.append(
                "(lower(name) LIKE ? ESCAPE '\\' OR lower(qualname) LIKE ? ESCAPE '\\' "
                "OR lower(docstring) LIKE ? ESCAPE '\\' OR lower(code) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 4)
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE ({' OR '.join(clauses)})"
        if kinds:
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(kinds)
        else:
            sql += " AND kind != 'import'"
        if languages:
            sql += f" AND language IN ({','.join('?' * len(languages))})"
            params.extend(languages)
        if file_filter:
            sql += " AND file_path LIKE ?"
            params.append(file_filter)

        entities = [self._to_entity(r) for r in self._read(sql, params)]
        degrees = self.degree_counts([e.id for e in entities])
        phrase = "_".join(tokens)

        scored: List[Tuple[Entity, float]] = []
        for e in entities:
            name = e.name.lower()
            parts = split_identifier(e.name)
            qual = e.qualname.lower()
            doc = e.docstring.lower()
            code = e.code.lower()
            score = 0.0
            for token in tokens:
                if token == name:
                    score += 3.0
                elif token in parts:
                    score += 2.0
                elif token in name:
                    score += 1.5
                elif token in qual:
                    score += 1.0
                elif token in doc:
                    score += 0.5
                elif token in code:
                    score += 0.25
            if len(tokens) > 1 and phrase == name:
                score += 2.0
            if score <= 0.0:
                continue
            score += 0.1 * math.log1p(degrees.get(e.id, (0, 0))[0])
            scored.append((e, score))

        scored.sort(key=lambda item: (-item[1], item[0].id))
        return scored[:limit]

    # ------------------------------------------------------------------
    # Embeddings (semantic worker writes)
    # ------------------------------------------------------------------

    def get_vector_store(self, model_key: str) -> VectorStore:
        """Get (or open) the LanceDB table for one embedding model."""
        with self._lock:
            if model_key not in self._vector_stores:
                self._vector_stores[model_key] = VectorStore(self.project_dir, model_key)
            return self._vector_stores[model_key]

    def upsert_embeddings(self, model_key: str, records: Sequence[EmbeddingRecord]) -> int:
        if not records:
            return 0
        dims = {r.dimension for r in records}
        if len(dims) != 1:
            raise EmbeddingMismatchError(f"Mixed embedding dimensions in one batch: {sorted(dims)}")
        entities = self.get_entities([r.entity_id for r in records])
        live = [r for r in records if r.entity_id in entities]
        if not live:
            return 0

        vs = self.get_vector_store(model_key)
        vs.upsert([
            {
                "id": r.entity_id,
                "vector": r.vector,
                "file_path": entities[r.entity_id].file_path,
                "kind": entities[r.entity_id].kind,
                "content_hash": r.content_hash,
            }
            for r in live
        ])

        now = time.time()

        def _tx(cur: sqlite3.Cursor) -> None:
            cur.executemany(
                """
                INSERT OR REPLACE INTO embeddings
                    (entity_id, model_key, provider, model, dimension, content_hash, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (r.entity_id, model_key, r.provider, r.model, r.dimension, r.content_hash, now)
                    for r in live
                ],
            )

        self._write(_tx)
        return len(live)

    def entities_needing_embedding(self, model_key: str, limit: int) -> List[Entity]:
        """Entities with no embedding for *model_key* or a stale one, newest first."""
        rows = self._read(
            f"""
            SELECT {', '.join('e.' + c.strip() for c in _ENTITY_COLUMNS.split(','))}
            FROM entities e
            LEFT JOIN embeddings m ON m.entity_id = e.id AND m.model_key = ?
            WHERE e.kind != 'import' AND (m.entity_id IS NULL OR m.content_hash != e.content_hash)
            ORDER BY e.updated_at DESC, e.id
            LIMIT ?
            """,
            (model_key, limit),
        )
        return [self._to_entity(r) for r in rows]

    def embedding_hashes(self, model_key: str, ids: Sequence[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for chunk in _chunks(list(ids)):
            marks = ",".join("?" * len(chunk))
            for row in self._read(
                f"SELECT entity_id, content_hash FROM embeddings WHERE model_key = ? AND entity_id IN ({marks})",
                [model_key] + list(chunk),
            ):
                out[row["entity_id"]] = row["content_hash"]
        return out

    def prune_embeddings(self, model_key: str) -> int:
        """Delete embeddings whose entity no longer exists."""
        orphans = [
            r["entity_id"]
            for r in self._read(
                "SELECT m.entity_id FROM embeddings m LEFT JOIN entities e ON e.id = m.entity_id "
                "WHERE m.model_key = ? AND e.id IS NULL",
                (model_key,),
            )
        ]
        if not orphans:
            return 0
        self.get_vector_store(model_key).delete_ids(orphans)

        def _tx(cur: sqlite3.Cursor) -> None:
            for chunk in _chunks(orphans):
                marks = ",".join("?" * len(chunk))
                cur.execute(
                    f"DELETE FROM embeddings WHERE model_key = ? AND entity_id IN ({marks})",
                    [model_key] + list(chunk),
                )

        self._write(_tx)
        return len(orphans)

    def vector_search(
        self,
        model_key: str,
        vector: List[float],
        limit: int = 50,
        kinds: Optional[Sequence[str]] = None,
        languages: Optional[Sequence[str]] = None,
        exclude_ids: Optional[Set[str]] = None,
    ) -> List[Tuple[Entity, float]]:
        """Nearest entities for *vector* in the *model_key* table.

        Vectors computed from outdated entity content are ignored.
        """
        vs = self.get_vector_store(model_key)
        if vs.dimension is not None and vs.dimension != len(vector):
            raise EmbeddingMismatchError(
                f"Query vector has dimension {len(vector)}, index '{model_key}' has {vs.dimension}"
            )
        where_sql = None
        if kinds:
            where_sql = "kind IN (" + ", ".join("'" + k.replace("'", "''") + "'" for k in kinds) + ")"
        raw = vs.search(vector, limit=limit * 3 + len(exclude_ids or ()), where_sql=where_sql)
        entities = self.get_entities([r[0] for r in raw])

        hits: List[Tuple[Entity, float]] = []
        for entity_id, similarity, content_hash in raw:
            entity = entities.get(entity_id)
            if entity is None or entity.content_hash != content_hash:
                continue
            if exclude_ids and entity_id in exclude_ids:
                continue
            if languages and entity.language not in languages:
                continue
            hits.append((entity, similarity))
        hits.sort(key=lambda item: (-item[1], item[0].id))
        return hits[:limit]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        def _count(sql: str) -> int:
            return int(self._read(sql)[0][0])

        return {
            "entities": _count("SELECT COUNT(*) FROM entities"),
            "relationships": _count("SELECT COUNT(*) FROM relationships"),
            "pendingRelationships": _count("SELECT COUNT(*) FROM pending_relationships"),
            "files": _count("SELECT COUNT(*) FROM files"),
            "failedFiles": _count("SELECT COUNT(*) FROM files WHERE status = 'failed'"),
            "entitiesByKind": {
                r["kind"]: r["n"]
                for r in self._read("SELECT kind, COUNT(*) AS n FROM entities GROUP BY kind ORDER BY kind")
            },
            "relationshipsByType": {
                r["type"]: r["n"]
                for r in self._read("SELECT type, COUNT(*) AS n FROM relationships GROUP BY type ORDER BY type")
            },
            "embeddingsByModel": {
                r["model_key"]: r["n"]
                for r in self._read(
                    "SELECT model_key, COUNT(*) AS n FROM embeddings GROUP BY model_key ORDER BY model_key"
                )
            },
        }


def module_name(rel_path: str) -> str:
    """``pkg/sub/mod.py`` -> ``pkg.sub.mod``; ``pkg/__init__.py`` -> ``pkg``."""
    stem = rel_path.rsplit(".", 1)[0] if "." in Path(rel_path).name else rel_path
    parts = stem.split("/")
    if parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def module_matches(rel_path: str, module: str) -> bool:
    """Whether the file at *rel_path* is (a suffix match of) *module*."""
    name = module_name(rel_path)
    return name == module or name.endswith("." + module)
