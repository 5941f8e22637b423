"""Incremental indexing: discover, hash, parse, diff, resolve, commit.

Per file::

    read bytes -> sha256 -> unchanged? skip
               -> parse (worker thread, bounded)
               -> diff against stored entities (ids survive edits, renames, moves)
               -> resolve symbolic edges to ids (or keep them pending)
               -> one store transaction, file hash written last

Every file runs under its own ``asyncio.Lock`` so two index runs never
interleave diffs for the same path.  Resolution and commit additionally run
under one indexer-wide lock so an edge can not go pending after its target
was committed by a concurrent file.

Calls by bare name may point at a file committed later in the same run, so
they go pending too; whatever is still pending once every file of the run
has been committed names nothing in the project and is dropped.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .bus import GRAPH_RESET, INDEX_COMPLETED, INDEX_FILE_FAILED, KnowledgeBus
from .config import SKIP_DIRS, IndexSettings
from .errors import NotFoundError, StorageError
from .models import (
    CommitResult,
    Entity,
    EntityDiff,
    FileRecord,
    IndexSummary,
    ParsedEntity,
    ParsedFile,
    PendingRelationship,
    Relationship,
    make_entity_id,
)
from .parser import CodeParser, ParseError, language_for
from .storage import GraphStore, module_matches, module_name

logger = logging.getLogger(__name__)

SAME_FILE_CONFIDENCE = 1.0
MODULE_MATCH_CONFIDENCE = 0.9
UNIQUE_GLOBAL_CONFIDENCE = 0.8
AMBIGUOUS_CONFIDENCE = 0.5

PROJECT_ROOT_KEY = "project_root"


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def absolute_module(rel_path: str, module: str, level: int) -> str:
    """Resolve a (possibly relative) import against the importing file."""
    if level <= 0:
        return module
    package = module_name(rel_path).split(".")
    if not rel_path.endswith("__init__.py"):
        package = package[:-1]
    base = package[: max(len(package) - (level - 1), 0)]
    return ".".join(base + ([module] if module else []))


def _is_excluded(rel_path: str, patterns: Sequence[str]) -> bool:
    parts = rel_path.split("/")
    for pattern in patterns:
        if fnmatch.fnmatch(rel_path, pattern) or any(fnmatch.fnmatch(p, pattern) for p in parts):
            return True
    return False


# ===================================================================
# Entity diff
# ===================================================================

def _dedupe(parsed: Iterable[ParsedEntity]) -> List[ParsedEntity]:
    """Drop repeated (name, kind, span), e.g. ``import os.path, os.sys``."""
    seen: Set[Tuple] = set()
    out: List[ParsedEntity] = []
    for pe in parsed:
        key = (pe.name, pe.kind, pe.span.start_line, pe.span.start_column,
               pe.span.end_line, pe.span.end_column)
        if key in seen:
            continue
        seen.add(key)
        out.append(pe)
    return out


def diff_entities(
    old: Sequence[Entity],
    parsed: ParsedFile,
    now: Optional[float] = None,
) -> EntityDiff:
    """Match parsed entities against the stored ones for the same file.

    Matching runs in passes, each over what is still unmatched:

    1. same ``(qualname, kind)``: the same symbol, possibly edited;
    2. same ``(kind, start_line)``: a rename in place;
    3. same ``(kind, content_hash)``: a move.

    Matched entities keep their stored id.  Leftover old entities are
    deleted and leftover parsed ones get a fresh id.
    """
    now = time.time() if now is None else now
    new = _dedupe(parsed.entities)
    remaining: List[Entity] = sorted(old, key=lambda e: (e.span.start_line, e.span.start_column, e.id))
    matches: Dict[int, Entity] = {}

    passes = (
        (lambda e: (e.qualname, e.kind), lambda p: (p.qualname, p.kind)),
        (lambda e: (e.kind, e.span.start_line), lambda p: (p.kind, p.span.start_line)),
        (lambda e: (e.kind, e.content_hash), lambda p: (p.kind, p.content_hash)),
    )
    for old_key, new_key in passes:
        pool: Dict[Tuple, List[Entity]] = defaultdict(list)
        for e in remaining:
            pool[old_key(e)].append(e)
        for i, pe in enumerate(new):
            if i in matches:
                continue
            bucket = pool.get(new_key(pe))
            if bucket:
                matches[i] = bucket.pop(0)
        matched_ids = {e.id for e in matches.values()}
        remaining = [e for e in remaining if e.id not in matched_ids]

    diff = EntityDiff(deleted=remaining)
    used_ids = {e.id for e in old}
    for i, pe in enumerate(new):
        previous = matches.get(i)
        if previous is not None:
            entity = _to_entity(pe, previous.id, parsed, previous.updated_at)
            if _same_content(previous, entity):
                diff.unchanged.append(previous)
            else:
                entity.updated_at = now
                diff.updated.append(entity)
            continue
        base_id = make_entity_id(parsed.path, pe.kind, pe.qualname, pe.span.start_line)
        entity_id, n = base_id, 1
        while entity_id in used_ids:
            n += 1
            entity_id = f"{base_id}-{n}"
        used_ids.add(entity_id)
        diff.inserted.append(_to_entity(pe, entity_id, parsed, now))
    return diff


def _to_entity(pe: ParsedEntity, entity_id: str, parsed: ParsedFile, updated_at: float) -> Entity:
    return Entity(
        id=entity_id,
        name=pe.name,
        qualname=pe.qualname,
        kind=pe.kind,
        file_path=parsed.path,
        span=pe.span,
        language=parsed.language,
        code=pe.code,
        docstring=pe.docstring,
        metadata=dict(pe.metadata),
        content_hash=pe.content_hash,
        updated_at=updated_at,
    )


def _same_content(a: Entity, b: Entity) -> bool:
    return (
        a.name == b.name
        and a.qualname == b.qualname
        and a.span == b.span
        and a.content_hash == b.content_hash
        and a.metadata == b.metadata
        and a.language == b.language
    )


# ===================================================================
# Relationship resolution
# ===================================================================

class _Resolver:
    """Turns a file's symbolic edges into id edges or pending edges."""

    def __init__(
        self,
        store: GraphStore,
        parsed: ParsedFile,
        entities: Sequence[Entity],
        local_modules: Set[str],
    ) -> None:
        self.store = store
        self.parsed = parsed
        self.local_modules = local_modules
        self.defs_by_qualname: Dict[str, Entity] = {}
        self.defs_by_name: Dict[str, List[Entity]] = defaultdict(list)
        self.imports: Dict[str, Entity] = {}
        for e in sorted(entities, key=lambda x: (x.span.start_line, x.span.start_column)):
            if e.kind == "import":
                self.imports.setdefault(e.name, e)
            else:
                self.defs_by_qualname.setdefault(e.qualname, e)
                self.defs_by_name[e.name].append(e)
        self._global_cache: Dict[str, List[Entity]] = {}

    def _global(self, name: str) -> List[Entity]:
        if name not in self._global_cache:
            found = self.store.find_definitions([name]).get(name, [])
            self._global_cache[name] = [e for e in found if e.file_path != self.parsed.path]
        return self._global_cache[name]

    def _has_local_module(self, module: str) -> bool:
        return any(m == module or m.endswith("." + module) for m in self.local_modules)

    def _import_target(self, imp: Entity, attribute: Optional[str]) -> Tuple[str, str]:
        """Name and absolute module reached through an import binding.

        ``attribute`` is set for ``binding.attribute`` access.
        """
        meta = imp.metadata
        module = absolute_module(self.parsed.path, meta.get("module", ""), int(meta.get("level", 0)))
        imported = meta.get("imported", "")
        if attribute is None:
            if not imported:
                # calling a bare module object
                return "", ""
            return imported.split(".")[-1], module
        if imported:
            module = f"{module}.{imported}" if module else imported
        return attribute, module

    def resolve(self) -> Tuple[List[Relationship], List[PendingRelationship]]:
        edges: Dict[Tuple[str, str, str], Relationship] = {}
        pending: Dict[Tuple[str, str, str], PendingRelationship] = {}

        for rel in self.parsed.relationships:
            if rel.type == "imports":
                source = self.imports.get(rel.source)
            else:
                source = self.defs_by_qualname.get(rel.source)
            if source is None:
                continue

            if rel.type == "contains":
                target = self.defs_by_qualname.get(rel.target)
                if target is not None:
                    self._add(edges, Relationship(source.id, target.id, "contains", SAME_FILE_CONFIDENCE))
                continue

            if rel.type == "imports":
                module = absolute_module(self.parsed.path, rel.target_module,
                                         int(source.metadata.get("level", 0)))
                name = rel.target.split(".")[-1]
                self._link(edges, pending, source, name, module, "imports", allow_local=False)
                continue

            name, module = self._interpret(source, rel.target)
            if not name:
                continue
            self._link(edges, pending, source, name, module, rel.type, allow_local=True)

        return (
            sorted(edges.values(), key=lambda r: r.key),
            sorted(pending.values(), key=lambda p: p.key),
        )

    def _interpret(self, source: Entity, target: str) -> Tuple[str, str]:
        """``(name, module hint)`` for a raw call / base-class name."""
        parts = target.split(".")
        if parts[0] in ("self", "cls") and len(parts) == 2:
            owner = source.qualname.rsplit(".", 1)[0] if "." in source.qualname else ""
            method = self.defs_by_qualname.get(f"{owner}.{parts[1]}")
            if method is not None:
                return method.qualname, "@local"
            return parts[1], ""
        if len(parts) == 1:
            if parts[0] not in self.defs_by_name and parts[0] in self.imports:
                return self._import_target(self.imports[parts[0]], None)
            return parts[0], ""
        head = self.imports.get(parts[0])
        if head is not None and len(parts) == 2 and parts[0] not in self.defs_by_name:
            return self._import_target(head, parts[1])
        return parts[-1], ""

    def _link(
        self,
        edges: Dict[Tuple[str, str, str], Relationship],
        pending: Dict[Tuple[str, str, str], PendingRelationship],
        source: Entity,
        name: str,
        module: str,
        edge_type: str,
        allow_local: bool,
    ) -> None:
        if module == "@local":
            target = self.defs_by_qualname[name]
            self._add(edges, Relationship(source.id, target.id, edge_type, SAME_FILE_CONFIDENCE))
            return

        if allow_local and not module:
            local = self.defs_by_name.get(name, [])
            if local:
                top = next((e for e in local if e.qualname == name), local[0])
                self._add(edges, Relationship(source.id, top.id, edge_type, SAME_FILE_CONFIDENCE))
                return

        candidates = self._global(name)
        if module:
            in_module = [c for c in candidates if module_matches(c.file_path, module)]
            if len(in_module) == 1:
                self._add(edges, Relationship(source.id, in_module[0].id, edge_type, MODULE_MATCH_CONFIDENCE))
                return
            if in_module:
                candidates = in_module
        if len(candidates) == 1:
            self._add(edges, Relationship(source.id, candidates[0].id, edge_type, UNIQUE_GLOBAL_CONFIDENCE))
            return
        if candidates:
            self._add(edges, Relationship(source.id, candidates[0].id, edge_type, AMBIGUOUS_CONFIDENCE))
            return

        # Only wait for targets that can still show up in this project.  Bare
        # names wait until the end of the run, see Indexer.index_directory.
        if module and not self._has_local_module(module):
            return
        p = PendingRelationship(source.id, name, edge_type, self.parsed.path, module)
        pending.setdefault(p.key, p)

    @staticmethod
    def _add(edges: Dict[Tuple[str, str, str], Relationship], rel: Relationship) -> None:
        current = edges.get(rel.key)
        if current is None or current.confidence < rel.confidence:
            edges[rel.key] = rel


# ===================================================================
# Indexer
# ===================================================================

class Indexer:
    def __init__(
        self,
        store: GraphStore,
        parser: CodeParser,
        bus: KnowledgeBus,
        settings: Optional[IndexSettings] = None,
    ) -> None:
        self.store = store
        self.parser = parser
        self.bus = bus
        self.settings = settings or IndexSettings()
        self._file_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._commit_lock = asyncio.Lock()
        self._parse_slots = asyncio.Semaphore(max(1, self.settings.parse_concurrency))

    @asynccontextmanager
    async def _file_lock(self, rel_path: str) -> AsyncIterator[None]:
        """Serialize work on *rel_path*; the lock is dropped once nobody holds or awaits it."""
        lock = self._file_locks.get(rel_path)
        if lock is None:
            lock = self._file_locks[rel_path] = asyncio.Lock()
        self._lock_users[rel_path] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[rel_path] -= 1
            if not self._lock_users[rel_path]:
                del self._lock_users[rel_path]
                del self._file_locks[rel_path]

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self, root: Path, exclude_patterns: Sequence[str] = ()) -> List[str]:
        """Relative posix paths of parseable files under *root*, sorted."""
        found: List[str] = []
        for file_path in sorted(root.rglob("*")):
            if not file_path.is_file():
                continue
            rel = file_path.relative_to(root)
            if any(part in SKIP_DIRS or part.endswith(".egg-info") for part in rel.parts[:-1]):
                continue
            rel_path = rel.as_posix()
            if exclude_patterns and _is_excluded(rel_path, exclude_patterns):
                continue
            if self.parser.supports(file_path):
                found.append(rel_path)
        return found

    def _project_base(self, root: Path, request_id: Optional[str]) -> Tuple[Path, str]:
        """Directory stored paths are relative to, and the prefix *root* adds to them.

        A store holds one project.  Indexing a directory inside the recorded
        project root refreshes only that subtree; any other directory becomes
        the new project root and replaces what was stored.
        """
        recorded = self.store.get_meta(PROJECT_ROOT_KEY)
        if recorded:
            project = Path(recorded)
            if root == project:
                return root, ""
            try:
                rel = root.relative_to(project)
            except ValueError:
                logger.warning("[%s] Project root changed from %s to %s; replacing stored files",
                               request_id, project, root)
            else:
                return project, rel.as_posix() + "/"
        self.store.set_meta(PROJECT_ROOT_KEY, str(root))
        return root, ""

    # ------------------------------------------------------------------
    # Directory run
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        async with self._commit_lock:
            await asyncio.to_thread(self.store.reset)
        self.bus.publish(GRAPH_RESET, {"resetAt": time.time()})

    async def index_directory(
        self,
        directory: str,
        incremental: bool = True,
        reset: bool = False,
        exclude_patterns: Sequence[str] = (),
        full_scan: bool = False,
        request_id: Optional[str] = None,
    ) -> IndexSummary:
        root = Path(directory).expanduser().resolve()
        if not root.is_dir():
            raise NotFoundError(f"Directory not found: {directory}")

        started = time.perf_counter()
        summary = IndexSummary(directory=str(root))
        if reset:
            await self.reset()
        force = full_scan or reset or not incremental

        base, prefix = await asyncio.to_thread(self._project_base, root, request_id)
        found = await asyncio.to_thread(self.discover, root, list(exclude_patterns))
        paths = [prefix + p for p in found]
        local_modules = {module_name(p) for p in paths}
        if prefix:
            local_modules.update(module_name(r.path) for r in await asyncio.to_thread(self.store.list_files))
        logger.info("[%s] Indexing %d files under %s (force=%s)", request_id, len(paths), root, force)

        changed_files: List[str] = []
        results = await asyncio.gather(*(
            self._index_one(base, rel_path, force, local_modules, summary, request_id)
            for rel_path in paths
        ))
        for rel_path, changed in zip(paths, results):
            if changed:
                changed_files.append(rel_path)

        on_disk = set(paths)
        stored = await asyncio.to_thread(self.store.list_files)
        deleted_files: List[str] = []
        for record in stored:
            if record.path in on_disk or not record.path.startswith(prefix):
                continue
            async with self._file_lock(record.path):
                async with self._commit_lock:
                    commit = await asyncio.to_thread(self.store.delete_file, record.path)
            summary.absorb(commit)
            summary.deleted_files += 1
            deleted_files.append(record.path)

        if paths:
            async with self._commit_lock:
                dropped = await asyncio.to_thread(self.store.drop_unqualified_pending, paths)
            logger.debug("[%s] Dropped %d unresolved bare-name edges", request_id, dropped)

        summary.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "[%s] Indexed %s: processed=%d skipped=%d failed=%d deleted=%d in %.0f ms",
            request_id, root, summary.processed, summary.skipped, summary.failed,
            summary.deleted_files, summary.duration_ms,
        )
        self.bus.publish(INDEX_COMPLETED, {
            "directory": str(root),
            "changedEntityIds": list(summary.changed_entity_ids),
            "files": changed_files,
            "deletedFiles": deleted_files,
            "requestId": request_id,
        })
        return summary

    async def _index_one(
        self,
        root: Path,
        rel_path: str,
        force: bool,
        local_modules: Set[str],
        summary: IndexSummary,
        request_id: Optional[str],
    ) -> bool:
        """Index one file; returns whether it changed the store."""
        language = language_for(Path(rel_path)) or "unknown"
        async with self._file_lock(rel_path):
            try:
                data = await asyncio.to_thread((root / rel_path).read_bytes)
            except OSError as exc:
                await self._fail(rel_path, language, f"read failed: {exc}", summary, request_id)
                return False
            if len(data) > self.settings.max_file_bytes:
                logger.info("[%s] Skipping %s (%d bytes)", request_id, rel_path, len(data))
                summary.skipped += 1
                return False

            digest = file_digest(data)
            stored = await asyncio.to_thread(self.store.get_file, rel_path)
            # a failed file keeps its last good hash; retry it even if reverted
            if stored is not None and stored.hash == digest and stored.status != "failed" and not force:
                summary.skipped += 1
                return False

            try:
                async with self._parse_slots:
                    parsed = await asyncio.to_thread(
                        self.parser.parse_source, rel_path, data.decode("utf-8", errors="replace"),
                    )
            except ParseError as exc:
                await self._fail(rel_path, language, str(exc), summary, request_id)
                return False
            except Exception as exc:
                logger.debug("[%s] Parser crashed on %s", request_id, rel_path, exc_info=True)
                await self._fail(rel_path, language, f"{type(exc).__name__}: {exc}", summary, request_id)
                return False

            try:
                async with self._commit_lock:
                    commit, diff = await asyncio.to_thread(
                        self._commit, rel_path, digest, parsed, local_modules,
                    )
            except StorageError as exc:
                await self._fail(rel_path, language, exc.message, summary, request_id)
                return False
            except Exception as exc:
                logger.debug("[%s] Commit crashed on %s", request_id, rel_path, exc_info=True)
                await self._fail(rel_path, language, f"{type(exc).__name__}: {exc}", summary, request_id)
                return False

        summary.processed += 1
        summary.absorb(commit)
        summary.changed_entity_ids.extend(e.id for e in diff.inserted + diff.updated)
        return commit.writes > 0

    def _commit(
        self,
        rel_path: str,
        digest: str,
        parsed: ParsedFile,
        local_modules: Set[str],
    ) -> Tuple[CommitResult, EntityDiff]:
        old = self.store.get_entities_for_file(rel_path)
        diff = diff_entities(old, parsed)
        relationships, pending = _Resolver(self.store, parsed, diff.current, local_modules).resolve()
        record = FileRecord(path=rel_path, hash=digest, language=parsed.language, last_indexed=time.time())
        commit = self.store.apply_file_diff(record, diff, relationships, pending)
        if commit.writes:
            logger.debug(
                "%s: +%d ~%d -%d entities, %d edges written",
                rel_path, commit.entities_inserted, commit.entities_updated,
                commit.entities_deleted, commit.relationships_written,
            )
        return commit, diff

    async def _fail(
        self,
        rel_path: str,
        language: str,
        message: str,
        summary: IndexSummary,
        request_id: Optional[str],
    ) -> None:
        logger.warning("[%s] Failed to index %s: %s", request_id, rel_path, message)
        summary.failed += 1
        summary.failures.add(rel_path, "INDEX_FAILED", message)
        try:
            await asyncio.to_thread(self.store.mark_file_failed, rel_path, language, message)
        except StorageError as exc:
            logger.error("[%s] Could not record failure for %s: %s", request_id, rel_path, exc.message)
        self.bus.publish(INDEX_FILE_FAILED, {"path": rel_path, "error": message, "requestId": request_id})

    # ------------------------------------------------------------------
    # Single file (no writes)
    # ------------------------------------------------------------------

    async def parse_only(self, file_path: str, root: Optional[str] = None) -> ParsedFile:
        path = Path(file_path).expanduser()
        base = Path(root).expanduser() if root else None
        if base is not None and not path.is_absolute():
            path = base / path
        if not path.is_file():
            raise NotFoundError(f"File not found: {file_path}")
        if not self.parser.supports(path):
            raise ParseError(f"Unsupported file type: {path.suffix or path.name}")
        project_root = base.resolve() if base is not None else path.resolve().parent
        async with self._parse_slots:
            return await asyncio.to_thread(self.parser.parse_file, path.resolve(), project_root)
