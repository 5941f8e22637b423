"""Conductor: the single entry point that routes operations to workers.

The conductor validates arguments, admits or rejects the call against the
target worker's concurrency limit, runs the handler (racing it against an
optional cancel event), records metrics and normalizes every failure into a
:class:`~codegraph_conductor.errors.ConductorError` carrying the request id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set

import httpx

from . import __version__
from .agents import BaseAgent, IndexerAgent, ParserAgent, QueryAgent, SemanticAgent, SystemAgent
from .bus import GRAPH_RESET, INDEX_COMPLETED, KnowledgeBus
from .cache import SemanticCache
from .config import Settings
from .embeddings import EmbeddingProvider, get_embedding_provider
from .errors import (
    AgentBusyError,
    ConductorError,
    NotFoundError,
    OperationCancelled,
    OperationError,
)
from .hybrid_search import HybridSearchEngine
from .indexer import Indexer
from .metrics import MetricsStore
from .models import BusMessage, Task, WorkerState
from .operations import WORKERS, get_operation, validate_args
from .parser import CodeParser
from .rerank import RerankProvider, get_reranker
from .storage import GraphStore

logger = logging.getLogger(__name__)


class Conductor:
    """Owns the workers, the bus, the cache and the metrics of one project store."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[GraphStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        reranker: Optional[RerankProvider] = None,
        parser: Optional[CodeParser] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store or GraphStore(self.settings.data_dir)
        self.embedder = embedder or get_embedding_provider(self.settings.embeddings, transport)
        self.reranker = reranker if reranker is not None else get_reranker(self.settings.rerank, transport)
        self.bus = KnowledgeBus(self.settings.bus.retained_messages)
        self.cache = SemanticCache(self.settings.cache.max_entries)
        self.metrics = MetricsStore()

        parser = parser or CodeParser(self.settings.index.parser_backend)
        self.indexer = Indexer(self.store, parser, self.bus, self.settings.index)
        self.engine = HybridSearchEngine(
            self.store,
            self.embedder,
            self.reranker,
            self.settings.fusion,
            self.cache,
            scope=str(self.settings.data_dir),
        )
        self.workers: Dict[str, BaseAgent] = {
            "parser": ParserAgent(self.indexer),
            "indexer": IndexerAgent(self.indexer),
            "semantic": SemanticAgent(
                self.store, self.engine, self.embedder, self.bus, self.cache,
                self.settings.cache, self.settings.index,
            ),
            "query": QueryAgent(self.store, self.engine),
            "system": SystemAgent(self),
        }
        self.states: Dict[str, WorkerState] = {
            name: WorkerState(name=name, limit=self.settings.workers.limit_for(name)) for name in WORKERS
        }
        self._background: Set[asyncio.Task] = set()
        self._active: Set[Task] = set()
        self._subscriptions = [
            self.bus.subscribe(INDEX_COMPLETED, self._on_index_completed),
            self.bus.subscribe(GRAPH_RESET, self._on_graph_reset),
        ]
        self._closed = False

    # ------------------------------------------------------------------
    # Bus handlers
    # ------------------------------------------------------------------

    def _on_index_completed(self, message: BusMessage) -> None:
        self.cache.clear()
        changed = message.payload.get("changedEntityIds") or []
        deleted = message.payload.get("deletedFiles") or []
        if changed or deleted:
            origin = message.payload.get("requestId") or uuid.uuid4().hex[:8]
            self.spawn("warmup", {}, request_id=f"warmup-{origin}")

    def _on_graph_reset(self, message: BusMessage) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _admit(self, worker: str, request_id: str) -> WorkerState:
        """Take a slot on *worker* or fail fast; the caller must release it."""
        state = self.states[worker]
        if state.in_flight >= state.limit:
            state.rejected += 1
            raise AgentBusyError(worker, state.in_flight, state.limit, request_id=request_id)
        state.in_flight += 1
        state.accepted += 1
        return state

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def submit(
        self,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        request_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Run *operation* and return its result, or raise a ``ConductorError``."""
        request_id = request_id or uuid.uuid4().hex[:12]
        try:
            spec = get_operation(operation)
            parsed = validate_args(spec, args)
        except ConductorError as exc:
            exc.request_id = request_id
            raise

        worker = self.workers[spec.worker]
        task = Task(request_id, operation, spec.worker, payload=parsed.model_dump(by_alias=True))
        try:
            state = self._admit(spec.worker, request_id)
        except AgentBusyError:
            task.status = "rejected"
            self.metrics.record_rejection(operation, spec.worker)
            logger.warning("[%s] %s rejected: worker '%s' busy", request_id, operation, spec.worker)
            raise

        task.status = "running"
        self._active.add(task)
        started = self.metrics.record_start(operation, spec.worker)
        logger.debug("[%s] %s -> %s", request_id, operation, spec.worker)
        try:
            result = await self._run(worker.handle(operation, parsed, request_id), cancel_event)
        except OperationCancelled:
            task.status = "cancelled"
            state.cancelled += 1
            self.metrics.record_end(operation, spec.worker, started, "cancelled")
            logger.info("[%s] %s cancelled", request_id, operation)
            raise OperationCancelled(f"Operation '{operation}' was cancelled", request_id=request_id) from None
        except asyncio.CancelledError:
            task.status = "cancelled"
            state.cancelled += 1
            self.metrics.record_end(operation, spec.worker, started, "cancelled")
            raise
        except ConductorError as exc:
            task.status = "failed"
            state.failed += 1
            exc.request_id = request_id
            self.metrics.record_end(operation, spec.worker, started, "failure", exc.code)
            if isinstance(exc, NotFoundError):
                logger.info("[%s] %s: %s", request_id, operation, exc.message)
            else:
                logger.error("[%s] %s failed: %s (%s)", request_id, operation, exc.message, exc.code)
            raise
        except Exception as exc:
            task.status = "failed"
            state.failed += 1
            error = OperationError(type(exc).__name__, str(exc) or type(exc).__name__, cause=exc,
                                   request_id=request_id)
            self.metrics.record_end(operation, spec.worker, started, "failure", error.code)
            logger.exception("[%s] %s failed unexpectedly", request_id, operation)
            raise error from exc
        else:
            task.status = "done"
            state.completed += 1
            elapsed = self.metrics.record_end(operation, spec.worker, started, "success")
            logger.debug("[%s] %s completed in %.1fms", request_id, operation, elapsed)
            return result
        finally:
            state.in_flight -= 1
            self._active.discard(task)

    @staticmethod
    async def _run(coro: Any, cancel_event: Optional[asyncio.Event]) -> Any:
        if cancel_event is None:
            return await coro

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Worker task raised while being cancelled", exc_info=True)
        raise OperationCancelled("cancelled")

    async def execute(
        self,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        request_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Tool-call envelope around :meth:`submit`."""
        result = await self.submit(operation, args, request_id, cancel_event)
        text = json.dumps(result, indent=2, default=str)
        return {"content": [{"type": "text", "text": text}]}

    def spawn(
        self,
        operation: str,
        args: Optional[Mapping[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule *operation* without awaiting it; failures are logged."""
        if self._closed:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, not spawning %s", operation)
            return None

        async def _runner() -> None:
            try:
                await self.submit(operation, args, request_id)
            except AgentBusyError as exc:
                logger.info("[%s] background %s skipped: %s", exc.request_id, operation, exc.message)
            except ConductorError as exc:
                logger.warning("[%s] background %s failed: %s", exc.request_id, operation, exc.message)

        task = loop.create_task(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for spawned background operations to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_agent_metrics(self, worker: Optional[str] = None) -> Dict[str, Any]:
        if worker is not None:
            if worker not in self.states:
                raise NotFoundError(f"Unknown worker: {worker}")
            return {
                "worker": worker,
                "state": self.states[worker].to_dict(),
                "operations": self.metrics.for_worker(worker),
            }
        return {
            "workers": {name: state.to_dict() for name, state in self.states.items()},
            "operations": self.metrics.operations(),
        }

    def active_tasks(self) -> List[Task]:
        return sorted(self._active, key=lambda t: (t.submitted_at, t.request_id))

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "version": __version__,
            "uptimeSeconds": round(self.metrics.uptime_seconds(), 3),
            "workers": {name: state.to_dict() for name, state in self.states.items()},
            "activeTasks": [t.to_dict() for t in self.active_tasks()],
            "operations": self.metrics.operations(),
            "bus": {"topics": self.bus.get_stats(), "handlerErrors": self.bus.handler_errors},
            "cache": self.cache.stats(),
            "embeddings": {"provider": self.embedder.name, "modelKey": self.embedder.model_key},
            "reranker": self.reranker.name if self.reranker else None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in self._subscriptions:
            sub.unsubscribe()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.embedder.aclose()
        if self.reranker is not None:
            await self.reranker.aclose()
        self.store.close()

    async def __aenter__(self) -> "Conductor":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()
