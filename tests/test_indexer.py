"""Tests for incremental indexing, entity diffing and edge resolution."""

import asyncio
from pathlib import Path

import pytest

from codegraph_conductor.bus import INDEX_COMPLETED, INDEX_FILE_FAILED, KnowledgeBus
from codegraph_conductor.config import IndexSettings
from codegraph_conductor.errors import NotFoundError
from codegraph_conductor.indexer import Indexer, absolute_module, diff_entities
from codegraph_conductor.parser import CodeParser
from codegraph_conductor.storage import GraphStore

CALLER = "from utils import helper\n\n\ndef run():\n    return helper()\n"
HELPER = "def helper():\n    return 1\n"


class ExplodingParser(CodeParser):
    """Raises *error* outside the parse-error taxonomy for one path."""

    def __init__(self, victim: str, error: Exception) -> None:
        super().__init__()
        self.victim = victim
        self.error = error

    def parse_source(self, rel_path: str, source: str):
        if rel_path == self.victim:
            raise self.error
        return super().parse_source(rel_path, source)


def _entity(store: GraphStore, qualname: str):
    entity = store.find_entity(qualname)
    assert entity is not None, f"{qualname} not indexed"
    return entity


def _calls(store: GraphStore, qualname: str):
    return {
        (store.get_entity(r.target_id).qualname, r.confidence)
        for r in store.neighbors(_entity(store, qualname).id, ["calls"])
    }


class TestAbsoluteModule:
    def test_absolute_import_unchanged(self):
        assert absolute_module("pkg/main.py", "os.path", 0) == "os.path"

    def test_relative_import(self):
        assert absolute_module("pkg/main.py", "models", 1) == "pkg.models"
        assert absolute_module("main.py", "models", 1) == "models"
        assert absolute_module("pkg/sub/mod.py", "", 2) == "pkg"
        assert absolute_module("pkg/__init__.py", "utils", 1) == "pkg.utils"


class TestDiffEntities:
    def _parse(self, source: str):
        return CodeParser().parse_source("a.py", source)

    def _stored(self, source: str):
        return diff_entities([], self._parse(source), now=1.0).inserted

    def test_everything_new_is_inserted(self):
        diff = diff_entities([], self._parse("def foo():\n    pass\n"), now=1.0)
        assert [e.qualname for e in diff.inserted] == ["foo"]
        assert diff.updated == [] and diff.deleted == []

    def test_unchanged_entities(self):
        old = self._stored("def foo():\n    pass\n")
        diff = diff_entities(old, self._parse("def foo():\n    pass\n"), now=2.0)
        assert diff.is_empty
        assert [e.id for e in diff.unchanged] == [old[0].id]
        assert diff.unchanged[0].updated_at == 1.0

    def test_edit_keeps_id(self):
        old = self._stored("def foo():\n    pass\n")
        diff = diff_entities(old, self._parse("def foo():\n    return 2\n"), now=2.0)
        assert [e.id for e in diff.updated] == [old[0].id]
        assert diff.updated[0].updated_at == 2.0

    def test_rename_in_place_keeps_id(self):
        old = self._stored("def foo():\n    pass\n")
        diff = diff_entities(old, self._parse("def bar():\n    pass\n"), now=2.0)
        assert [(e.id, e.name) for e in diff.updated] == [(old[0].id, "bar")]
        assert diff.inserted == [] and diff.deleted == []

    def test_move_between_classes_keeps_id(self):
        old = self._stored(
            "class A:\n    def m(self):\n        return 1\n\n\nclass B:\n    pass\n"
        )
        method = next(e for e in old if e.name == "m")

        diff = diff_entities(old, self._parse(
            "class A:\n    pass\n\n\nclass B:\n    def m(self):\n        return 1\n"
        ), now=2.0)

        moved = next(e for e in diff.updated if e.name == "m")
        assert moved.id == method.id
        assert moved.qualname == "B.m"
        assert diff.inserted == [] and diff.deleted == []

    def test_removed_entity_is_deleted(self):
        old = self._stored("def foo():\n    pass\n\n\nclass Gone:\n    pass\n")
        diff = diff_entities(old, self._parse("def foo():\n    pass\n"), now=2.0)
        assert [e.qualname for e in diff.deleted] == ["Gone"]


class TestIndexDirectory:
    async def test_index_sample_project(self, indexer: Indexer, graph_store: GraphStore, sample_project_path: Path):
        """The sample project indexes cleanly with cross-file edges."""
        summary = await indexer.index_directory(str(sample_project_path))

        assert summary.processed == 4
        assert summary.failed == 0
        assert summary.entities_inserted > 0
        assert len(summary.changed_entity_ids) == summary.entities_inserted

        assert ("validate_email", 0.9) in _calls(graph_store, "UserProcessor.create_user")
        assert ("calculate_total", 0.9) in _calls(graph_store, "OrderProcessor.calculate_order_total")
        assert ("UserProcessor.get_user", 1.0) in _calls(graph_store, "OrderProcessor.create_order")
        assert ("UserProcessor.create_user", 0.8) in _calls(graph_store, "main")

        admin = _entity(graph_store, "AdminUser")
        extends = graph_store.neighbors(admin.id, ["extends"])
        assert [graph_store.get_entity(r.target_id).qualname for r in extends] == ["User"]

        # builtins never stay pending
        assert graph_store.stats()["pendingRelationships"] == 0

    async def test_incremental_rerun_skips_everything(
        self, indexer: Indexer, graph_store: GraphStore, sample_project_path: Path,
    ):
        await indexer.index_directory(str(sample_project_path))
        before = graph_store.stats()

        summary = await indexer.index_directory(str(sample_project_path))

        assert summary.processed == 0
        assert summary.skipped == 4
        assert summary.changed_entity_ids == []
        assert graph_store.stats() == before

    async def test_full_scan_rerun_writes_nothing(
        self, indexer: Indexer, graph_store: GraphStore, sample_project_path: Path,
    ):
        await indexer.index_directory(str(sample_project_path))
        before = graph_store.stats()

        summary = await indexer.index_directory(str(sample_project_path), full_scan=True)

        assert summary.processed == 4
        assert summary.entities_inserted == 0
        assert summary.entities_updated == 0
        assert summary.entities_deleted == 0
        assert summary.relationships_written == 0
        assert graph_store.stats() == before

    async def test_missing_directory(self, indexer: Indexer, temp_dir: Path):
        with pytest.raises(NotFoundError):
            await indexer.index_directory(str(temp_dir / "nope"))

    async def test_completion_event(self, indexer: Indexer, bus: KnowledgeBus, make_project):
        root = make_project({"a.py": HELPER})
        seen = []
        bus.subscribe(INDEX_COMPLETED, seen.append)

        summary = await indexer.index_directory(str(root), request_id="req-1")

        assert len(seen) == 1
        payload = seen[0].payload
        assert payload["directory"] == str(root.resolve())
        assert payload["changedEntityIds"] == summary.changed_entity_ids
        assert payload["files"] == ["a.py"]
        assert payload["deletedFiles"] == []
        assert payload["requestId"] == "req-1"


class TestIncrementalEdits:
    async def test_rename_keeps_id_and_edges(self, indexer: Indexer, graph_store: GraphStore, make_project):
        source = "def foo():\n    return 1\n\n\ndef bar():\n    return foo()\n"
        root = make_project({"a.py": source})
        await indexer.index_directory(str(root))
        bar = _entity(graph_store, "bar")

        make_project({"a.py": source.replace("def bar", "def baz")})
        summary = await indexer.index_directory(str(root))

        baz = _entity(graph_store, "baz")
        assert baz.id == bar.id
        assert summary.entities_updated == 1
        assert summary.entities_inserted == 0
        assert summary.entities_deleted == 0
        assert summary.relationships_written == 0
        assert _calls(graph_store, "baz") == {("foo", 1.0)}
        assert summary.changed_entity_ids == [bar.id]

    async def test_deleted_target_becomes_pending_and_relinks(
        self, indexer: Indexer, graph_store: GraphStore, make_project,
    ):
        root = make_project({"main.py": CALLER, "utils.py": HELPER})
        await indexer.index_directory(str(root))
        assert _calls(graph_store, "run") == {("helper", 0.9)}

        (root / "utils.py").unlink()
        summary = await indexer.index_directory(str(root))

        assert summary.deleted_files == 1
        assert summary.skipped == 1
        assert _calls(graph_store, "run") == set()
        pending = {(p.target_name, p.type, p.target_module) for p in graph_store.pending_for_file("main.py")}
        assert ("helper", "calls", "utils") in pending

        make_project({"utils.py": HELPER})
        summary = await indexer.index_directory(str(root))

        assert summary.processed == 1
        assert _calls(graph_store, "run") == {("helper", 0.9)}
        assert graph_store.pending_for_file("main.py") == []

    async def test_bare_name_resolution_is_order_independent(
        self, indexer: Indexer, graph_store: GraphStore, make_project,
    ):
        root = make_project({
            "a.py": "def run():\n    print('x')\n    return helper()\n",
            "b.py": HELPER,
        })

        await indexer.index_directory(str(root))

        assert _calls(graph_store, "run") == {("helper", 0.8)}
        assert graph_store.pending_for_file("a.py") == []

    async def test_ambiguous_target_gets_low_confidence(
        self, indexer: Indexer, graph_store: GraphStore, make_project,
    ):
        root = make_project({"x.py": HELPER, "y.py": HELPER})
        await indexer.index_directory(str(root))
        make_project({"z.py": "def run():\n    return helper()\n"})

        await indexer.index_directory(str(root))

        assert {c for _, c in _calls(graph_store, "run")} == {0.5}

    async def test_method_call_through_self(self, indexer: Indexer, graph_store: GraphStore, make_project):
        source = (
            "class Greeter:\n"
            "    def name(self):\n"
            "        return 'x'\n"
            "\n"
            "    def greet(self):\n"
            "        return self.name()\n"
        )
        root = make_project({"g.py": source})

        await indexer.index_directory(str(root))

        assert _calls(graph_store, "Greeter.greet") == {("Greeter.name", 1.0)}


class TestFailureIsolation:
    async def test_parse_failure_does_not_abort_run(self, graph_store: GraphStore, bus: KnowledgeBus, make_project):
        indexer = Indexer(graph_store, CodeParser("ast"), bus)
        root = make_project({"good.py": HELPER, "bad.py": "def broken(:\n    pass\n"})
        failed_events = []
        bus.subscribe(INDEX_FILE_FAILED, failed_events.append)

        summary = await indexer.index_directory(str(root))

        assert summary.processed == 1
        assert summary.failed == 1
        assert summary.failures.to_list()[0]["item"] == "bad.py"
        assert summary.failures.to_list()[0]["code"] == "INDEX_FAILED"
        assert graph_store.get_file("bad.py").status == "failed"
        assert [m.payload["path"] for m in failed_events] == ["bad.py"]
        assert _entity(graph_store, "helper").file_path == "good.py"

    async def test_failure_keeps_previous_state(self, graph_store: GraphStore, bus: KnowledgeBus, make_project):
        indexer = Indexer(graph_store, CodeParser("ast"), bus)
        root = make_project({"a.py": HELPER})
        await indexer.index_directory(str(root))
        good_hash = graph_store.get_file_hash("a.py")

        make_project({"a.py": "def helper(:\n"})
        summary = await indexer.index_directory(str(root))

        assert summary.failed == 1
        assert graph_store.get_file_hash("a.py") == good_hash
        assert [e.name for e in graph_store.get_entities_for_file("a.py")] == ["helper"]

        make_project({"a.py": HELPER})
        summary = await indexer.index_directory(str(root))

        assert summary.processed == 1
        assert graph_store.get_file("a.py").status == "indexed"

    async def test_unexpected_parser_error_is_isolated(
        self, graph_store: GraphStore, bus: KnowledgeBus, make_project,
    ):
        parser = ExplodingParser("deep.py", RecursionError("maximum recursion depth exceeded"))
        indexer = Indexer(graph_store, parser, bus)
        root = make_project({"good.py": HELPER, "deep.py": "def deep():\n    return 1\n"})
        failed_events, completed = [], []
        bus.subscribe(INDEX_FILE_FAILED, failed_events.append)
        bus.subscribe(INDEX_COMPLETED, completed.append)

        summary = await indexer.index_directory(str(root))

        assert summary.processed == 1
        assert summary.failed == 1
        failure = summary.failures.to_list()[0]
        assert failure["item"] == "deep.py"
        assert failure["message"].startswith("RecursionError")
        assert graph_store.get_file("deep.py").status == "failed"
        assert [m.payload["path"] for m in failed_events] == ["deep.py"]
        assert len(completed) == 1
        assert _entity(graph_store, "helper").file_path == "good.py"

    async def test_unexpected_commit_error_leaves_file_unwritten(
        self, indexer: Indexer, graph_store: GraphStore, make_project, monkeypatch,
    ):
        root = make_project({"a.py": HELPER, "b.py": "def other():\n    return 2\n"})
        apply_file_diff = graph_store.apply_file_diff

        def _apply(record, *args):
            if record.path == "b.py":
                raise KeyError("other")
            return apply_file_diff(record, *args)

        monkeypatch.setattr(graph_store, "apply_file_diff", _apply)

        summary = await indexer.index_directory(str(root))

        assert summary.processed == 1
        assert summary.failed == 1
        assert graph_store.find_entity("other") is None
        assert graph_store.get_file("b.py").status == "failed"


class TestConcurrentRuns:
    async def test_overlapping_runs_on_edited_file(self, indexer: Indexer, graph_store: GraphStore, make_project):
        source = "def foo():\n    return 1\n\n\ndef bar():\n    return foo()\n"
        root = make_project({"a.py": source})
        await indexer.index_directory(str(root))
        make_project({"a.py": source + "\n\ndef baz():\n    return bar()\n"})

        first, second = await asyncio.gather(
            indexer.index_directory(str(root)),
            indexer.index_directory(str(root)),
        )

        assert sorted([first.processed, second.processed]) == [0, 1]
        assert first.failed == second.failed == 0
        assert sorted(e.qualname for e in graph_store.get_entities_for_file("a.py")) == ["bar", "baz", "foo"]
        assert _calls(graph_store, "baz") == {("bar", 1.0)}
        assert _calls(graph_store, "bar") == {("foo", 1.0)}

    async def test_file_locks_are_released(self, indexer: Indexer, make_project):
        root = make_project({"a.py": HELPER, "b.py": HELPER})

        await asyncio.gather(indexer.index_directory(str(root)), indexer.index_directory(str(root)))

        assert indexer._file_locks == {}


class TestProjectRoot:
    async def test_subdirectory_run_refreshes_only_that_subtree(
        self, indexer: Indexer, graph_store: GraphStore, make_project,
    ):
        root = make_project({
            "app.py": "def main():\n    return 0\n",
            "pkg/mod.py": "def one():\n    return 1\n",
            "pkg/old.py": "def old():\n    return 2\n",
        })
        await indexer.index_directory(str(root))
        (root / "pkg" / "old.py").unlink()
        make_project({"pkg/mod.py": "def one():\n    return 1\n\n\ndef two():\n    return one()\n"})

        summary = await indexer.index_directory(str(root / "pkg"))

        assert summary.processed == 1
        assert summary.deleted_files == 1
        assert [f.path for f in graph_store.list_files()] == ["app.py", "pkg/mod.py"]
        assert _entity(graph_store, "two").file_path == "pkg/mod.py"
        assert _calls(graph_store, "two") == {("one", 1.0)}
        assert _entity(graph_store, "main").file_path == "app.py"

    async def test_other_directory_replaces_project(
        self, indexer: Indexer, graph_store: GraphStore, make_project, temp_dir: Path,
    ):
        await indexer.index_directory(str(make_project({"app.py": HELPER})))
        other = temp_dir / "other"
        other.mkdir()
        (other / "lib.py").write_text("def lib():\n    return 1\n", encoding="utf-8")

        summary = await indexer.index_directory(str(other))

        assert summary.deleted_files == 1
        assert [f.path for f in graph_store.list_files()] == ["lib.py"]
        assert graph_store.get_meta("project_root") == str(other.resolve())


class TestDiscovery:
    def test_skip_dirs_and_exclude_patterns(self, indexer: Indexer, make_project):
        root = make_project({
            "app.py": HELPER,
            "pkg/mod.py": HELPER,
            "tests/test_app.py": HELPER,
            "build/gen.py": HELPER,
            ".venv/lib/x.py": HELPER,
            "README.md": "# readme\n",
        })

        assert indexer.discover(root) == ["app.py", "pkg/mod.py", "tests/test_app.py"]
        assert indexer.discover(root, ["tests"]) == ["app.py", "pkg/mod.py"]
        assert indexer.discover(root, ["pkg/*.py"]) == ["app.py", "tests/test_app.py"]

    async def test_oversized_files_are_skipped(self, graph_store: GraphStore, bus: KnowledgeBus, make_project):
        indexer = Indexer(graph_store, CodeParser(), bus, IndexSettings(max_file_bytes=10))
        root = make_project({"big.py": HELPER})

        summary = await indexer.index_directory(str(root))

        assert summary.skipped == 1
        assert graph_store.get_file("big.py") is None


class TestParseOnly:
    async def test_parse_only_does_not_write(self, indexer: Indexer, graph_store: GraphStore, make_project):
        root = make_project({"pkg/a.py": HELPER})

        parsed = await indexer.parse_only("pkg/a.py", str(root))

        assert parsed.path == "pkg/a.py"
        assert [e.name for e in parsed.entities] == ["helper"]
        assert graph_store.stats()["entities"] == 0

    async def test_parse_only_missing_file(self, indexer: Indexer, temp_dir: Path):
        with pytest.raises(NotFoundError):
            await indexer.parse_only(str(temp_dir / "missing.py"))
