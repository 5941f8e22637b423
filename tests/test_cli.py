"""Integration tests for CLI commands."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from codegraph_conductor import __version__
from codegraph_conductor.cli import app

runner = CliRunner()


@pytest.fixture
def data_dir(temp_dir: Path) -> Path:
    return temp_dir / "cli-store"


@pytest.fixture
def indexed(sample_project_path: Path, data_dir: Path) -> Path:
    result = runner.invoke(app, ["--data-dir", str(data_dir), "index", str(sample_project_path)])
    assert result.exit_code == 0, result.output
    return data_dir


class TestIndexCommand:
    def test_index_project(self, sample_project_path: Path, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "index", str(sample_project_path)])

        assert result.exit_code == 0
        assert "Processed: 4 | Skipped: 0 | Failed: 0" in result.output
        assert "Relationships written:" in result.output

    def test_reindex_skips_unchanged(self, sample_project_path: Path, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "index", str(sample_project_path)])

        assert result.exit_code == 0
        assert "Processed: 0 | Skipped: 4" in result.output

    def test_index_nonexistent_path(self, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "index", "/nonexistent/path"])
        assert result.exit_code != 0


class TestReadCommands:
    def test_stats(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "stats"])

        assert result.exit_code == 0
        assert "Files: 4 (failed: 0)" in result.output
        assert "class: 5" in result.output

    def test_search(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "search", "validate email", "--top-k", "2"])

        assert result.exit_code == 0
        assert "validate_email" in result.output

    def test_search_without_matches(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "search", "?!"])

        assert result.exit_code == 0
        assert "No matches found." in result.output

    def test_query(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "query", "who calls validate_email"])

        assert result.exit_code == 0
        assert "Intent: callers (validate_email)" in result.output
        assert "- UserProcessor.create_user  processor.py" in result.output

    def test_impact(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "impact", "validate_email"])

        assert result.exit_code == 0
        assert "Root: validate_email  (risk: low)" in result.output
        assert "ASCII graph:" in result.output
        assert "<-calls- UserProcessor.create_user" in result.output

    def test_impact_unknown_symbol(self, indexed: Path):
        result = runner.invoke(app, ["--data-dir", str(indexed), "impact", "does_not_exist"])

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output


class TestRunCommand:
    def test_run_prints_json(self, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "run", "get_version"])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"name": "codegraph-conductor", "version": __version__}

    def test_run_with_arguments(self, indexed: Path):
        result = runner.invoke(
            app, ["--data-dir", str(indexed), "run", "list_file_entities", '{"filePath": "utils.py"}'],
        )

        assert result.exit_code == 0
        assert json.loads(result.output)["total"] == 3

    def test_run_rejects_bad_json(self, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "run", "get_version", "{not json"])
        assert result.exit_code == 2

    def test_run_unknown_operation(self, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "run", "explode"])

        assert result.exit_code == 1
        assert "UNKNOWN_OPERATION" in result.output

    def test_run_validation_issues(self, data_dir: Path):
        result = runner.invoke(app, ["--data-dir", str(data_dir), "run", "hybrid_search", '{"limit": 0}'])

        assert result.exit_code == 1
        assert "VALIDATION_ERROR" in result.output
        assert '"field": "query"' in result.output


class TestMiscCommands:
    def test_operations(self):
        result = runner.invoke(app, ["operations"])

        assert result.exit_code == 0
        assert "hybrid_search" in result.output
        assert "semantic" in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"CodeGraph Conductor v{__version__}" in result.output
