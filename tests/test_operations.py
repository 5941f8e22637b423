"""Tests for the operation table and argument validation."""

import pytest

from codegraph_conductor.errors import UnknownOperation, ValidationError
from codegraph_conductor.operations import (
    OPERATIONS,
    WORKERS,
    AnalyzeCodeImpactArgs,
    HybridSearchArgs,
    IndexArgs,
    get_operation,
    validate_args,
)


class TestOperationTable:
    def test_every_operation_targets_a_worker(self):
        assert OPERATIONS
        for name, spec in OPERATIONS.items():
            assert spec.name == name
            assert spec.worker in WORKERS
            assert spec.description

    def test_lookup(self):
        assert get_operation("hybrid_search").worker == "semantic"
        assert get_operation("index").args_model is IndexArgs

    def test_unknown_operation(self):
        with pytest.raises(UnknownOperation) as excinfo:
            get_operation("format_disk")
        assert excinfo.value.operation == "format_disk"
        assert excinfo.value.code == "UNKNOWN_OPERATION"


class TestValidateArgs:
    def test_camel_and_snake_case_accepted(self):
        spec = get_operation("index")

        camel = validate_args(spec, {"directory": "src", "excludePatterns": ["*.pyc"], "fullScan": True})
        snake = validate_args(spec, {"directory": "src", "exclude_patterns": ["*.pyc"], "full_scan": True})

        assert camel == snake
        assert camel.exclude_patterns == ["*.pyc"]
        assert camel.incremental is True

    def test_defaults(self):
        args = validate_args(get_operation("hybrid_search"), {"query": "parse"})

        assert isinstance(args, HybridSearchArgs)
        assert (args.limit, args.rerank, args.rerank_top_k, args.use_cache) == (10, True, None, True)

    def test_none_means_no_arguments(self):
        assert validate_args(get_operation("get_graph_stats"), None) is not None

    def test_missing_required_field(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_args(get_operation("hybrid_search"), {})

        assert excinfo.value.code == "VALIDATION_ERROR"
        assert excinfo.value.retryable is False
        assert [i["field"] for i in excinfo.value.issues] == ["query"]

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_args(get_operation("get_version"), {"verbose": True})
        assert excinfo.value.issues[0]["field"] == "verbose"

    def test_bounds(self):
        spec = get_operation("hybrid_search")
        with pytest.raises(ValidationError):
            validate_args(spec, {"query": "q", "limit": 0})
        with pytest.raises(ValidationError):
            validate_args(spec, {"query": "q", "k": -1})
        with pytest.raises(ValidationError):
            validate_args(spec, {"query": "q", "kinds": ["module"]})

    def test_non_mapping_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_args(get_operation("query"), ["who", "calls"])
        assert "expected an object" in excinfo.value.issues[0]["message"]

    def test_issues_are_serialisable(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_args(get_operation("index"), {"directory": ""})
        payload = excinfo.value.to_dict()
        assert payload["details"][0]["field"] == "directory"
        assert "Traceback" not in str(payload)


class TestCrossFieldRules:
    def test_impact_needs_entity_or_file(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_args(get_operation("analyze_code_impact"), {"depth": 3})
        assert "entityId or filePath" in excinfo.value.issues[0]["message"]

        args = validate_args(get_operation("analyze_code_impact"), {"filePath": "utils.py"})
        assert isinstance(args, AnalyzeCodeImpactArgs)
        assert args.depth == 2

    def test_relationships_need_entity(self):
        spec = get_operation("list_entity_relationships")
        with pytest.raises(ValidationError):
            validate_args(spec, {"depth": 2})
        assert validate_args(spec, {"entityName": "main"}).entity_name == "main"

    def test_hotspot_metric_choices(self):
        spec = get_operation("analyze_hotspots")
        assert validate_args(spec, {"metric": "coupling"}).metric == "coupling"
        with pytest.raises(ValidationError):
            validate_args(spec, {"metric": "vibes"})

    def test_refactoring_line_range(self):
        spec = get_operation("suggest_refactoring")
        assert spec.worker == "query"

        args = validate_args(spec, {"filePath": "utils.py", "focusArea": "User", "startLine": 3, "endLine": 9})
        assert (args.focus_area, args.start_line, args.end_line) == ("User", 3, 9)

        with pytest.raises(ValidationError) as excinfo:
            validate_args(spec, {"filePath": "utils.py", "startLine": 9, "endLine": 9})
        assert "endLine must be greater" in excinfo.value.issues[0]["message"]
        with pytest.raises(ValidationError):
            validate_args(spec, {"focusArea": "User"})
