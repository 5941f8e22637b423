"""Tests for the source parser (tree-sitter and AST backends)."""

from pathlib import Path

import pytest

from codegraph_conductor.parser import ASTFallbackParser, CodeParser, ParseError, TreeSitterParser, language_for


@pytest.fixture(params=["auto", "ast"])
def parser(request) -> CodeParser:
    return CodeParser(request.param)


def _entity(parsed, qualname: str, kind: str = None):
    matches = [e for e in parsed.entities if e.qualname == qualname and (kind is None or e.kind == kind)]
    assert len(matches) == 1, f"{qualname} not found exactly once"
    return matches[0]


def _edges(parsed, edge_type: str):
    return {(r.source, r.target) for r in parsed.relationships if r.type == edge_type}


def test_backend_selection():
    assert CodeParser("ast").backend == "ASTFallbackParser"
    assert CodeParser().backend == "TreeSitterParser"


def test_language_for():
    assert language_for(Path("pkg/mod.py")) == "python"
    assert language_for(Path("types.pyi")) == "python"
    assert language_for(Path("README.md")) is None


def test_supports(parser: CodeParser):
    assert parser.supports(Path("a.py"))
    assert not parser.supports(Path("a.txt"))
    # mapped extension without a loaded grammar
    assert not parser.supports(Path("a.js"))


def test_parse_functions_classes_methods(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    assert parsed.path == "calc.py"
    assert parsed.language == "python"
    assert _entity(parsed, "hello").kind == "function"
    assert _entity(parsed, "Calculator").kind == "class"
    assert _entity(parsed, "Calculator.add").kind == "method"
    assert _entity(parsed, "Calculator.multiply").kind == "method"
    assert _entity(parsed, "ScientificCalculator.power").kind == "method"
    assert _entity(parsed, "LIMIT").kind == "variable"


def test_parse_docstrings(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    assert _entity(parsed, "hello").docstring == "Say hello."
    assert _entity(parsed, "Calculator").docstring == "Simple calculator."
    assert _entity(parsed, "ScientificCalculator.power").docstring == ""


def test_parse_spans(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    hello = _entity(parsed, "hello")
    assert hello.span.start_line == 9
    assert hello.span.start_column == 0
    assert hello.span.end_line == 11
    assert hello.code.startswith("def hello(name: str) -> str:")

    add = _entity(parsed, "Calculator.add")
    assert add.span.start_column == 4


def test_parse_async_metadata(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    assert _entity(parsed, "ScientificCalculator.power").metadata["async"] is True
    assert _entity(parsed, "Calculator.add").metadata["async"] is False


def test_parse_relationships(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    calls = _edges(parsed, "calls")
    assert ("Calculator.multiply", "self.add") in calls
    assert ("Calculator.multiply", "range") in calls
    assert ("ScientificCalculator.power", "hello") in calls

    assert ("ScientificCalculator", "Calculator") in _edges(parsed, "extends")
    assert ("Calculator", "Calculator.add") in _edges(parsed, "contains")
    assert ("ScientificCalculator", "ScientificCalculator.power") in _edges(parsed, "contains")


def test_parse_imports(parser: CodeParser, sample_python_code: str):
    parsed = parser.parse_source("calc.py", sample_python_code)

    seq = _entity(parsed, "Seq", "import")
    assert seq.metadata == {"module": "typing", "imported": "List", "level": 0}
    os_import = _entity(parsed, "os", "import")
    assert os_import.metadata == {"module": "os", "imported": "", "level": 0}

    imports = [r for r in parsed.relationships if r.type == "imports"]
    assert [(r.source, r.target, r.target_module) for r in imports] == [("Seq", "List", "typing")]


def test_parse_relative_import(parser: CodeParser):
    parsed = parser.parse_source("pkg/main.py", "from .models import User\nfrom .. import tools\n")

    user = _entity(parsed, "User", "import")
    assert user.metadata == {"module": "models", "imported": "User", "level": 1}
    tools = _entity(parsed, "tools", "import")
    assert tools.metadata == {"module": "", "imported": "tools", "level": 2}


def test_backends_agree(sample_python_code: str):
    ts = TreeSitterParser().parse_source("calc.py", sample_python_code)
    fallback = ASTFallbackParser().parse_source("calc.py", sample_python_code)

    def shape(parsed):
        return sorted(
            (e.qualname, e.kind, e.span.start_line, e.span.end_line, e.docstring)
            for e in parsed.entities
        )

    assert shape(ts) == shape(fallback)
    assert sorted((r.source, r.target, r.type) for r in ts.relationships) == sorted(
        (r.source, r.target, r.type) for r in fallback.relationships
    )


def test_ast_backend_rejects_syntax_errors():
    with pytest.raises(ParseError):
        CodeParser("ast").parse_source("broken.py", "def broken(:\n    pass\n")


def test_tree_sitter_tolerates_syntax_errors():
    parsed = CodeParser().parse_source("broken.py", "def ok():\n    return 1\n\n\ndef broken(:\n    pass\n")
    assert any(e.qualname == "ok" for e in parsed.entities)


def test_parse_file_uses_relative_posix_path(parser: CodeParser, make_project):
    root = make_project({"pkg/sub/mod.py": "def f():\n    pass\n"})

    parsed = parser.parse_file(root / "pkg" / "sub" / "mod.py", root)

    assert parsed.path == "pkg/sub/mod.py"
    assert [e.qualname for e in parsed.entities] == ["f"]


def test_parse_sample_project(parser: CodeParser, sample_project_path: Path):
    parsed = parser.parse_file(sample_project_path / "processor.py", sample_project_path)

    qualnames = {e.qualname for e in parsed.entities}
    assert {"UserProcessor", "UserProcessor.create_user", "OrderProcessor.calculate_order_total"} <= qualnames
    assert ("UserProcessor.create_user", "validate_email") in _edges(parsed, "calls")


def test_tree_sitter_handles_deeply_nested_calls():
    depth = 1500
    source = "def g(x):\n    return x\n\n\ndef run():\n    return " + "g(" * depth + "1" + ")" * depth + "\n"

    parsed = TreeSitterParser().parse_source("deep.py", source)

    assert ("run", "g") in _edges(parsed, "calls")
