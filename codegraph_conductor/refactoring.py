"""Refactoring suggestions derived from entity code and graph degree."""

from __future__ import annotations

import ast
import textwrap
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import Entity

LONG_FUNCTION_LINES = 50
LARGE_CLASS_LINES = 300
COMPLEXITY_LIMIT = 10
PARAMETER_LIMIT = 5
NESTING_LIMIT = 4
FAN_OUT_LIMIT = 10
FAN_IN_LIMIT = 15
CLASS_METHOD_LIMIT = 20

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}

_BRANCHES = (
    ast.If, ast.For, ast.AsyncFor, ast.While, ast.ExceptHandler,
    ast.With, ast.AsyncWith, ast.IfExp, ast.Assert, ast.comprehension,
)
_BLOCKS = (ast.If, ast.For, ast.AsyncFor, ast.While, ast.Try, ast.With, ast.AsyncWith)
_DEFS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)


@dataclass
class CodeMetrics:
    lines: int
    complexity: Optional[int] = None
    parameters: Optional[int] = None
    max_nesting: Optional[int] = None

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "lines": self.lines,
            "complexity": self.complexity,
            "parameters": self.parameters,
            "maxNesting": self.max_nesting,
        }


def _definition(entity: Entity) -> Optional[ast.AST]:
    if entity.language != "python" or not entity.code:
        return None
    try:
        tree = ast.parse(textwrap.dedent(entity.code))
    except SyntaxError:
        return None
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            return node
    return None


def _own_nodes(root: ast.AST):
    """Nodes of *root*'s body, not descending into nested definitions."""
    stack = list(ast.iter_child_nodes(root))
    while stack:
        node = stack.pop()
        yield node
        if not isinstance(node, _DEFS):
            stack.extend(ast.iter_child_nodes(node))


def _complexity(func: ast.AST) -> int:
    score = 1
    for node in _own_nodes(func):
        if isinstance(node, _BRANCHES):
            score += 1
            if isinstance(node, ast.comprehension):
                score += len(node.ifs)
        elif isinstance(node, ast.BoolOp):
            score += len(node.values) - 1
    return score


def _nesting(func: ast.AST) -> int:
    deepest = 0
    stack = [(child, 0) for child in ast.iter_child_nodes(func)]
    while stack:
        node, depth = stack.pop()
        if isinstance(node, _DEFS):
            continue
        if isinstance(node, _BLOCKS):
            depth += 1
            deepest = max(deepest, depth)
        stack.extend((child, depth) for child in ast.iter_child_nodes(node))
    return deepest


def _parameters(func: ast.AST, is_method: bool) -> int:
    args = func.args
    names = [a.arg for a in args.posonlyargs + args.args + args.kwonlyargs]
    if is_method and names and names[0] in ("self", "cls"):
        names = names[1:]
    return len(names)


def code_metrics(entity: Entity) -> CodeMetrics:
    """Size always; complexity, parameters and nesting when the code parses as Python."""
    metrics = CodeMetrics(lines=entity.span.end_line - entity.span.start_line + 1)
    node = _definition(entity)
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        metrics.complexity = _complexity(node)
        metrics.parameters = _parameters(node, entity.kind == "method")
        metrics.max_nesting = _nesting(node)
    return metrics


def _suggestion(
    entity: Entity, kind: str, severity: str, message: str, suggestion: str, metrics: CodeMetrics,
) -> Dict[str, object]:
    return {
        "entityId": entity.id,
        "name": entity.qualname,
        "kind": entity.kind,
        "line": entity.span.start_line,
        "type": kind,
        "severity": severity,
        "message": message,
        "suggestion": suggestion,
        "metrics": metrics.to_dict(),
    }


def suggest_for_entity(
    entity: Entity,
    metrics: CodeMetrics,
    fan_in: int,
    fan_out: int,
    methods: int = 0,
) -> List[Dict[str, object]]:
    """Every rule that fires for *entity*."""
    found: List[Dict[str, object]] = []

    def add(kind: str, severity: str, message: str, suggestion: str) -> None:
        found.append(_suggestion(entity, kind, severity, message, suggestion, metrics))

    if entity.kind == "class":
        if methods > CLASS_METHOD_LIMIT or metrics.lines > LARGE_CLASS_LINES:
            add("large_class", "medium",
                f"Class has {methods} methods over {metrics.lines} lines",
                "Extract cohesive groups of methods into collaborator classes")
    elif entity.kind in ("function", "method"):
        if metrics.lines > LONG_FUNCTION_LINES:
            severity = "high" if metrics.lines > 2 * LONG_FUNCTION_LINES else "medium"
            add("long_function", severity,
                f"{metrics.lines} lines long",
                "Extract well-named helper functions for each step")
        if metrics.complexity is not None and metrics.complexity > COMPLEXITY_LIMIT:
            severity = "high" if metrics.complexity > 2 * COMPLEXITY_LIMIT else "medium"
            add("high_complexity", severity,
                f"Cyclomatic complexity {metrics.complexity}",
                "Split branches into separate functions or use early returns and lookup tables")
        if metrics.parameters is not None and metrics.parameters > PARAMETER_LIMIT:
            add("long_parameter_list", "medium",
                f"{metrics.parameters} parameters",
                "Group related parameters into a dataclass or settings object")
        if metrics.max_nesting is not None and metrics.max_nesting > NESTING_LIMIT:
            add("deep_nesting", "medium",
                f"Blocks nested {metrics.max_nesting} levels deep",
                "Invert conditions with guard clauses or extract the inner block")

    if fan_out > FAN_OUT_LIMIT:
        add("high_fan_out", "medium",
            f"Depends on {fan_out} other entities",
            "Move part of the work behind a smaller interface or a separate service")
    if fan_in > FAN_IN_LIMIT:
        add("high_fan_in", "low",
            f"Used by {fan_in} other entities",
            "Keep the signature stable; prefer adding new functions over changing this one")
    return found


def sort_suggestions(items: List[Dict[str, object]]) -> List[Dict[str, object]]:
    return sorted(items, key=lambda s: (SEVERITY_ORDER[str(s["severity"])], s["line"], s["name"], s["type"]))
