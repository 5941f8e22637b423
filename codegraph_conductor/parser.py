"""Semantic code parser using Tree-sitter for AST extraction.

Produces a :class:`~codegraph_conductor.models.ParsedFile` per source file:

- entities: classes, functions, methods, module-level variables and imports,
  each with a full source span (1-based lines, 0-based byte columns);
- symbolic relationships (``calls``, ``imports``, ``extends``, ``contains``)
  whose targets are raw names.  The indexer resolves them to entity ids.

Falls back to Python's built-in ``ast`` module when the tree-sitter grammar
cannot be loaded.  Both backends produce identical entities for valid source.
"""

from __future__ import annotations

import ast
import importlib
import inspect
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import ParsedEntity, ParsedFile, Span, SymbolicRelationship

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language <-> file-extension mapping (extensible)
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
}


def language_for(path: Path) -> Optional[str]:
    return LANGUAGE_MAP.get(path.suffix)


class ParseError(Exception):
    """Raised when a file cannot be turned into entities."""


# ===================================================================
# Abstract Parser Interface
# ===================================================================

class SourceParser(ABC):
    """Abstract base class for all code parsers."""

    @abstractmethod
    def parse_source(self, rel_path: str, source: str) -> ParsedFile:
        """Parse *source* (stored under *rel_path*) into entities and edges."""
        ...

    @abstractmethod
    def supports_language(self, language: str) -> bool:
        """Return True if this parser can handle *language*."""
        ...


class _Collector:
    """Accumulates entities/relationships while a backend walks a file."""

    def __init__(self, lines: List[str]) -> None:
        self.lines = lines
        self.entities: List[ParsedEntity] = []
        self.relationships: List[SymbolicRelationship] = []
        self._seen_edges: set = set()

    def snippet(self, start_line: int, end_line: int) -> str:
        return "\n".join(self.lines[start_line - 1: end_line])

    def add_entity(self, entity: ParsedEntity) -> None:
        self.entities.append(entity)
        if entity.parent:
            self.add_edge(entity.parent, entity.qualname, "contains")

    def add_edge(self, source: str, target: str, edge_type: str, target_module: str = "") -> None:
        key = (source, target, edge_type)
        if key in self._seen_edges:
            return
        self._seen_edges.add(key)
        self.relationships.append(SymbolicRelationship(
            source=source, target=target, type=edge_type, target_module=target_module,
        ))


# ===================================================================
# Tree-sitter Parser (Primary)
# ===================================================================

class TreeSitterParser(SourceParser):
    """Error-tolerant parser built on Tree-sitter.

    Tree-sitter produces a concrete syntax tree that preserves every token,
    allowing reliable extraction even when the source has minor syntax
    errors.
    """

    # Map language name -> module that provides the tree-sitter Language
    _GRAMMAR_MODULES: Dict[str, str] = {
        "python": "tree_sitter_python",
    }

    def __init__(self, languages: Optional[List[str]] = None) -> None:
        self._parsers: Dict[str, Any] = {}
        self._requested_languages = languages or ["python"]
        self._init_parsers()

    def _init_parsers(self) -> None:
        from tree_sitter import Language, Parser as TSParser

        for lang in self._requested_languages:
            mod_name = self._GRAMMAR_MODULES.get(lang)
            if mod_name is None:
                logger.debug("No grammar module mapped for language '%s'", lang)
                continue
            try:
                mod = importlib.import_module(mod_name)
                # tree-sitter >=0.22 per-language packages expose a
                # language() function that returns the Language capsule.
                self._parsers[lang] = TSParser(Language(mod.language()))
                logger.debug("Loaded tree-sitter parser for %s", lang)
            except (ImportError, AttributeError, TypeError, ValueError) as exc:
                logger.warning("Could not load tree-sitter grammar for %s: %s", lang, exc)

    def supports_language(self, language: str) -> bool:
        return language in self._parsers

    def parse_source(self, rel_path: str, source: str) -> ParsedFile:
        lang = language_for(Path(rel_path))
        if not lang or lang not in self._parsers:
            raise ParseError(f"No tree-sitter grammar for {rel_path}")

        tree = self._parsers[lang].parse(source.encode("utf-8"))
        collector = _Collector(source.splitlines())
        self._walk_python(tree.root_node, scope=[], parent=None, in_class=False, collector=collector)
        self._extract_module_level(tree.root_node, collector)
        return ParsedFile(
            path=rel_path,
            language=lang,
            entities=collector.entities,
            relationships=collector.relationships,
        )

    # ------------------------------------------------------------------
    # Python: recursive definition walker
    # ------------------------------------------------------------------

    def _walk_python(
        self,
        ts_node: Any,
        scope: List[str],
        parent: Optional[str],
        in_class: bool,
        collector: _Collector,
    ) -> None:
        for child in ts_node.children:
            outer_node = child
            actual_def = child

            # Unwrap @decorated_definition -> inner function/class
            if child.type == "decorated_definition":
                inner = child.child_by_field_name("definition")
                if inner is None:
                    continue
                actual_def = inner

            if actual_def.type == "function_definition":
                self._process_function(outer_node, actual_def, scope, parent, in_class, collector)
            elif actual_def.type == "class_definition":
                self._process_class(outer_node, actual_def, scope, parent, collector)

    def _process_function(
        self,
        outer_node: Any,
        func_node: Any,
        scope: List[str],
        parent: Optional[str],
        in_class: bool,
        collector: _Collector,
    ) -> None:
        name_node = func_node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        qualname = ".".join(scope + [name])
        span = _ts_span(outer_node)

        collector.add_entity(ParsedEntity(
            name=name,
            qualname=qualname,
            kind="method" if in_class else "function",
            span=span,
            code=collector.snippet(span.start_line, span.end_line),
            docstring=self._extract_docstring(func_node),
            parent=parent,
            metadata={"async": _text(func_node.children[0]) == "async"},
        ))

        for call_name in self._collect_calls(func_node):
            collector.add_edge(qualname, call_name, "calls")

        body = func_node.child_by_field_name("body")
        if body is not None:
            self._walk_python(body, scope + [name], qualname, False, collector)

    def _process_class(
        self,
        outer_node: Any,
        class_node: Any,
        scope: List[str],
        parent: Optional[str],
        collector: _Collector,
    ) -> None:
        name_node = class_node.child_by_field_name("name")
        if name_node is None:
            return
        name = _text(name_node)
        qualname = ".".join(scope + [name])
        span = _ts_span(outer_node)

        bases: List[str] = []
        superclasses = class_node.child_by_field_name("superclasses")
        if superclasses is not None:
            for arg in superclasses.named_children:
                base = _resolve_ts_call_name(arg)
                if base:
                    bases.append(base)

        collector.add_entity(ParsedEntity(
            name=name,
            qualname=qualname,
            kind="class",
            span=span,
            code=collector.snippet(span.start_line, span.end_line),
            docstring=self._extract_docstring(class_node),
            parent=parent,
            metadata={"bases": bases},
        ))
        for base in bases:
            collector.add_edge(qualname, base, "extends")

        body = class_node.child_by_field_name("body")
        if body is not None:
            self._walk_python(body, scope + [name], qualname, True, collector)

    # ------------------------------------------------------------------
    # Python: module-level variables and imports
    # ------------------------------------------------------------------

    def _extract_module_level(self, root: Any, collector: _Collector) -> None:
        for child in root.children:
            if child.type == "expression_statement":
                for expr in child.named_children:
                    if expr.type != "assignment":
                        continue
                    left = expr.child_by_field_name("left")
                    if left is None or left.type != "identifier":
                        continue
                    span = _ts_span(child)
                    name = _text(left)
                    collector.add_entity(ParsedEntity(
                        name=name,
                        qualname=name,
                        kind="variable",
                        span=span,
                        code=collector.snippet(span.start_line, span.end_line),
                    ))
            elif child.type == "import_statement":
                for sub in child.named_children:
                    if sub.type == "dotted_name":
                        module = _text(sub)
                        self._add_import(collector, child, module.split(".")[0], module, "", 0)
                    elif sub.type == "aliased_import":
                        name_n = sub.child_by_field_name("name")
                        alias_n = sub.child_by_field_name("alias")
                        if name_n is None or alias_n is None:
                            continue
                        self._add_import(collector, child, _text(alias_n), _text(name_n), "", 0)
            elif child.type == "import_from_statement":
                mod_node = child.child_by_field_name("module_name")
                if mod_node is None:
                    continue
                level = 0
                if mod_node.type == "relative_import":
                    module = ""
                    for sub in mod_node.children:
                        if sub.type == "import_prefix":
                            level = len(_text(sub))
                        elif sub.type == "dotted_name":
                            module = _text(sub)
                else:
                    module = _text(mod_node)
                for name_node in child.children_by_field_name("name"):
                    if name_node.type == "aliased_import":
                        orig = name_node.child_by_field_name("name")
                        alias = name_node.child_by_field_name("alias")
                        if orig is None or alias is None:
                            continue
                        self._add_import(collector, child, _text(alias), module, _text(orig), level)
                    else:
                        imported = _text(name_node)
                        self._add_import(collector, child, imported.split(".")[-1], module, imported, level)

    @staticmethod
    def _add_import(
        collector: _Collector,
        stmt: Any,
        bound_name: str,
        module: str,
        imported: str,
        level: int,
    ) -> None:
        span = _ts_span(stmt)
        _add_import_entity(collector, span, bound_name, module, imported, level)

    # ------------------------------------------------------------------
    # Call extraction
    # ------------------------------------------------------------------

    @staticmethod
    def _collect_calls(func_node: Any) -> List[str]:
        """Return every function/method name called inside *func_node*."""
        calls: List[str] = []
        body = func_node.child_by_field_name("body")
        if body is None:
            return calls

        # explicit stack: deeply nested expressions must not hit the recursion limit
        stack: List[Any] = [body]
        while stack:
            node = stack.pop()
            if node.type == "call":
                func = node.child_by_field_name("function")
                if func is not None:
                    name = _resolve_ts_call_name(func)
                    if name:
                        calls.append(name)
            stack.extend(
                ch for ch in reversed(node.children)
                if ch.type not in ("function_definition", "class_definition", "decorated_definition")
            )
        return calls

    @staticmethod
    def _extract_docstring(def_node: Any) -> str:
        """Extract the docstring from a function / class definition node."""
        body = def_node.child_by_field_name("body")
        if body is None:
            return ""
        for child in body.children:
            if child.type == "expression_statement":
                for expr in child.children:
                    if expr.type == "string":
                        return _clean_string_literal(_text(expr))
                break
            elif child.type != "comment":
                break
        return ""


# ===================================================================
# AST Fallback Parser (when the tree-sitter grammar is unavailable)
# ===================================================================

class ASTFallbackParser(SourceParser):
    """Pure-Python fallback using the built-in ``ast`` module. Python only."""

    def supports_language(self, language: str) -> bool:
        return language == "python"

    def parse_source(self, rel_path: str, source: str) -> ParsedFile:
        try:
            tree = ast.parse(source)
        except SyntaxError as exc:
            raise ParseError(f"SyntaxError in {rel_path}: {exc}") from exc

        collector = _Collector(source.splitlines())
        visitor = _ASTVisitor(collector)
        visitor.visit(tree)

        for stmt in tree.body:
            if isinstance(stmt, ast.Assign) and isinstance(stmt.targets[0], ast.Name):
                self._add_variable(collector, stmt, stmt.targets[0].id)
            elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                self._add_variable(collector, stmt, stmt.target.id)
            elif isinstance(stmt, ast.Import):
                for alias in stmt.names:
                    bound = alias.asname or alias.name.split(".")[0]
                    _add_import_entity(collector, _ast_span(stmt), bound, alias.name, "", 0)
            elif isinstance(stmt, ast.ImportFrom):
                for alias in stmt.names:
                    if alias.name == "*":
                        continue
                    _add_import_entity(
                        collector, _ast_span(stmt), alias.asname or alias.name,
                        stmt.module or "", alias.name, stmt.level,
                    )

        return ParsedFile(
            path=rel_path,
            language="python",
            entities=collector.entities,
            relationships=collector.relationships,
        )

    @staticmethod
    def _add_variable(collector: _Collector, stmt: ast.stmt, name: str) -> None:
        span = _ast_span(stmt)
        collector.add_entity(ParsedEntity(
            name=name,
            qualname=name,
            kind="variable",
            span=span,
            code=collector.snippet(span.start_line, span.end_line),
        ))


class _ASTVisitor(ast.NodeVisitor):
    """Walks a Python AST and collects class / function entities."""

    def __init__(self, collector: _Collector) -> None:
        self.collector = collector
        self.scope: List[str] = []
        self.parents: List[Optional[str]] = [None]
        self.class_depth: List[bool] = [False]

    def visit_Module(self, node: ast.Module) -> None:
        for stmt in node.body:
            self.visit(stmt)

    def generic_visit(self, node: ast.AST) -> None:
        # Only direct definition statements of a body are entities.
        return None

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        qualname = ".".join(self.scope + [node.name])
        span = _ast_span(node)
        bases = [b for b in (_ast_name_from_expr(base) for base in node.bases) if b]
        self.collector.add_entity(ParsedEntity(
            name=node.name,
            qualname=qualname,
            kind="class",
            span=span,
            code=self.collector.snippet(span.start_line, span.end_line),
            docstring=ast.get_docstring(node) or "",
            parent=self.parents[-1],
            metadata={"bases": bases},
        ))
        for base in bases:
            self.collector.add_edge(qualname, base, "extends")
        self._descend(node, qualname, in_class=True)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node, is_async=False)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node, is_async=True)

    def _visit_function(self, node: Any, is_async: bool) -> None:
        qualname = ".".join(self.scope + [node.name])
        span = _ast_span(node)
        self.collector.add_entity(ParsedEntity(
            name=node.name,
            qualname=qualname,
            kind="method" if self.class_depth[-1] else "function",
            span=span,
            code=self.collector.snippet(span.start_line, span.end_line),
            docstring=ast.get_docstring(node) or "",
            parent=self.parents[-1],
            metadata={"async": is_async},
        ))
        for call_name in _ast_collect_calls(node):
            self.collector.add_edge(qualname, call_name, "calls")
        self._descend(node, qualname, in_class=False)

    def _descend(self, node: Any, qualname: str, in_class: bool) -> None:
        self.scope.append(node.name)
        self.parents.append(qualname)
        self.class_depth.append(in_class)
        for stmt in node.body:
            self.visit(stmt)
        self.scope.pop()
        self.parents.pop()
        self.class_depth.pop()


# ===================================================================
# Backend selection
# ===================================================================

class CodeParser:
    """Selects **TreeSitterParser** when the grammar loads, else the AST parser."""

    def __init__(self, backend: Optional[str] = None) -> None:
        if backend == "ast":
            self._delegate: SourceParser = ASTFallbackParser()
            logger.info("Using AST fallback parser (forced)")
            return
        ts = TreeSitterParser(languages=["python"])
        if ts.supports_language("python"):
            self._delegate = ts
            logger.info("Using Tree-sitter parser (error-tolerant)")
        else:
            self._delegate = ASTFallbackParser()
            logger.info("Using AST fallback parser (Python only)")

    @property
    def backend(self) -> str:
        return type(self._delegate).__name__

    def supports(self, path: Path) -> bool:
        lang = language_for(path)
        return bool(lang) and self._delegate.supports_language(lang)

    def parse_source(self, rel_path: str, source: str) -> ParsedFile:
        return self._delegate.parse_source(rel_path, source)

    def parse_file(self, file_path: Path, project_root: Path) -> ParsedFile:
        rel_path = file_path.relative_to(project_root).as_posix()
        source = file_path.read_text(encoding="utf-8", errors="ignore")
        return self.parse_source(rel_path, source)


# ===================================================================
# Shared Helpers
# ===================================================================

def _text(node: Any) -> str:
    return node.text.decode("utf-8")


def _ts_span(node: Any) -> Span:
    return Span(
        start_line=node.start_point[0] + 1,
        start_column=node.start_point[1],
        end_line=node.end_point[0] + 1,
        end_column=node.end_point[1],
    )


def _ast_span(node: Any) -> Span:
    start_line = node.lineno
    start_col = node.col_offset
    for deco in getattr(node, "decorator_list", []):
        # decorator expressions start one column after the '@'
        if deco.lineno < start_line:
            start_line, start_col = deco.lineno, max(deco.col_offset - 1, 0)
    return Span(
        start_line=start_line,
        start_column=start_col,
        end_line=getattr(node, "end_lineno", None) or node.lineno,
        end_column=getattr(node, "end_col_offset", None) or 0,
    )


def _clean_string_literal(raw: str) -> str:
    body = raw.lstrip("rRbBuUfF")
    for q in ('"""', "'''"):
        if body.startswith(q) and body.endswith(q) and len(body) >= 6:
            return inspect.cleandoc(body[3:-3])
    for q in ('"', "'"):
        if body.startswith(q) and body.endswith(q) and len(body) >= 2:
            return inspect.cleandoc(body[1:-1])
    return raw.strip()


def _add_import_entity(
    collector: _Collector,
    span: Span,
    bound_name: str,
    module: str,
    imported: str,
    level: int,
) -> None:
    collector.add_entity(ParsedEntity(
        name=bound_name,
        qualname=bound_name,
        kind="import",
        span=span,
        code=collector.snippet(span.start_line, span.end_line),
        metadata={"module": module, "imported": imported, "level": level},
    ))
    # Only ``from x import y`` names a symbol that can become an entity.
    if imported:
        collector.add_edge(bound_name, imported, "imports", target_module=module)


def _resolve_ts_call_name(func_node: Any) -> Optional[str]:
    """Resolve a Tree-sitter call-function node to a dotted name string."""
    if func_node.type == "identifier":
        return _text(func_node)
    if func_node.type == "attribute":
        parts: List[str] = []
        current = func_node
        while current is not None and current.type == "attribute":
            attr = current.child_by_field_name("attribute")
            if attr is not None:
                parts.append(_text(attr))
            current = current.child_by_field_name("object")
        if current is not None and current.type == "identifier":
            parts.append(_text(current))
        return ".".join(reversed(parts)) if parts else None
    if func_node.type == "call":
        inner = func_node.child_by_field_name("function")
        while inner is not None and inner.type == "call":
            inner = inner.child_by_field_name("function")
        if inner is not None:
            return _resolve_ts_call_name(inner)
    return None


def _ast_collect_calls(func: Any) -> List[str]:
    """Call names in a function body, not descending into nested definitions."""
    names: List[str] = []
    stack: List[ast.AST] = list(func.body)
    ordered: List[Tuple[int, int, str]] = []
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            continue
        if isinstance(node, ast.Call):
            n = _ast_name_from_expr(node.func)
            if n:
                ordered.append((node.lineno, node.col_offset, n))
        stack.extend(ast.iter_child_nodes(node))
    for _, _, n in sorted(ordered):
        names.append(n)
    return names


def _ast_name_from_expr(expr: ast.AST) -> Optional[str]:
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        parts: List[str] = []
        current: ast.AST = expr
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if isinstance(current, ast.Name):
            parts.append(current.id)
        return ".".join(reversed(parts)) if parts else None
    if isinstance(expr, ast.Call):
        return _ast_name_from_expr(expr.func)
    return None
