"""
Tree-sitter extractor: turns one source file into graph records.

For every supported file it produces

* a File node plus Class / Interface / Type / Function / Method / Variable
  nodes with line ranges, signatures, parameters and docstrings,
* ``contains`` / ``defines`` edges for the containment hierarchy,
* ``exports`` edges for the file's public symbols,
* ``imports`` edges to the project files an import can resolve to,
* ``calls`` edges and ``call`` references for call sites,
* ``extends`` / ``implements`` edges for supertypes,
* error diagnostics for syntax errors reported by the parser.

Edge targets outside the file are named, not resolved; the graph store
resolves them at insert time.

Supports: Python, JavaScript, TypeScript (incl. TSX), Java, Go, Rust.
Requires tree-sitter >= 0.25 with the individual language packages.
"""

from __future__ import annotations

import hashlib
import importlib
import logging
import os
import posixpath
from collections import Counter
from typing import Optional, Protocol

from ..errors import ExtractionError
from ..models import (
    Diagnostic,
    EdgeType,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    NodeType,
    ReferenceType,
    Severity,
    SymbolReference,
)

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    """Parses one file into nodes, edges, references and diagnostics."""

    def extract(
        self,
        file_path: str,
        project_id: str,
        commit_hash: Optional[str] = None,
        content: Optional[str] = None,
    ) -> ExtractionResult:
        ...


# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
}

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(EXTENSION_TO_LANGUAGE)

# grammar name -> (package, attribute returning the language pointer)
_GRAMMARS: dict[str, tuple[str, str]] = {
    "python": ("tree_sitter_python", "language"),
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
    "java": ("tree_sitter_java", "language"),
    "go": ("tree_sitter_go", "language"),
    "rust": ("tree_sitter_rust", "language"),
}

MAX_SYNTAX_DIAGNOSTICS = 20


def detect_language(file_path: str) -> Optional[str]:
    """Return the language name for *file_path*, or None if unsupported."""
    return EXTENSION_TO_LANGUAGE.get(os.path.splitext(file_path)[1].lower())


def _grammar_for(language: str, file_path: str) -> str:
    if language == "typescript" and file_path.lower().endswith(".tsx"):
        return "tsx"
    return language


# ---------------------------------------------------------------------------
# tree-sitter loading (cached)
# ---------------------------------------------------------------------------

_LANG_CACHE: dict[str, object] = {}
_PARSER_CACHE: dict[str, object] = {}
_QUERY_CACHE: dict[tuple[str, str], object] = {}


def _get_ts_language(grammar: str):
    """Return the ``tree_sitter.Language`` for *grammar*, or None if not installed."""
    if grammar in _LANG_CACHE:
        return _LANG_CACHE[grammar]
    entry = _GRAMMARS.get(grammar)
    if entry is None:
        return None
    try:
        import tree_sitter as ts
        module = importlib.import_module(entry[0])
        lang_obj = ts.Language(getattr(module, entry[1])())
    except (ImportError, AttributeError, ValueError) as exc:
        logger.warning("[extractor] Cannot load tree-sitter grammar %s: %s", grammar, exc)
        return None
    _LANG_CACHE[grammar] = lang_obj
    return lang_obj


def _get_ts_parser(grammar: str):
    if grammar in _PARSER_CACHE:
        return _PARSER_CACHE[grammar]
    lang_obj = _get_ts_language(grammar)
    if lang_obj is None:
        return None
    import tree_sitter as ts
    parser = ts.Parser(lang_obj)
    _PARSER_CACHE[grammar] = parser
    return parser


def _safe_query_matches(grammar: str, query_src: str, node) -> list[dict]:
    """
    Run *query_src* on *node*, one blank-line-separated sub-pattern at a time.

    A sub-pattern that does not compile for the installed grammar version
    is skipped.  Returns a flat list of ``{capture_name: [Node]}`` dicts.
    """
    import tree_sitter as ts

    lang_obj = _get_ts_language(grammar)
    if lang_obj is None or node is None:
        return []
    results: list[dict] = []
    for pattern in (p.strip() for p in query_src.strip().split("\n\n")):
        if not pattern:
            continue
        key = (grammar, pattern)
        query = _QUERY_CACHE.get(key)
        if query is None:
            try:
                query = ts.Query(lang_obj, pattern)
            except (ts.QueryError, ValueError) as exc:
                logger.debug("[extractor] Skipping query for %s: %s", grammar, exc)
                continue
            _QUERY_CACHE[key] = query
        for _idx, caps in ts.QueryCursor(query).matches(node):
            results.append(caps)
    return results


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
#
# Captures: @def (definition node), @name, @params, @ret, @mod (import
# source), @imported (imported name), @call (callee name), @trait/@type
# (Rust impl blocks).

_JS_COMMON = {
    "functions": """\
(function_declaration
  name: (identifier) @name
  parameters: (formal_parameters) @params) @def

(method_definition
  name: (property_identifier) @name
  parameters: (formal_parameters) @params) @def

(variable_declarator
  name: (identifier) @name
  value: (arrow_function parameters: (formal_parameters) @params)) @def

(variable_declarator
  name: (identifier) @name
  value: (function_expression parameters: (formal_parameters) @params)) @def
""",
    "variables": """\
(lexical_declaration (variable_declarator name: (identifier) @name) @def)
""",
    "imports": """\
(import_statement source: (string) @mod)

(call_expression
  function: (identifier) @require
  arguments: (arguments (string) @mod))
""",
    "imported": """\
(import_specifier name: (identifier) @imported)
""",
    "calls": """\
(call_expression function: (identifier) @call)

(call_expression function: (member_expression
  property: (property_identifier) @call))

(new_expression constructor: (identifier) @call)
""",
}

_QUERIES: dict[str, dict[str, str]] = {
    "python": {
        "classes": """\
(class_definition name: (identifier) @name) @def
""",
        "functions": """\
(function_definition
  name: (identifier) @name
  parameters: (parameters) @params
  return_type: (type)? @ret) @def
""",
        "variables": """\
(module (expression_statement (assignment left: (identifier) @name) @def))
""",
        "imports": """\
(import_statement name: (dotted_name) @mod)

(import_statement name: (aliased_import name: (dotted_name) @mod))

(import_from_statement module_name: (dotted_name) @mod)

(import_from_statement module_name: (relative_import) @mod)
""",
        "imported": """\
(import_from_statement name: (dotted_name) @imported)

(import_from_statement name: (aliased_import name: (dotted_name) @imported))
""",
        "calls": """\
(call function: (identifier) @call)

(call function: (attribute attribute: (identifier) @call))
""",
    },
    "javascript": {
        "classes": """\
(class_declaration name: (identifier) @name) @def
""",
        **_JS_COMMON,
    },
    "typescript": {
        "classes": """\
(class_declaration name: (type_identifier) @name) @def

(abstract_class_declaration name: (type_identifier) @name) @def

(interface_declaration name: (type_identifier) @name) @def

(type_alias_declaration name: (type_identifier) @name) @def

(enum_declaration name: (identifier) @name) @def
""",
        **_JS_COMMON,
        # Typed patterns first: the first match for a definition wins
        "functions": """\
(function_declaration
  name: (identifier) @name
  parameters: (formal_parameters) @params
  return_type: (type_annotation) @ret) @def

(method_definition
  name: (property_identifier) @name
  parameters: (formal_parameters) @params
  return_type: (type_annotation) @ret) @def

""" + _JS_COMMON["functions"],
    },
    "java": {
        "classes": """\
(class_declaration name: (identifier) @name) @def

(interface_declaration name: (identifier) @name) @def

(enum_declaration name: (identifier) @name) @def
""",
        "functions": """\
(method_declaration
  name: (identifier) @name
  parameters: (formal_parameters) @params) @def
""",
        "imports": """\
(import_declaration (scoped_identifier) @mod)
""",
        "calls": """\
(method_invocation name: (identifier) @call)

(object_creation_expression type: (type_identifier) @call)
""",
    },
    "go": {
        "classes": """\
(type_spec name: (type_identifier) @name) @def
""",
        "functions": """\
(function_declaration
  name: (identifier) @name
  parameters: (parameter_list) @params) @def

(method_declaration
  name: (field_identifier) @name
  parameters: (parameter_list) @params) @def
""",
        "imports": """\
(import_spec path: (interpreted_string_literal) @mod)
""",
        "calls": """\
(call_expression function: (identifier) @call)

(call_expression function: (selector_expression
  field: (field_identifier) @call))
""",
    },
    "rust": {
        "classes": """\
(struct_item name: (type_identifier) @name) @def

(enum_item name: (type_identifier) @name) @def

(trait_item name: (type_identifier) @name) @def

(type_item name: (type_identifier) @name) @def
""",
        "functions": """\
(function_item
  name: (identifier) @name
  parameters: (parameters) @params
  return_type: (_)? @ret) @def
""",
        "impls": """\
(impl_item trait: (_) @trait type: (_) @type)
""",
        "imports": """\
(use_declaration argument: (_) @mod)
""",
        "calls": """\
(call_expression function: (identifier) @call)

(call_expression function: (field_expression field: (field_identifier) @call))

(call_expression function: (scoped_identifier name: (identifier) @call))
""",
    },
}
_QUERIES["tsx"] = _QUERIES["typescript"]

# Definition node type -> graph node type
_DEF_NODE_TYPES: dict[str, str] = {
    "class_definition": NodeType.CLASS,
    "class_declaration": NodeType.CLASS,
    "abstract_class_declaration": NodeType.CLASS,
    "struct_item": NodeType.CLASS,
    "interface_declaration": NodeType.INTERFACE,
    "trait_item": NodeType.INTERFACE,
    "type_alias_declaration": NodeType.TYPE,
    "enum_declaration": NodeType.TYPE,
    "enum_item": NodeType.TYPE,
    "type_item": NodeType.TYPE,
}

_CLASS_LIKE = frozenset(_DEF_NODE_TYPES) | {"type_spec"}
_FUNCTION_LIKE = frozenset({
    "function_definition", "function_declaration", "method_definition",
    "method_declaration", "function_item", "variable_declarator",
})


# ---------------------------------------------------------------------------
# Node text helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None or not node.text:
        return ""
    return node.text.decode("utf-8", errors="replace")


def _first_node(caps: dict, *keys: str):
    """Return the first Node found under any of *keys* in a capture dict."""
    for k in keys:
        nodes = caps.get(k)
        if nodes:
            return nodes[0]
    return None


def _span(node) -> tuple[int, int]:
    return node.start_byte, node.end_byte


def _short_type_name(raw: str) -> str:
    """``pkg.mod.Base[T]`` / ``Base<T>`` / ``crate::x::Trait`` -> ``Base`` / ``Trait``."""
    raw = raw.split("<", 1)[0].split("[", 1)[0].split("(", 1)[0].strip()
    raw = raw.replace("::", ".")
    return raw.rsplit(".", 1)[-1].strip("&* ")


def _signature(def_node) -> str:
    first = _text(def_node).split("\n", 1)[0].strip()
    return first[:200]


def _extract_docstring(def_node) -> str:
    """
    Return the docstring of a definition.

    Python: the first string statement of the body.  Other languages: the
    comment immediately preceding the definition.
    """
    body = def_node.child_by_field_name("body")
    if body is not None and body.type == "block":
        for stmt in body.named_children:
            if stmt.type == "expression_statement" and stmt.named_children:
                sub = stmt.named_children[0]
                if sub.type in ("string", "concatenated_string"):
                    raw = _text(sub)
                    for q in ('"""', "'''", '"', "'"):
                        if raw.startswith(q) and raw.endswith(q) and len(raw) > 2 * len(q):
                            return raw[len(q):-len(q)].strip()
                    return raw.strip()
            break

    prev = def_node.prev_named_sibling
    if prev is not None and prev.type in ("comment", "line_comment", "block_comment"):
        if def_node.start_point[0] - prev.end_point[0] <= 1:
            lines = [
                ln.strip().lstrip("/*").rstrip("*/").strip()
                for ln in _text(prev).splitlines()
            ]
            return "\n".join(ln for ln in lines if ln)
    return ""


def _extract_params(params_node) -> list[str]:
    """Extract parameter names from a parameter-list node."""
    if params_node is None:
        return []
    params: list[str] = []
    skip_names = {"self", "cls", "&self", "&mut self"}
    for child in params_node.named_children:
        if child.type == "identifier":
            name = _text(child)
        elif child.type in ("self_parameter", "comment"):
            continue
        else:
            field = child.child_by_field_name("name") or child.child_by_field_name("pattern")
            if field is None:
                field = next((c for c in child.named_children if c.type == "identifier"), None)
            name = _text(field)
        if name and name not in skip_names:
            params.append(name)
    return params


def _enclosing(node, types: frozenset[str]):
    """Return the nearest ancestor of *node* whose type is in *types*."""
    parent = node.parent
    while parent is not None:
        if parent.type in types:
            return parent
        parent = parent.parent
    return None


def _is_top_level(def_node) -> bool:
    """True when *def_node* is declared at module level (allowing export/decorator wrappers)."""
    node = def_node
    while node.parent is not None:
        parent = node.parent
        if parent.type in ("module", "program", "source_file"):
            return True
        if parent.type not in (
            "decorated_definition", "export_statement", "lexical_declaration",
            "variable_declaration", "expression_statement", "type_declaration",
        ):
            return False
        node = parent
    return False


def _is_exported(language: str, def_node, name: str) -> bool:
    if language == "python":
        return _is_top_level(def_node) and not name.startswith("_")
    if language in ("javascript", "typescript"):
        node = def_node
        for _ in range(3):
            node = node.parent
            if node is None:
                return False
            if node.type == "export_statement":
                return True
        return False
    if language == "go":
        return name[:1].isupper()
    if language == "java":
        return any(c.type == "modifiers" and "public" in _text(c).split() for c in def_node.children)
    if language == "rust":
        return any(c.type == "visibility_modifier" for c in def_node.children)
    return False


def _supertypes(language: str, def_node) -> tuple[list[str], list[str]]:
    """Return ``(extends, implements)`` base names of a class-like definition."""
    extends: list[str] = []
    implements: list[str] = []
    if language == "python":
        bases = def_node.child_by_field_name("superclasses")
        if bases is not None:
            for arg in bases.named_children:
                if arg.type in ("identifier", "attribute", "subscript"):
                    name = _short_type_name(_text(arg))
                    if name and name != "object":
                        extends.append(name)
    elif language == "java":
        sup = def_node.child_by_field_name("superclass")
        if sup is not None:
            extends.extend(_short_type_name(_text(c)) for c in sup.named_children)
        for child in def_node.children:
            if child.type == "super_interfaces":
                for type_list in child.named_children:
                    implements.extend(_short_type_name(_text(t)) for t in type_list.named_children)
            elif child.type == "extends_interfaces":
                for type_list in child.named_children:
                    extends.extend(_short_type_name(_text(t)) for t in type_list.named_children)
    elif language in ("javascript", "typescript"):
        for child in def_node.children:
            if child.type == "class_heritage":
                clauses = child.named_children
                # JavaScript puts the base expression directly under class_heritage
                if clauses and clauses[0].type not in ("extends_clause", "implements_clause"):
                    extends.append(_short_type_name(_text(clauses[0])))
                for clause in clauses:
                    target = extends if clause.type == "extends_clause" else implements
                    if clause.type in ("extends_clause", "implements_clause"):
                        target.extend(
                            _short_type_name(_text(t)) for t in clause.named_children
                            if t.type not in ("type_arguments", "comment")
                        )
            elif child.type == "extends_type_clause":
                extends.extend(_short_type_name(_text(t)) for t in child.named_children)
    return [e for e in extends if e], [i for i in implements if i]


# ---------------------------------------------------------------------------
# Import path candidates
# ---------------------------------------------------------------------------

_JS_EXTS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


def _clean(path: str) -> str:
    path = posixpath.normpath(path)
    return path[2:] if path.startswith("./") else path


def import_candidates(language: str, module: str, file_path: str) -> list[str]:
    """
    Return project-relative paths *module* may refer to, most likely first.

    External packages resolve to no candidate.
    """
    here = posixpath.dirname(file_path.replace(os.sep, "/"))
    if language == "python":
        if module.startswith("."):
            dots = len(module) - len(module.lstrip("."))
            base = here
            for _ in range(dots - 1):
                base = posixpath.dirname(base)
            rest = module.lstrip(".").replace(".", "/")
            stem = posixpath.join(base, rest) if rest else base
            cands = [f"{stem}.py", posixpath.join(stem, "__init__.py")] if stem else ["__init__.py"]
        else:
            stem = module.replace(".", "/")
            cands = [f"{stem}.py", f"{stem}/__init__.py", f"src/{stem}.py",
                     f"src/{stem}/__init__.py"]
            if here:
                cands.append(posixpath.join(here, f"{stem}.py"))
        return [_clean(c) for c in cands]
    if language in ("javascript", "typescript"):
        if not module.startswith("."):
            return []
        stem = _clean(posixpath.join(here, module))
        return [stem] + [stem + e for e in _JS_EXTS] + [f"{stem}/index{e}" for e in _JS_EXTS]
    if language == "java":
        if module.endswith("*"):
            return []
        stem = module.replace(".", "/")
        return [f"{stem}.java", f"src/main/java/{stem}.java", f"src/{stem}.java"]
    if language == "rust":
        path = module.split("::{", 1)[0].split(" as ", 1)[0]
        parts = [p for p in path.split("::") if p]
        if not parts:
            return []
        if parts[0] == "crate":
            base, parts = "src", parts[1:]
        elif parts[0] in ("self", "super"):
            base = here if parts[0] == "self" else posixpath.dirname(here)
            parts = parts[1:]
        else:
            return []
        cands = []
        # The last segment may be an item rather than a module
        for n in (len(parts), len(parts) - 1):
            if n <= 0:
                continue
            stem = posixpath.join(base, *parts[:n])
            cands.extend([f"{stem}.rs", f"{stem}/mod.rs"])
        return [_clean(c) for c in cands]
    return []


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class _FileExtraction:
    """Mutable state while extracting one file."""

    def __init__(self, project_id: str, path: str, language: str, grammar: str,
                 commit_hash: Optional[str], source: bytes) -> None:
        self.project_id = project_id
        self.path = path
        self.language = language
        self.grammar = grammar
        self.commit_hash = commit_hash
        self.lines = source.decode("utf-8", errors="replace").splitlines()
        self.result = ExtractionResult()
        self.by_span: dict[tuple[int, int], GraphNode] = {}
        self.classes_by_name: dict[str, GraphNode] = {}
        self.imports: list[str] = []

        self.file_node = GraphNode(
            project_id=project_id,
            type=NodeType.FILE,
            name=posixpath.basename(path),
            path=path,
            language=language,
            metadata={
                "line_count": len(self.lines),
                "hash": hashlib.sha256(source).hexdigest(),
            },
            commit_hash=commit_hash,
        )
        self.result.nodes.append(self.file_node)

    # ------------------------------------------------------------------

    def _add_node(self, node_type: str, name: str, def_node, **metadata) -> GraphNode:
        node = GraphNode(
            project_id=self.project_id,
            type=node_type,
            name=name,
            path=self.path,
            language=self.language,
            metadata={
                "line_start": def_node.start_point[0] + 1,
                "line_end": def_node.end_point[0] + 1,
                "signature": _signature(def_node),
                **metadata,
            },
            commit_hash=self.commit_hash,
        )
        self.result.nodes.append(node)
        self.by_span[_span(def_node)] = node
        return node

    def _edge(self, src: GraphNode, relationship: str, dst: Optional[GraphNode] = None, **kw) -> None:
        self.result.edges.append(GraphEdge(
            from_node_id=src.id,
            to_node_id=dst.id if dst else None,
            relationship=relationship,
            **kw,
        ))

    def _line_text(self, row: int) -> str:
        return self.lines[row].strip()[:200] if 0 <= row < len(self.lines) else ""

    def _parent_node(self, def_node) -> Optional[GraphNode]:
        """The already-extracted class-like node enclosing *def_node*, if any."""
        enclosing = _enclosing(def_node, _CLASS_LIKE)
        if enclosing is not None:
            return self.by_span.get(_span(enclosing))
        return None

    # ------------------------------------------------------------------

    def classes(self, root) -> None:
        for caps in _safe_query_matches(self.grammar, _QUERIES[self.grammar].get("classes", ""), root):
            def_node = _first_node(caps, "def")
            name = _text(_first_node(caps, "name"))
            if def_node is None or not name or _span(def_node) in self.by_span:
                continue
            if def_node.type == "type_spec":
                kind = def_node.child_by_field_name("type")
                kind_type = kind.type if kind is not None else ""
                node_type = {"struct_type": NodeType.CLASS,
                             "interface_type": NodeType.INTERFACE}.get(kind_type, NodeType.TYPE)
            else:
                node_type = _DEF_NODE_TYPES.get(def_node.type, NodeType.CLASS)
            extends, implements = _supertypes(self.language, def_node)
            node = self._add_node(
                node_type, name, def_node,
                docstring=_extract_docstring(def_node),
                bases=extends + implements,
                methods=[],
            )
            self.classes_by_name.setdefault(name, node)
            parent = self._parent_node(def_node) or self.file_node
            self._edge(parent, EdgeType.CONTAINS, node)
            if _is_exported(self.language, def_node, name):
                self._edge(self.file_node, EdgeType.EXPORTS, node)
            line = def_node.start_point[0] + 1
            for base in extends:
                self._edge(node, EdgeType.EXTENDS, target_name=base, metadata={"line": line})
                self._reference(node, base, ReferenceType.REFERENCE, def_node.start_point)
            for iface in implements:
                self._edge(node, EdgeType.IMPLEMENTS, target_name=iface, metadata={"line": line})
                self._reference(node, iface, ReferenceType.REFERENCE, def_node.start_point)

        for caps in _safe_query_matches(self.grammar, _QUERIES[self.grammar].get("impls", ""), root):
            trait = _short_type_name(_text(_first_node(caps, "trait")))
            owner = self.classes_by_name.get(_short_type_name(_text(_first_node(caps, "type"))))
            if trait and owner is not None:
                self._edge(owner, EdgeType.IMPLEMENTS, target_name=trait)
                owner.metadata["bases"].append(trait)

    def _owner_name(self, def_node) -> Optional[str]:
        """Receiver type of a Go method or Rust impl function."""
        if def_node.type == "method_declaration" and self.language == "go":
            receiver = def_node.child_by_field_name("receiver")
            for param in receiver.named_children if receiver is not None else []:
                type_node = param.child_by_field_name("type")
                if type_node is not None:
                    return _short_type_name(_text(type_node))
        impl = _enclosing(def_node, frozenset({"impl_item"}))
        if impl is not None:
            return _short_type_name(_text(impl.child_by_field_name("type")))
        return None

    def functions(self, root) -> None:
        for caps in _safe_query_matches(self.grammar, _QUERIES[self.grammar].get("functions", ""), root):
            def_node = _first_node(caps, "def")
            name = _text(_first_node(caps, "name"))
            if def_node is None or not name or _span(def_node) in self.by_span:
                continue
            owner = self._parent_node(def_node)
            if owner is None:
                owner_name = self._owner_name(def_node)
                owner = self.classes_by_name.get(owner_name) if owner_name else None
            else:
                owner_name = owner.name
            ret = _first_node(caps, "ret")
            node = self._add_node(
                NodeType.METHOD if owner_name else NodeType.FUNCTION, name, def_node,
                params=_extract_params(_first_node(caps, "params")),
                return_type=_text(ret).lstrip(":").strip() if ret is not None else "",
                docstring=_extract_docstring(def_node),
                parent_class=owner_name,
            )
            if owner is not None:
                self._edge(owner, EdgeType.DEFINES, node)
                owner.metadata["methods"].append(name)
            else:
                self._edge(self.file_node, EdgeType.CONTAINS, node)
            if _is_exported(self.language, def_node, name) and (
                owner_name is None or self.language in ("go", "java", "rust")
            ):
                self._edge(self.file_node, EdgeType.EXPORTS, node)

    def variables(self, root) -> None:
        for caps in _safe_query_matches(self.grammar, _QUERIES[self.grammar].get("variables", ""), root):
            def_node = _first_node(caps, "def")
            name = _text(_first_node(caps, "name"))
            if def_node is None or not name or _span(def_node) in self.by_span:
                continue
            if not _is_top_level(def_node):
                continue
            node = self._add_node(NodeType.VARIABLE, name, def_node)
            self._edge(self.file_node, EdgeType.CONTAINS, node)
            if _is_exported(self.language, def_node, name):
                self._edge(self.file_node, EdgeType.EXPORTS, node)

    def imports_(self, root) -> None:
        queries = _QUERIES[self.grammar]
        seen: set[str] = set()
        for caps in _safe_query_matches(self.grammar, queries.get("imports", ""), root):
            require = _first_node(caps, "require")
            if require is not None and _text(require) != "require":
                continue
            mod_node = _first_node(caps, "mod")
            module = _text(mod_node).strip("\"'`<> ")
            if not module or module in seen:
                continue
            seen.add(module)
            self.imports.append(module)
            cands = tuple(
                c for c in import_candidates(self.language, module, self.path) if c != self.path
            )
            if cands:
                self._edge(
                    self.file_node, EdgeType.IMPORTS,
                    target_type=NodeType.FILE, target_paths=cands,
                    metadata={"module": module, "line": mod_node.start_point[0] + 1},
                )
        for caps in _safe_query_matches(self.grammar, queries.get("imported", ""), root):
            name_node = _first_node(caps, "imported")
            name = _text(name_node).rsplit(".", 1)[-1]
            if name:
                self._reference(self.file_node, name, ReferenceType.IMPORT, name_node.start_point)

    def _reference(self, site: GraphNode, symbol_name: str, ref_type: str, point) -> None:
        self.result.references.append(SymbolReference(
            reference_node_id=site.id,
            reference_type=ref_type,
            symbol_name=symbol_name,
            line=point[0] + 1,
            column=point[1],
            context=self._line_text(point[0]),
        ))

    def calls(self, root) -> None:
        seen_sites: set[tuple[str, str, int]] = set()
        seen_edges: set[tuple[str, str]] = set()
        for caps in _safe_query_matches(self.grammar, _QUERIES[self.grammar].get("calls", ""), root):
            callee_node = _first_node(caps, "call")
            callee = _text(callee_node)
            if not callee:
                continue
            enclosing = _enclosing(callee_node, _FUNCTION_LIKE)
            caller = None
            while enclosing is not None and caller is None:
                caller = self.by_span.get(_span(enclosing))
                if caller is None:
                    enclosing = _enclosing(enclosing, _FUNCTION_LIKE)
            caller = caller or self.file_node
            line = callee_node.start_point[0] + 1
            if (caller.id, callee, line) in seen_sites:
                continue
            seen_sites.add((caller.id, callee, line))
            self._reference(caller, callee, ReferenceType.CALL, callee_node.start_point)
            if (caller.id, callee) not in seen_edges:
                seen_edges.add((caller.id, callee))
                self._edge(caller, EdgeType.CALLS, target_name=callee, metadata={"line": line})

    def diagnostics(self, root) -> None:
        if not root.has_error:
            return
        stack = [root]
        while stack and len(self.result.diagnostics) < MAX_SYNTAX_DIAGNOSTICS:
            node = stack.pop()
            if node.type == "ERROR" or node.is_missing:
                row, col = node.start_point
                if node.is_missing:
                    message = f"Missing {node.type}"
                else:
                    message = f"Syntax error near '{_text(node)[:40].strip()}'"
                self.result.diagnostics.append(Diagnostic(
                    node_id=self.file_node.id,
                    severity=Severity.ERROR,
                    message=message,
                    line=row + 1,
                    column=col,
                    source="tree-sitter",
                    rule="syntax-error",
                ))
                continue
            if node.has_error:
                stack.extend(reversed(node.children))

    def finish(self) -> ExtractionResult:
        counts = Counter(n.type for n in self.result.nodes if n is not self.file_node)
        self.file_node.metadata["symbol_counts"] = dict(sorted(counts.items()))
        self.file_node.metadata["imports"] = self.imports
        return self.result


class TreeSitterExtractor:
    """
    Default :class:`Extractor` backed by tree-sitter grammars.

    Parameters
    ----------
    root_path:
        Project root used to read files when no content is passed.
    """

    def __init__(self, root_path: Optional[str] = None) -> None:
        self._root = root_path

    @staticmethod
    def supports(file_path: str) -> bool:
        return detect_language(file_path) is not None

    def extract(
        self,
        file_path: str,
        project_id: str,
        commit_hash: Optional[str] = None,
        content: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Parse *file_path* (project-relative, ``/``-separated) into graph records.

        Raises
        ------
        ExtractionError
            If the file is unsupported, unreadable or cannot be parsed.
        """
        language = detect_language(file_path)
        if language is None:
            raise ExtractionError(file_path, "unsupported file type")
        if content is None:
            abs_path = os.path.join(self._root, file_path) if self._root else file_path
            try:
                with open(abs_path, encoding="utf-8", errors="replace") as fh:
                    content = fh.read()
            except OSError as exc:
                raise ExtractionError(file_path, f"cannot read file: {exc}") from exc

        grammar = _grammar_for(language, file_path)
        parser = _get_ts_parser(grammar)
        if parser is None:
            raise ExtractionError(file_path, f"tree-sitter grammar for {grammar} is not installed")
        source = content.encode("utf-8")
        try:
            tree = parser.parse(source)
        except (ValueError, RuntimeError) as exc:
            raise ExtractionError(file_path, f"parse error: {exc}") from exc

        root = tree.root_node
        state = _FileExtraction(project_id, file_path, language, grammar, commit_hash, source)
        state.classes(root)
        state.functions(root)
        state.variables(root)
        state.imports_(root)
        state.calls(root)
        state.diagnostics(root)
        return state.finish()
