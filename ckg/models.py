"""
Data model for the Code Knowledge Graph.

Nodes represent files and code symbols; edges represent directed
relationships between them.  Chunks, diagnostics and symbol references
hang off nodes and are deleted with them.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Node / Edge type constants
# ---------------------------------------------------------------------------

class NodeType:
    FILE = "File"
    MODULE = "Module"
    CLASS = "Class"
    FUNCTION = "Function"
    METHOD = "Method"
    VARIABLE = "Variable"
    TYPE = "Type"
    INTERFACE = "Interface"


# Node types that can be exported and counted as "symbols"
SYMBOL_TYPES: tuple[str, ...] = (
    NodeType.FUNCTION,
    NodeType.METHOD,
    NodeType.CLASS,
    NodeType.VARIABLE,
    NodeType.TYPE,
    NodeType.INTERFACE,
)


class EdgeType:
    IMPORTS = "imports"
    EXPORTS = "exports"
    CALLS = "calls"
    REFERENCES = "references"
    EXTENDS = "extends"
    IMPLEMENTS = "implements"
    CONTAINS = "contains"
    DEFINES = "defines"
    OWNS = "owns"


# Relationships that form the containment hierarchy
HIERARCHY_EDGES: tuple[str, ...] = (EdgeType.CONTAINS, EdgeType.DEFINES, EdgeType.OWNS)


class ChunkType:
    SYMBOL = "symbol"
    FUNCTION = "function"
    FILE_HEADER = "file-header"
    BASIC = "basic"


class ReferenceType:
    USAGE = "usage"
    CALL = "call"
    REFERENCE = "reference"
    IMPORT = "import"


class Severity:
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    ORDER = {ERROR: 0, WARNING: 1, INFO: 2}


class ChangeType:
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# ID / time helpers
# ---------------------------------------------------------------------------

def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def make_node_id(
    project_id: str,
    path: str,
    node_type: str,
    name: str,
    line: int = 0,
) -> str:
    """
    Generate a deterministic node id from ``{project}:{path}:{type}:{name}:{line}``.

    Re-extracting an unchanged file yields the same ids, which keeps
    incremental re-indexing idempotent.

    Returns
    -------
    str
        UUID5 string, stable for the same inputs.
    """
    key = f"{project_id}:{path}:{node_type}:{name}:{line}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def edge_id(from_node_id: str, to_node_id: str, relationship: str) -> str:
    """Deterministic edge id; one edge per (from, to, relationship)."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{from_node_id}:{relationship}:{to_node_id}"))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class GraphNode:
    """A file or code symbol."""

    project_id: str
    type: str
    name: str
    path: str
    language: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    commit_hash: Optional[str] = None
    id: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            line = int(self.metadata.get("line_start", 0) or 0)
            self.id = make_node_id(self.project_id, self.path, self.type, self.name, line)

    @property
    def key(self) -> str:
        """Logical identity within a project: ``name:type:path``."""
        return f"{self.name}:{self.type}:{self.path}"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GraphEdge:
    """
    A directed relationship between two nodes.

    Extractors that cannot know the target id may leave ``to_node_id``
    empty and describe the target by ``target_name`` / ``target_type`` /
    ``target_paths``; the store resolves it at insert time.
    """

    from_node_id: str
    relationship: str
    to_node_id: Optional[str] = None
    weight: float = 1.0
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)
    target_name: Optional[str] = None
    target_type: Optional[str] = None
    target_paths: tuple[str, ...] = ()
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id and self.to_node_id:
            self.id = edge_id(self.from_node_id, self.to_node_id, self.relationship)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "relationship": self.relationship,
            "weight": self.weight,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }


@dataclass
class CodeChunk:
    """A retrievable text unit bound to exactly one node."""

    node_id: str
    content: str
    chunk_type: str = ChunkType.BASIC
    language: str = ""
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{self.node_id}:{self.chunk_type}"))


@dataclass
class Diagnostic:
    """An issue attached to a node."""

    node_id: str
    severity: str
    message: str
    line: int = 0
    column: int = 0
    source: str = ""
    rule: str = ""
    fix_suggestion: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SymbolReference:
    """
    Links a reference site to the symbol it references.

    ``symbol_name`` is used when the extractor cannot resolve the symbol
    node itself; the store resolves it at insert time.
    """

    reference_node_id: str
    reference_type: str
    symbol_node_id: Optional[str] = None
    symbol_name: Optional[str] = None
    line: int = 0
    column: int = 0
    context: str = ""


@dataclass
class ExtractionResult:
    """Everything an extractor produced for one file."""

    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)
    references: list[SymbolReference] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def extend(self, other: "ExtractionResult") -> None:
        self.nodes.extend(other.nodes)
        self.edges.extend(other.edges)
        self.references.extend(other.references)
        self.diagnostics.extend(other.diagnostics)


@dataclass
class Neighbor:
    """A node reached over one edge from another node."""

    node: GraphNode
    relationship: str
    weight: float
    direction: str          # "outgoing" | "incoming"


@dataclass
class FileChange:
    """A file-system change event for a watched project."""

    path: str
    project_id: str
    change_type: str


@dataclass
class IndexProgress:
    """Progress of a full index or chunking run."""

    project_id: str
    progress: int           # percent, 0-100
    current_file: str
    processed: int
    total: int
