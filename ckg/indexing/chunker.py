"""
Symbol-boundary chunker.

Turns a graph node plus the source of its file into retrievable text
chunks.  Each chunk is prefixed with a short header (language, file,
symbol, signature facts) so that embeddings and text search see the
symbol's context as well as its body.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..models import ChunkType, CodeChunk, GraphNode, NodeType

logger = logging.getLogger(__name__)

MAX_BODY_LINES = 80
FILE_HEADER_LINES = 30


class Chunker(Protocol):
    """Splits one node into chunks."""

    def create_chunks(self, node: GraphNode, source: Optional[str] = None) -> list[CodeChunk]:
        ...


# ---------------------------------------------------------------------------
# Text builders
# ---------------------------------------------------------------------------

def _function_text(node: GraphNode, body_lines: list[str]) -> str:
    """Format a Function / Method node into chunk text."""
    meta = node.metadata
    params = meta.get("params") or []
    label = "Method" if node.type == NodeType.METHOD else "Function"
    name = f"{meta['parent_class']}.{node.name}" if meta.get("parent_class") else node.name
    body_str = "\n".join(body_lines).strip() or meta.get("signature", "")
    return (
        f"Language: {node.language}\n"
        f"File: {node.path}\n"
        f"{label}: {name}\n"
        f"Parameters: {', '.join(params) if params else 'none'}\n"
        f"Returns: {meta.get('return_type') or 'none'}\n"
        f"Docstring: {(meta.get('docstring') or 'none').strip()}\n"
        f"Body:\n{body_str}"
    )


def _symbol_text(node: GraphNode, body_lines: list[str]) -> str:
    """Format a Class / Interface / Type node into chunk text."""
    meta = node.metadata
    bases = meta.get("bases") or []
    methods = meta.get("methods") or []
    text = (
        f"Language: {node.language}\n"
        f"File: {node.path}\n"
        f"{node.type}: {node.name}\n"
        f"Inherits: {', '.join(bases) if bases else 'none'}\n"
        f"Docstring: {(meta.get('docstring') or 'none').strip()}\n"
        f"Methods: {', '.join(methods) if methods else 'none'}"
    )
    # Methods get their own chunks; only the declaration head is kept here
    head = [ln for ln in body_lines[:10] if ln.strip()]
    if head:
        text += "\nDeclaration:\n" + "\n".join(head)
    return text


def _file_header_text(node: GraphNode, source_lines: list[str]) -> str:
    meta = node.metadata
    counts = meta.get("symbol_counts") or {}
    imports = meta.get("imports") or []
    summary = ", ".join(f"{v} {k}" for k, v in counts.items()) or "none"
    return (
        f"Language: {node.language}\n"
        f"File: {node.path}\n"
        f"Lines: {meta.get('line_count', len(source_lines))}\n"
        f"Symbols: {summary}\n"
        f"Imports: {', '.join(imports) if imports else 'none'}\n"
        f"Header:\n" + "\n".join(source_lines[:FILE_HEADER_LINES]).strip()
    )


def _basic_text(node: GraphNode, body_lines: list[str]) -> str:
    body = "\n".join(body_lines).strip() or node.metadata.get("signature", "")
    return (
        f"Language: {node.language}\n"
        f"File: {node.path}\n"
        f"{node.type}: {node.name}\n"
        f"{body}"
    )


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class SymbolChunker:
    """
    Default :class:`Chunker`: one chunk per node, cut at symbol boundaries.

    ============================  ===============
    Node type                     Chunk type
    ============================  ===============
    Function, Method              ``function``
    Class, Interface, Type        ``symbol``
    File                          ``file-header``
    anything else                 ``basic``
    ============================  ===============

    Parameters
    ----------
    max_body_lines:
        Bodies longer than this are truncated with a ``...`` marker.
    """

    def __init__(self, max_body_lines: int = MAX_BODY_LINES) -> None:
        self.max_body_lines = max_body_lines

    def _body(self, node: GraphNode, source_lines: list[str]) -> list[str]:
        start = int(node.metadata.get("line_start", 0) or 0)
        end = int(node.metadata.get("line_end", start) or start)
        if start <= 0 or not source_lines:
            return []
        lines = source_lines[start - 1:end]
        if len(lines) > self.max_body_lines:
            lines = lines[:self.max_body_lines] + ["..."]
        return lines

    def create_chunks(self, node: GraphNode, source: Optional[str] = None) -> list[CodeChunk]:
        """
        Build the chunks for *node*.

        Parameters
        ----------
        node:
            Any graph node.
        source:
            Full text of the node's file.  Without it the chunk is built
            from the node's metadata alone.

        Returns
        -------
        list[CodeChunk]
            Chunks bound to ``node.id``; empty if there is nothing to index.
        """
        source_lines = source.splitlines() if source else []
        body_lines = self._body(node, source_lines)

        if node.type in (NodeType.FUNCTION, NodeType.METHOD):
            chunk_type, text = ChunkType.FUNCTION, _function_text(node, body_lines)
        elif node.type in (NodeType.CLASS, NodeType.INTERFACE, NodeType.TYPE):
            chunk_type, text = ChunkType.SYMBOL, _symbol_text(node, body_lines)
        elif node.type == NodeType.FILE:
            chunk_type, text = ChunkType.FILE_HEADER, _file_header_text(node, source_lines)
        else:
            chunk_type, text = ChunkType.BASIC, _basic_text(node, body_lines)

        if not text.strip():
            return []
        return [CodeChunk(node_id=node.id, content=text, chunk_type=chunk_type,
                          language=node.language)]
