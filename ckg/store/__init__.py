"""
Graph Store: persistent nodes, edges, chunks and embeddings per project.

SQLite (via aiosqlite) holds the authoritative data; networkx is used for
structural analytics over a project's subgraph.
"""

from .graph_store import GraphStore

__all__ = ["GraphStore"]
