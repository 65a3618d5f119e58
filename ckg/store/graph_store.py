"""
Async SQLite-backed graph store for the Code Knowledge Graph.

Holds nodes, edges, chunks, embeddings, diagnostics and symbol references
per project.  All access goes through one aiosqlite connection guarded by
an ``asyncio.Lock``; multi-statement writes run inside
``BEGIN IMMEDIATE … COMMIT`` and are rolled back as a unit on failure, so
readers never observe a half-written batch.

Storage: ``.ckg/graph.db`` by default (``:memory:`` is supported).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

import aiosqlite

from ..errors import StoreError
from ..health import ComponentHealth
from ..models import (
    HIERARCHY_EDGES,
    SYMBOL_TYPES,
    CodeChunk,
    Diagnostic,
    EdgeType,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    Neighbor,
    NodeType,
    SymbolReference,
    edge_id,
    utc_now,
)
from . import analysis
from .schema import SCHEMA_SQL
from .vectors import bytes_to_vec, vec_to_bytes

logger = logging.getLogger(__name__)

_NODE_COLS = "id, project_id, type, name, path, language, metadata, commit_hash, created_at, updated_at"
_N_NODE_COLS = ", ".join(f"n.{c.strip()}" for c in _NODE_COLS.split(","))

_EXPORT_FORMATS = ("json", "cypher", "gexf")


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


def node_from_row(row: Any) -> GraphNode:
    """Build a :class:`GraphNode` from a ``graph_nodes`` row."""
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except (json.JSONDecodeError, TypeError):
        metadata = {}
    return GraphNode(
        id=row["id"],
        project_id=row["project_id"],
        type=row["type"],
        name=row["name"],
        path=row["path"],
        language=row["language"],
        metadata=metadata,
        commit_hash=row["commit_hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class GraphStore:
    """
    Persistent store of the code knowledge graph.

    Parameters
    ----------
    db_path:
        SQLite database path, or ``":memory:"``.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> "GraphStore":
        """Open the connection and create the schema if missing."""
        if self._conn is not None:
            return self
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        try:
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON")
            if self._db_path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.executescript(SCHEMA_SQL)
        except aiosqlite.Error as exc:
            raise StoreError(f"Cannot open graph store at {self._db_path}: {exc}") from exc
        self._conn = conn
        logger.debug("[GraphStore] Opened %s", self._db_path)
        return self

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            try:
                await self._conn.close()
            except aiosqlite.Error as exc:
                logger.warning("[GraphStore] Error closing connection: %s", exc)
            self._conn = None

    async def __aenter__(self) -> "GraphStore":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Graph store is not open")
        return self._conn

    # ------------------------------------------------------------------
    # Low-level access
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block atomically; roll back and raise StoreError on failure."""
        async with self._lock:
            conn = self._require_conn()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException as exc:
                await conn.rollback()
                if isinstance(exc, aiosqlite.Error):
                    raise StoreError(f"Transaction rolled back: {exc}") from exc
                raise
            else:
                await conn.commit()

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        """
        Run a parameterized read query.

        Returns
        -------
        list[dict]
            One dict per row.
        """
        async with self._lock:
            conn = self._require_conn()
            try:
                rows = await conn.execute_fetchall(sql, tuple(params))
            except aiosqlite.Error as exc:
                raise StoreError(f"Query failed: {exc}") from exc
        return [dict(r) for r in rows]

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single-statement write and return the affected row count."""
        async with self._lock:
            conn = self._require_conn()
            try:
                cursor = await conn.execute(sql, tuple(params))
                count = cursor.rowcount
                await cursor.close()
            except aiosqlite.Error as exc:
                raise StoreError(f"Write failed: {exc}") from exc
        return count

    # ------------------------------------------------------------------
    # Insert helpers (run inside a transaction)
    # ------------------------------------------------------------------

    @staticmethod
    async def _insert_nodes(conn: aiosqlite.Connection, nodes: Sequence[GraphNode]) -> None:
        now = utc_now()
        rows = []
        for node in nodes:
            node.created_at = node.created_at or now
            node.updated_at = now
            rows.append((
                node.id, node.project_id, node.type, node.name, node.path,
                node.language or "", json.dumps(node.metadata, default=str),
                node.commit_hash, node.created_at, node.updated_at,
            ))
        await conn.executemany(
            f"INSERT INTO graph_nodes ({_NODE_COLS}) VALUES (?,?,?,?,?,?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET type=excluded.type, name=excluded.name, "
            "path=excluded.path, language=excluded.language, metadata=excluded.metadata, "
            "commit_hash=excluded.commit_hash, updated_at=excluded.updated_at",
            rows,
        )

    @staticmethod
    async def _node_location(
        conn: aiosqlite.Connection,
        node_id: str,
        memo: dict[str, Optional[tuple[str, str]]],
    ) -> Optional[tuple[str, str]]:
        """Return ``(project_id, path)`` for *node_id*, or None if it does not exist."""
        if node_id not in memo:
            rows = await conn.execute_fetchall(
                "SELECT project_id, path FROM graph_nodes WHERE id = ?", (node_id,)
            )
            memo[node_id] = (rows[0]["project_id"], rows[0]["path"]) if rows else None
        return memo[node_id]

    @staticmethod
    async def _resolve_target(
        conn: aiosqlite.Connection,
        project_id: str,
        name: Optional[str],
        node_type: Optional[str],
        paths: Sequence[str],
        prefer_path: str,
        allowed_types: Optional[Sequence[str]] = None,
    ) -> Optional[str]:
        """
        Find the node an unresolved edge or reference points to.

        Looks in *prefer_path* first, then anywhere in the project.
        """
        clauses = ["project_id = ?"]
        params: list[Any] = [project_id]
        if name:
            clauses.append("name = ?")
            params.append(name)
        if node_type:
            clauses.append("type = ?")
            params.append(node_type)
        elif allowed_types:
            clauses.append(f"type IN ({_placeholders(len(allowed_types))})")
            params.extend(allowed_types)
        if paths:
            clauses.append(f"path IN ({_placeholders(len(paths))})")
            params.extend(paths)
        if len(params) == 1:
            return None
        params.append(prefer_path)
        rows = await conn.execute_fetchall(
            f"SELECT id FROM graph_nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY CASE WHEN path = ? THEN 0 ELSE 1 END, created_at, id LIMIT 1",
            tuple(params),
        )
        return rows[0]["id"] if rows else None

    async def _insert_edges(
        self,
        conn: aiosqlite.Connection,
        edges: Iterable[GraphEdge],
        memo: dict[str, Optional[tuple[str, str]]],
    ) -> list[GraphEdge]:
        """Resolve and insert *edges*; edges with a missing endpoint are skipped."""
        inserted: list[GraphEdge] = []
        now = utc_now()
        for edge in edges:
            src = await self._node_location(conn, edge.from_node_id, memo)
            if src is None:
                continue
            if not edge.to_node_id:
                allowed = None if edge.target_paths else SYMBOL_TYPES
                edge.to_node_id = await self._resolve_target(
                    conn, src[0], edge.target_name, edge.target_type,
                    edge.target_paths, src[1], allowed,
                )
                if not edge.to_node_id:
                    logger.debug(
                        "[GraphStore] Unresolved %s target %s from %s",
                        edge.relationship, edge.target_name or edge.target_paths, src[1],
                    )
                    continue
            elif await self._node_location(conn, edge.to_node_id, memo) is None:
                continue
            if not edge.id:
                edge.id = edge_id(edge.from_node_id, edge.to_node_id, edge.relationship)
            await conn.execute(
                "INSERT INTO graph_edges (id, from_node_id, to_node_id, relationship, "
                "weight, confidence, metadata, created_at) VALUES (?,?,?,?,?,?,?,?) "
                "ON CONFLICT(from_node_id, to_node_id, relationship) DO UPDATE SET "
                "weight=excluded.weight, confidence=excluded.confidence, metadata=excluded.metadata",
                (edge.id, edge.from_node_id, edge.to_node_id, edge.relationship,
                 edge.weight, edge.confidence, json.dumps(edge.metadata, default=str), now),
            )
            inserted.append(edge)
        return inserted

    async def _insert_references(
        self,
        conn: aiosqlite.Connection,
        references: Iterable[SymbolReference],
        memo: dict[str, Optional[tuple[str, str]]],
    ) -> int:
        count = 0
        now = utc_now()
        for ref in references:
            site = await self._node_location(conn, ref.reference_node_id, memo)
            if site is None:
                continue
            if not ref.symbol_node_id:
                ref.symbol_node_id = await self._resolve_target(
                    conn, site[0], ref.symbol_name, None, (), site[1], SYMBOL_TYPES,
                )
                if not ref.symbol_node_id:
                    continue
            elif await self._node_location(conn, ref.symbol_node_id, memo) is None:
                continue
            await conn.execute(
                "INSERT INTO symbol_references (symbol_node_id, reference_node_id, "
                "reference_type, line, column_number, context, created_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (ref.symbol_node_id, ref.reference_node_id, ref.reference_type,
                 ref.line, ref.column, ref.context, now),
            )
            count += 1
        return count

    @staticmethod
    async def _insert_diagnostics(
        conn: aiosqlite.Connection,
        diagnostics: Iterable[Diagnostic],
    ) -> int:
        now = utc_now()
        rows = [
            (d.node_id, d.severity, d.message, d.line, d.column, d.source,
             d.rule, d.fix_suggestion, now)
            for d in diagnostics
        ]
        if rows:
            await conn.executemany(
                "INSERT INTO diagnostics (node_id, severity, message, line, column_number, "
                "source, rule, fix_suggestion, created_at) "
                "SELECT ?,?,?,?,?,?,?,?,? WHERE EXISTS (SELECT 1 FROM graph_nodes WHERE id = ?1)",
                rows,
            )
        return len(rows)

    @staticmethod
    async def _capture_inbound(
        conn: aiosqlite.Connection,
        project_id: str,
        paths: Sequence[str],
    ) -> tuple[list[GraphEdge], list[SymbolReference]]:
        """
        Collect edges and references from other files into *paths*.

        They are re-applied after the paths are re-inserted so that a
        re-indexed file keeps the links other files hold to its symbols.
        """
        ph = _placeholders(len(paths))
        edge_rows = await conn.execute_fetchall(
            "SELECT e.* FROM graph_edges e "
            "JOIN graph_nodes t ON e.to_node_id = t.id "
            "JOIN graph_nodes f ON e.from_node_id = f.id "
            f"WHERE t.project_id = ? AND t.path IN ({ph}) AND f.path NOT IN ({ph})",
            (project_id, *paths, *paths),
        )
        ref_rows = await conn.execute_fetchall(
            "SELECT r.* FROM symbol_references r "
            "JOIN graph_nodes s ON r.symbol_node_id = s.id "
            "JOIN graph_nodes site ON r.reference_node_id = site.id "
            f"WHERE s.project_id = ? AND s.path IN ({ph}) AND site.path NOT IN ({ph})",
            (project_id, *paths, *paths),
        )
        edges = [
            GraphEdge(
                id=r["id"], from_node_id=r["from_node_id"], to_node_id=r["to_node_id"],
                relationship=r["relationship"], weight=r["weight"],
                confidence=r["confidence"], metadata=json.loads(r["metadata"] or "{}"),
            )
            for r in edge_rows
        ]
        refs = [
            SymbolReference(
                reference_node_id=r["reference_node_id"], symbol_node_id=r["symbol_node_id"],
                reference_type=r["reference_type"], line=r["line"],
                column=r["column_number"], context=r["context"],
            )
            for r in ref_rows
        ]
        return edges, refs

    # ------------------------------------------------------------------
    # Batch ingestion
    # ------------------------------------------------------------------

    async def batch_create(
        self,
        result: ExtractionResult,
        replace_paths: Sequence[str] = (),
        project_id: Optional[str] = None,
        replace_project: bool = False,
    ) -> dict:
        """
        Atomically ingest an extraction result.

        When *replace_paths* is given, every node of those paths in
        *project_id* is deleted first, inside the same transaction, so the
        replacement is never observable half-done.  With
        *replace_project* the whole graph of *project_id* is replaced the
        same way.

        Returns
        -------
        dict
            Keys: nodes, edges, skipped_edges, references, diagnostics, deleted.
        """
        memo: dict[str, Optional[tuple[str, str]]] = {}
        deleted = 0
        inbound_edges: list[GraphEdge] = []
        inbound_refs: list[SymbolReference] = []
        if (replace_paths or replace_project) and project_id is None:
            raise StoreError("replacing nodes requires a project_id")
        async with self._transaction() as conn:
            if replace_project:
                cursor = await conn.execute(
                    "DELETE FROM graph_nodes WHERE project_id = ?", (project_id,)
                )
                deleted = cursor.rowcount
                await cursor.close()
            elif replace_paths:
                paths = list(dict.fromkeys(replace_paths))
                inbound_edges, inbound_refs = await self._capture_inbound(conn, project_id, paths)
                cursor = await conn.execute(
                    f"DELETE FROM graph_nodes WHERE project_id = ? "
                    f"AND path IN ({_placeholders(len(paths))})",
                    (project_id, *paths),
                )
                deleted = cursor.rowcount
                await cursor.close()

            await self._insert_nodes(conn, result.nodes)
            edges = await self._insert_edges(conn, [*result.edges, *inbound_edges], memo)
            ref_count = await self._insert_references(conn, [*result.references, *inbound_refs], memo)
            diag_count = await self._insert_diagnostics(conn, result.diagnostics)

        total_edges = len(result.edges) + len(inbound_edges)
        return {
            "nodes": len(result.nodes),
            "edges": len(edges),
            "skipped_edges": total_edges - len(edges),
            "references": ref_count,
            "diagnostics": diag_count,
            "deleted": deleted,
        }

    async def upsert_nodes_batch(self, nodes: Sequence[GraphNode]) -> list[GraphNode]:
        """Insert or update *nodes* in one atomic batch."""
        if not nodes:
            return []
        async with self._transaction() as conn:
            await self._insert_nodes(conn, nodes)
        return list(nodes)

    async def upsert_edges_batch(self, edges: Sequence[GraphEdge]) -> list[GraphEdge]:
        """
        Insert or update *edges* in one atomic batch.

        Returns
        -------
        list[GraphEdge]
            The edges actually written; edges with a missing endpoint are skipped.
        """
        if not edges:
            return []
        async with self._transaction() as conn:
            return await self._insert_edges(conn, edges, {})

    async def create_node(self, node: GraphNode) -> GraphNode:
        return (await self.upsert_nodes_batch([node]))[0]

    async def create_edge(self, edge: GraphEdge) -> Optional[GraphEdge]:
        written = await self.upsert_edges_batch([edge])
        return written[0] if written else None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def update_node(self, node_id: str, **fields: Any) -> Optional[GraphNode]:
        """
        Update selected columns of a node.

        Parameters
        ----------
        node_id:
            Node to update.
        **fields:
            Any of ``name``, ``type``, ``path``, ``language``, ``metadata``,
            ``commit_hash``.
        """
        allowed = {"name", "type", "path", "language", "metadata", "commit_hash"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update node fields: {sorted(unknown)}")
        if fields:
            assignments = []
            params: list[Any] = []
            for key, value in fields.items():
                assignments.append(f"{key} = ?")
                params.append(json.dumps(value, default=str) if key == "metadata" else value)
            assignments.append("updated_at = ?")
            params.extend([utc_now(), node_id])
            await self._execute(
                f"UPDATE graph_nodes SET {', '.join(assignments)} WHERE id = ?", params
            )
        return await self.get_node(node_id)

    async def delete_node(self, node_id: str) -> bool:
        """Delete a node; its edges, chunks, embeddings, diagnostics and references cascade."""
        return await self._execute("DELETE FROM graph_nodes WHERE id = ?", (node_id,)) > 0

    async def delete_nodes_for_path(self, path: str, project_id: str) -> int:
        """Delete every node belonging to *path* in *project_id*."""
        count = await self._execute(
            "DELETE FROM graph_nodes WHERE project_id = ? AND path = ?", (project_id, path)
        )
        logger.debug("[GraphStore] Removed %d nodes for %s", count, path)
        return count

    async def clear_project_graph(self, project_id: str) -> int:
        """Delete every node (and, by cascade, everything else) of a project."""
        count = await self._execute("DELETE FROM graph_nodes WHERE project_id = ?", (project_id,))
        logger.info("[GraphStore] Cleared project %s (%d nodes)", project_id, count)
        return count

    # ------------------------------------------------------------------
    # Node lookups
    # ------------------------------------------------------------------

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        rows = await self.query(f"SELECT {_NODE_COLS} FROM graph_nodes WHERE id = ?", (node_id,))
        return node_from_row(rows[0]) if rows else None

    async def get_nodes(self, node_ids: Sequence[str]) -> list[GraphNode]:
        if not node_ids:
            return []
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE id IN ({_placeholders(len(node_ids))})",
            node_ids,
        )
        by_id = {r["id"]: node_from_row(r) for r in rows}
        return [by_id[i] for i in node_ids if i in by_id]

    async def find_node(
        self,
        name: str,
        node_type: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Optional[GraphNode]:
        """Return the first node named *name* (optionally of *node_type*)."""
        clauses = ["name = ?"]
        params: list[Any] = [name]
        if node_type:
            clauses.append("type = ?")
            params.append(node_type)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at, id LIMIT 1",
            params,
        )
        return node_from_row(rows[0]) if rows else None

    async def find_nodes_by_type(
        self,
        node_type: Optional[str],
        project_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[GraphNode]:
        """Return nodes of *node_type* (all types when None), ordered by name."""
        clauses = ["1 = 1"]
        params: list[Any] = []
        if node_type:
            clauses.append("type = ?")
            params.append(node_type)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        params.append(limit)
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY name, path LIMIT ?",
            params,
        )
        return [node_from_row(r) for r in rows]

    async def find_nodes_by_path(
        self,
        path: str,
        project_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
    ) -> list[GraphNode]:
        clauses = ["path = ?"]
        params: list[Any] = [path]
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if types:
            clauses.append(f"type IN ({_placeholders(len(types))})")
            params.extend(types)
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at, id",
            params,
        )
        return [node_from_row(r) for r in rows]

    async def find_symbol_definitions(
        self,
        name: str,
        project_id: Optional[str] = None,
    ) -> list[GraphNode]:
        """Return every non-File node named *name*."""
        params: list[Any] = [name, NodeType.FILE]
        project_clause = ""
        if project_id is not None:
            project_clause = " AND project_id = ?"
            params.append(project_id)
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE name = ? AND type != ?{project_clause} "
            "ORDER BY path, created_at, id",
            params,
        )
        return [node_from_row(r) for r in rows]

    async def find_symbol_references(
        self,
        name: str,
        project_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict]:
        """
        Return reference sites of every symbol named *name*.

        Returns
        -------
        list[dict]
            Keys: reference_id, symbol_node_id, reference_node_id,
            reference_type, line, column, context, file_path, reference_name,
            reference_type_node.
        """
        params: list[Any] = [name]
        project_clause = ""
        if project_id is not None:
            project_clause = " AND s.project_id = ?"
            params.append(project_id)
        params.append(limit)
        return await self.query(
            "SELECT r.id AS reference_id, r.symbol_node_id, r.reference_node_id, "
            "r.reference_type, r.line, r.column_number AS column, r.context, "
            "site.path AS file_path, site.name AS reference_name, "
            "site.type AS reference_type_node "
            "FROM symbol_references r "
            "JOIN graph_nodes s ON r.symbol_node_id = s.id "
            "JOIN graph_nodes site ON r.reference_node_id = site.id "
            f"WHERE s.name = ?{project_clause} "
            "ORDER BY r.id DESC LIMIT ?",
            params,
        )

    async def search_nodes(
        self,
        text: str,
        project_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> list[GraphNode]:
        """Case-insensitive substring search over node name and path."""
        pattern = f"%{text.lower()}%"
        clauses = ["(lower(name) LIKE ? OR lower(path) LIKE ?)"]
        params: list[Any] = [pattern, pattern]
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if types:
            clauses.append(f"type IN ({_placeholders(len(types))})")
            params.extend(types)
        params.append(limit)
        rows = await self.query(
            f"SELECT {_NODE_COLS} FROM graph_nodes WHERE {' AND '.join(clauses)} "
            "ORDER BY length(name), name LIMIT ?",
            params,
        )
        return [node_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def get_neighbors(
        self,
        node_id: str,
        relationship: Optional[str] = None,
        direction: str = "both",
        limit: Optional[int] = None,
    ) -> list[Neighbor]:
        """
        Return nodes one edge away from *node_id*, ordered by edge weight descending.

        Parameters
        ----------
        node_id:
            Starting node.
        relationship:
            Restrict to one edge kind.
        direction:
            ``"outgoing"``, ``"incoming"`` or ``"both"``.
        limit:
            Maximum number of neighbours.
        """
        if direction not in ("outgoing", "incoming", "both"):
            raise ValueError(f"Invalid direction: {direction}")
        rel_clause = " AND e.relationship = ?" if relationship else ""
        rel_params: list[Any] = [relationship] if relationship else []
        parts: list[str] = []
        params: list[Any] = []
        if direction in ("outgoing", "both"):
            parts.append(
                f"SELECT {_N_NODE_COLS}, e.relationship AS rel, e.weight AS weight, "
                "'outgoing' AS direction FROM graph_edges e "
                f"JOIN graph_nodes n ON e.to_node_id = n.id WHERE e.from_node_id = ?{rel_clause}"
            )
            params.extend([node_id, *rel_params])
        if direction in ("incoming", "both"):
            parts.append(
                f"SELECT {_N_NODE_COLS}, e.relationship AS rel, e.weight AS weight, "
                "'incoming' AS direction FROM graph_edges e "
                f"JOIN graph_nodes n ON e.from_node_id = n.id WHERE e.to_node_id = ?{rel_clause}"
            )
            params.extend([node_id, *rel_params])
        sql = " UNION ALL ".join(parts) + " ORDER BY weight DESC, name"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self.query(sql, params)
        return [
            Neighbor(node=node_from_row(r), relationship=r["rel"],
                     weight=r["weight"], direction=r["direction"])
            for r in rows
        ]

    async def get_dependency_graph(self, project_id: str, max_depth: int = 3) -> list[dict]:
        """
        Return direct and transitive dependencies of a project.

        Weight decays by 0.8 per extra hop.

        Returns
        -------
        list[dict]
            Keys: from_node_id, to_node_id, from_name, to_name, from_type,
            to_type, relationship, weight, depth.  Ordered by depth then
            weight descending.
        """
        return await self.query(
            """
            WITH RECURSIVE dep_graph(from_node_id, to_node_id, from_name, to_name,
                                     from_type, to_type, relationship, weight, depth) AS (
                SELECT e.from_node_id, e.to_node_id, n1.name, n2.name, n1.type, n2.type,
                       e.relationship, e.weight, 1
                FROM graph_edges e
                JOIN graph_nodes n1 ON e.from_node_id = n1.id
                JOIN graph_nodes n2 ON e.to_node_id = n2.id
                WHERE n1.project_id = ?
                UNION ALL
                SELECT d.from_node_id, e.to_node_id, d.from_name, n.name, d.from_type, n.type,
                       e.relationship, e.weight * 0.8, d.depth + 1
                FROM dep_graph d
                JOIN graph_edges e ON d.to_node_id = e.from_node_id
                JOIN graph_nodes n ON e.to_node_id = n.id
                WHERE d.depth < ? AND e.to_node_id != d.from_node_id
            )
            SELECT * FROM dep_graph ORDER BY depth, weight DESC LIMIT 5000
            """,
            (project_id, max_depth),
        )

    async def get_node_hierarchy(self, node_id: str, max_depth: int = 10) -> dict:
        """
        Return ancestors and descendants of a node over containment edges.

        Returns
        -------
        dict
            Keys: node, ancestors (nearest first), descendants.
        """
        node = await self.get_node(node_id)
        if node is None:
            return {"node": None, "ancestors": [], "descendants": []}

        ancestors: list[GraphNode] = []
        current = node_id
        seen = {node_id}
        for _ in range(max_depth):
            parents = [
                n for n in await self.get_neighbors(current, direction="incoming")
                if n.relationship in HIERARCHY_EDGES and n.node.id not in seen
            ]
            if not parents:
                break
            parent = parents[0].node
            seen.add(parent.id)
            ancestors.append(parent)
            current = parent.id

        descendants: list[GraphNode] = []
        frontier = [node_id]
        for _ in range(max_depth):
            next_frontier: list[str] = []
            for nid in frontier:
                for nbr in await self.get_neighbors(nid, direction="outgoing"):
                    if nbr.relationship in HIERARCHY_EDGES and nbr.node.id not in seen:
                        seen.add(nbr.node.id)
                        descendants.append(nbr.node)
                        next_frontier.append(nbr.node.id)
            if not next_frontier:
                break
            frontier = next_frontier

        return {"node": node, "ancestors": ancestors, "descendants": descendants}

    # ------------------------------------------------------------------
    # Structural analytics (networkx)
    # ------------------------------------------------------------------

    async def _project_rows(self, project_id: str) -> tuple[list[dict], list[dict]]:
        nodes = await self.query(
            "SELECT id, type, name, path, language FROM graph_nodes WHERE project_id = ?",
            (project_id,),
        )
        edges = await self.query(
            "SELECT e.from_node_id, e.to_node_id, e.relationship, e.weight "
            "FROM graph_edges e JOIN graph_nodes n ON e.from_node_id = n.id "
            "WHERE n.project_id = ?",
            (project_id,),
        )
        return nodes, edges

    async def _project_graph(self, project_id: str):
        nodes, edges = await self._project_rows(project_id)
        return analysis.build_digraph(nodes, edges)

    async def find_circular_dependencies(self, project_id: str) -> list[list[str]]:
        """Return cycles over the project's ``imports`` edges as ordered node-id lists."""
        g = await self._project_graph(project_id)
        return analysis.find_cycles(g, EdgeType.IMPORTS)

    async def get_shortest_path(
        self,
        from_node_id: str,
        to_node_id: str,
        max_depth: int = 5,
    ) -> Optional[list[GraphNode]]:
        """Return the nodes on the shortest directed path, or None."""
        source = await self.get_node(from_node_id)
        if source is None:
            return None
        g = await self._project_graph(source.project_id)
        path = analysis.shortest_path(g, from_node_id, to_node_id, max_depth)
        if path is None:
            return None
        return await self.get_nodes(path)

    async def get_most_connected_nodes(self, project_id: str, limit: int = 10) -> list[dict]:
        """
        Return the nodes with the most edges.

        Returns
        -------
        list[dict]
            Keys: id, name, type, path, connection_count, outgoing_count,
            incoming_count.
        """
        g = await self._project_graph(project_id)
        return [r for r in analysis.connection_counts(g) if r["connection_count"] > 0][:limit]

    async def find_orphaned_nodes(self, project_id: str) -> list[GraphNode]:
        """Return nodes without any incoming or outgoing edge."""
        g = await self._project_graph(project_id)
        return await self.get_nodes(analysis.orphaned_nodes(g))

    async def analyze_connectivity(self, project_id: str) -> dict:
        """
        Summarise the connectivity of a project graph.

        Returns
        -------
        dict
            Keys: statistics, hubs (top 10), orphaned_nodes,
            circular_dependencies, connectivity{average_connections,
            orphaned_percentage, circular_count}.
        """
        g = await self._project_graph(project_id)
        stats = await self.get_graph_stats(project_id)
        counts = analysis.connection_counts(g)
        orphans = analysis.orphaned_nodes(g)
        cycles = analysis.find_cycles(g, EdgeType.IMPORTS)
        total = len(counts)
        avg = sum(r["connection_count"] for r in counts) / total if total else 0.0
        return {
            "statistics": stats,
            "hubs": [r for r in counts if r["connection_count"] > 0][:10],
            "orphaned_nodes": orphans,
            "circular_dependencies": cycles,
            "connectivity": {
                "average_connections": round(avg, 2),
                "orphaned_percentage": round(100.0 * len(orphans) / total, 1) if total else 0.0,
                "circular_count": len(cycles),
            },
        }

    async def get_graph_stats(self, project_id: Optional[str] = None) -> dict:
        """
        Return aggregate statistics about the graph.

        Returns
        -------
        dict
            Keys: total_nodes, total_edges, by_type, by_relationship, by_language.
        """
        where = "WHERE project_id = ?" if project_id is not None else ""
        params: tuple = (project_id,) if project_id is not None else ()
        by_type = await self.query(
            f"SELECT type, COUNT(*) AS c FROM graph_nodes {where} GROUP BY type", params
        )
        by_lang = await self.query(
            f"SELECT language, COUNT(*) AS c FROM graph_nodes {where} GROUP BY language", params
        )
        edge_where = "WHERE n.project_id = ?" if project_id is not None else ""
        by_rel = await self.query(
            "SELECT e.relationship, COUNT(*) AS c FROM graph_edges e "
            f"JOIN graph_nodes n ON e.from_node_id = n.id {edge_where} GROUP BY e.relationship",
            params,
        )
        return {
            "total_nodes": sum(r["c"] for r in by_type),
            "total_edges": sum(r["c"] for r in by_rel),
            "by_type": {r["type"]: r["c"] for r in by_type},
            "by_relationship": {r["relationship"]: r["c"] for r in by_rel},
            "by_language": {r["language"] or "unknown": r["c"] for r in by_lang},
        }

    async def export_graph(self, project_id: str, fmt: str = "json") -> str:
        """
        Serialise a project graph.

        Parameters
        ----------
        project_id:
            Project to export.
        fmt:
            ``"json"``, ``"cypher"`` or ``"gexf"``.
        """
        if fmt not in _EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")
        nodes, edges = await self._project_rows(project_id)
        if fmt == "json":
            return analysis.to_json(nodes, edges)
        if fmt == "cypher":
            return analysis.to_cypher(nodes, edges)
        return analysis.to_gexf(analysis.build_digraph(nodes, edges))

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def replace_chunks(self, chunks: Sequence[CodeChunk]) -> list[str]:
        """
        Write chunks, replacing each node's previous chunk set.

        A chunk whose content changed loses its embeddings so they get
        regenerated; an unchanged chunk keeps them.

        Returns
        -------
        list[str]
            Ids of chunks that are new or whose content changed.
        """
        if not chunks:
            return []
        changed: list[str] = []
        now = utc_now()
        by_node: dict[str, list[CodeChunk]] = {}
        for chunk in chunks:
            by_node.setdefault(chunk.node_id, []).append(chunk)

        async with self._transaction() as conn:
            for node_id, node_chunks in by_node.items():
                existing = {
                    r["id"]: r["content"]
                    for r in await conn.execute_fetchall(
                        "SELECT id, content FROM code_chunks WHERE node_id = ?", (node_id,)
                    )
                }
                keep_ids = {c.id for c in node_chunks}
                stale = [cid for cid in existing if cid not in keep_ids]
                if stale:
                    await conn.execute(
                        f"DELETE FROM code_chunks WHERE id IN ({_placeholders(len(stale))})",
                        stale,
                    )
                for chunk in node_chunks:
                    if existing.get(chunk.id) == chunk.content:
                        continue
                    if chunk.id in existing:
                        await conn.execute("DELETE FROM embeddings WHERE chunk_id = ?", (chunk.id,))
                    await conn.execute(
                        "INSERT INTO code_chunks (id, node_id, content, chunk_type, language, "
                        "created_at, updated_at) VALUES (?,?,?,?,?,?,?) "
                        "ON CONFLICT(id) DO UPDATE SET content=excluded.content, "
                        "chunk_type=excluded.chunk_type, language=excluded.language, "
                        "updated_at=excluded.updated_at",
                        (chunk.id, chunk.node_id, chunk.content, chunk.chunk_type,
                         chunk.language, now, now),
                    )
                    changed.append(chunk.id)
        return changed

    async def get_chunks_for_node(self, node_id: str) -> list[CodeChunk]:
        rows = await self.query(
            "SELECT id, node_id, content, chunk_type, language FROM code_chunks "
            "WHERE node_id = ? ORDER BY chunk_type, id",
            (node_id,),
        )
        return [
            CodeChunk(id=r["id"], node_id=r["node_id"], content=r["content"],
                      chunk_type=r["chunk_type"], language=r["language"])
            for r in rows
        ]

    async def list_chunks(
        self,
        project_id: Optional[str] = None,
        chunk_ids: Optional[Sequence[str]] = None,
        missing_model: Optional[str] = None,
    ) -> list[dict]:
        """
        Return chunks joined with their owning node.

        Parameters
        ----------
        project_id:
            Restrict to one project.
        chunk_ids:
            Restrict to these chunks.
        missing_model:
            Only chunks that have no embedding for this model.

        Returns
        -------
        list[dict]
            Keys: chunk_id, content, chunk_type, language, node_id,
            node_name, node_type, path, project_id, updated_at.
        """
        clauses = ["1 = 1"]
        params: list[Any] = []
        if project_id is not None:
            clauses.append("n.project_id = ?")
            params.append(project_id)
        if chunk_ids is not None:
            if not chunk_ids:
                return []
            clauses.append(f"c.id IN ({_placeholders(len(chunk_ids))})")
            params.extend(chunk_ids)
        if missing_model is not None:
            clauses.append(
                "NOT EXISTS (SELECT 1 FROM embeddings m WHERE m.chunk_id = c.id AND m.model = ?)"
            )
            params.append(missing_model)
        return await self.query(
            "SELECT c.id AS chunk_id, c.content, c.chunk_type, c.language, "
            "n.id AS node_id, n.name AS node_name, n.type AS node_type, n.path, "
            "n.project_id, n.updated_at "
            "FROM code_chunks c JOIN graph_nodes n ON c.node_id = n.id "
            f"WHERE {' AND '.join(clauses)} ORDER BY n.path, n.name, c.id",
            params,
        )

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def upsert_embeddings(
        self,
        rows: Sequence[tuple[str, Sequence[float], str, str]],
    ) -> int:
        """
        Write embeddings, one active embedding per (chunk, model).

        Parameters
        ----------
        rows:
            ``(chunk_id, vector, model, provider)`` tuples.
        """
        if not rows:
            return 0
        now = utc_now()
        async with self._transaction() as conn:
            await conn.executemany(
                "INSERT INTO embeddings (chunk_id, vector, dimensions, model, provider, created_at) "
                "SELECT ?1, ?2, ?3, ?4, ?5, ?6 WHERE EXISTS (SELECT 1 FROM code_chunks WHERE id = ?1) "
                "ON CONFLICT(chunk_id, model) DO UPDATE SET vector=excluded.vector, "
                "dimensions=excluded.dimensions, provider=excluded.provider, "
                "created_at=excluded.created_at",
                [
                    (chunk_id, vec_to_bytes(vector), len(vector), model, provider, now)
                    for chunk_id, vector, model, provider in rows
                ],
            )
        return len(rows)

    async def fetch_embeddings(
        self,
        project_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> list[dict]:
        """
        Return stored embeddings with chunk and owning-node metadata.

        Each dict carries ``vector`` as a numpy array.
        """
        clauses = ["1 = 1"]
        params: list[Any] = []
        if project_id is not None:
            clauses.append("n.project_id = ?")
            params.append(project_id)
        if model is not None:
            clauses.append("m.model = ?")
            params.append(model)
        rows = await self.query(
            "SELECT m.chunk_id, m.vector, m.dimensions, m.model, m.provider, "
            "c.content, c.chunk_type, c.language, n.id AS node_id, n.name AS node_name, "
            "n.type AS node_type, n.path, n.project_id "
            "FROM embeddings m JOIN code_chunks c ON m.chunk_id = c.id "
            "JOIN graph_nodes n ON c.node_id = n.id "
            f"WHERE {' AND '.join(clauses)}",
            params,
        )
        for r in rows:
            r["vector"] = bytes_to_vec(r["vector"])
        return rows

    async def delete_embeddings(
        self,
        project_id: Optional[str] = None,
        chunk_id: Optional[str] = None,
    ) -> int:
        if chunk_id is not None:
            return await self._execute("DELETE FROM embeddings WHERE chunk_id = ?", (chunk_id,))
        if project_id is not None:
            return await self._execute(
                "DELETE FROM embeddings WHERE chunk_id IN (SELECT c.id FROM code_chunks c "
                "JOIN graph_nodes n ON c.node_id = n.id WHERE n.project_id = ?)",
                (project_id,),
            )
        return await self._execute("DELETE FROM embeddings")

    async def embedding_stats(self, project_id: Optional[str] = None) -> dict:
        """
        Return embedding counts.

        Returns
        -------
        dict
            Keys: total_embeddings, total_chunks, by_model, by_provider, dimensions.
        """
        join = ("JOIN code_chunks c ON m.chunk_id = c.id JOIN graph_nodes n ON c.node_id = n.id "
                "WHERE n.project_id = ?") if project_id is not None else ""
        params: tuple = (project_id,) if project_id is not None else ()
        rows = await self.query(
            f"SELECT m.model, m.provider, m.dimensions, COUNT(*) AS c FROM embeddings m {join} "
            "GROUP BY m.model, m.provider, m.dimensions",
            params,
        )
        chunk_where = ("JOIN graph_nodes n ON c.node_id = n.id WHERE n.project_id = ?"
                       if project_id is not None else "")
        chunk_rows = await self.query(
            f"SELECT COUNT(*) AS c FROM code_chunks c {chunk_where}", params
        )
        by_model: dict[str, int] = {}
        by_provider: dict[str, int] = {}
        dims: set[int] = set()
        for r in rows:
            by_model[r["model"]] = by_model.get(r["model"], 0) + r["c"]
            by_provider[r["provider"]] = by_provider.get(r["provider"], 0) + r["c"]
            dims.add(r["dimensions"])
        return {
            "total_embeddings": sum(r["c"] for r in rows),
            "total_chunks": chunk_rows[0]["c"] if chunk_rows else 0,
            "by_model": by_model,
            "by_provider": by_provider,
            "dimensions": sorted(dims),
        }

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def add_diagnostics(self, diagnostics: Sequence[Diagnostic]) -> int:
        async with self._transaction() as conn:
            return await self._insert_diagnostics(conn, diagnostics)

    async def get_diagnostics(
        self,
        node_ids: Optional[Sequence[str]] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict]:
        """
        Return diagnostics ordered by severity (error, warning, info) then line.

        Returns
        -------
        list[dict]
            Keys: node_id, severity, message, line, column, source, rule,
            fix_suggestion, path, node_name.
        """
        clauses = ["1 = 1"]
        params: list[Any] = []
        if node_ids is not None:
            if not node_ids:
                return []
            clauses.append(f"d.node_id IN ({_placeholders(len(node_ids))})")
            params.extend(node_ids)
        if project_id is not None:
            clauses.append("n.project_id = ?")
            params.append(project_id)
        params.append(limit)
        return await self.query(
            "SELECT d.node_id, d.severity, d.message, d.line, d.column_number AS column, "
            "d.source, d.rule, d.fix_suggestion, n.path, n.name AS node_name "
            "FROM diagnostics d JOIN graph_nodes n ON d.node_id = n.id "
            f"WHERE {' AND '.join(clauses)} "
            "ORDER BY CASE d.severity WHEN 'error' THEN 0 WHEN 'warning' THEN 1 ELSE 2 END, "
            "n.path, d.line LIMIT ?",
            params,
        )

    async def nodes_with_errors(self, node_ids: Sequence[str]) -> set[str]:
        """Return the subset of *node_ids* that carry at least one error diagnostic."""
        if not node_ids:
            return set()
        rows = await self.query(
            f"SELECT DISTINCT node_id FROM diagnostics WHERE severity = 'error' "
            f"AND node_id IN ({_placeholders(len(node_ids))})",
            list(node_ids),
        )
        return {r["node_id"] for r in rows}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> ComponentHealth:
        if self._conn is None:
            return ComponentHealth("graph_store", "error", "Graph store is not open")
        try:
            rows = await self.query("SELECT COUNT(*) AS c FROM graph_nodes")
        except StoreError as exc:
            return ComponentHealth("graph_store", "error", str(exc))
        return ComponentHealth(
            "graph_store", "ok", "Graph store is reachable",
            {"db_path": self._db_path, "total_nodes": rows[0]["c"]},
        )

    def get_stats(self) -> dict:
        return {"db_path": self._db_path, "open": self.is_open}
