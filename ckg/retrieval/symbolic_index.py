"""
Symbolic index: exact symbol lookups over the graph store.

Definitions, references, importers/exporters, dead-export detection,
missing-import detection and impact analysis.  Every read path is cached
in a :class:`~ckg.cache.TTLCache` under ``(op, project, *args)`` keys so one
project's entries can be evicted without touching the others.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from typing import TYPE_CHECKING, Any, Optional, Sequence

from ..cache import TTLCache
from ..errors import StoreError
from ..health import ComponentHealth
from ..models import EdgeType, GraphNode, NodeType, ReferenceType, utc_now
from ..store.graph_store import node_from_row

if TYPE_CHECKING:
    from ..models import Neighbor
    from ..store.graph_store import GraphStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CACHE_TTL_SECONDS = 300
CACHE_MAX_SIZE = 5000

# Node types considered by dead-export detection and fuzzy search
EXPORTABLE_TYPES: tuple[str, ...] = (
    NodeType.FUNCTION,
    NodeType.CLASS,
    NodeType.VARIABLE,
    NodeType.TYPE,
    NodeType.INTERFACE,
)
SEARCHABLE_TYPES: tuple[str, ...] = EXPORTABLE_TYPES + (NodeType.METHOD,)

# Reference kinds that count as a "use" of a symbol
_USE_REFERENCES: tuple[str, ...] = (
    ReferenceType.USAGE,
    ReferenceType.CALL,
    ReferenceType.REFERENCE,
)

_TYPE_COMPLEXITY = {
    NodeType.CLASS: 2.0,
    NodeType.INTERFACE: 1.5,
    NodeType.FUNCTION: 1.0,
    NodeType.METHOD: 1.0,
}

HIGH_USAGE_THRESHOLD = 50
WIDE_SPREAD_THRESHOLD = 20

_ALL_PROJECTS = "*"


def _cache_key(op: str, project_id: Optional[str], *args: Any) -> tuple:
    return (op, project_id or _ALL_PROJECTS, *args)


_WORD_RE = re.compile(r"[a-z0-9]+")


def trigrams(text: str) -> set[str]:
    """
    Trigram set of *text* in the pg_trgm manner.

    Each lower-cased alphanumeric word is padded with two spaces in front
    and one behind before being cut into trigrams.
    """
    grams: set[str] = set()
    for word in _WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """Shared trigrams over all trigrams (0 when either side has none)."""
    ta, tb = trigrams(a), trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def calculate_symbol_complexity(definition: Optional[GraphNode], reference_count: int) -> float:
    """
    Score how costly a symbol is to change (0-10).

    ``1 + min(log2(1 + refs), 5) + type weight + 0.2 * methods``, rounded
    to one decimal.
    """
    if definition is None:
        return 0.0
    complexity = 1.0 + min(math.log2(1 + reference_count), 5.0)
    complexity += _TYPE_COMPLEXITY.get(definition.type, 0.5)
    methods = definition.metadata.get("methods") or []
    method_count = len(methods) if isinstance(methods, (list, tuple)) else int(methods or 0)
    complexity += method_count * 0.2
    return min(round(complexity, 1), 10.0)


def generate_symbol_recommendations(
    definition: Optional[GraphNode],
    reference_count: int,
    file_spread: int,
) -> list[dict]:
    """Return ``{type, message, action}`` recommendations for a symbol."""
    if definition is None:
        return [{
            "type": "error",
            "message": "Symbol definition not found",
            "action": "Check if symbol is properly exported or imported",
        }]
    recs: list[dict] = []
    if reference_count > HIGH_USAGE_THRESHOLD:
        recs.append({
            "type": "performance",
            "message": "High usage symbol, consider optimization",
            "action": "Review performance and consider caching if appropriate",
        })
    if file_spread > WIDE_SPREAD_THRESHOLD:
        recs.append({
            "type": "architecture",
            "message": "Symbol used across many files",
            "action": "Consider if this indicates tight coupling or if it should be refactored",
        })
    if reference_count == 0:
        recs.append({
            "type": "cleanup",
            "message": "Unused symbol detected",
            "action": "Consider removing if no longer needed",
        })
    return recs


class SymbolicIndex:
    """
    Cached symbol lookups.

    Parameters
    ----------
    store:
        Open :class:`~ckg.store.graph_store.GraphStore`.
    ttl_seconds:
        Cache entry lifetime.
    max_size:
        Cache capacity.
    """

    def __init__(
        self,
        store: "GraphStore",
        ttl_seconds: float = CACHE_TTL_SECONDS,
        max_size: int = CACHE_MAX_SIZE,
    ) -> None:
        self._store = store
        self._cache: TTLCache[Any] = TTLCache(ttl_seconds=ttl_seconds, max_size=max_size)
        self._total_symbols = 0
        self._last_indexed: Optional[str] = None

    # ------------------------------------------------------------------
    # Definitions / references
    # ------------------------------------------------------------------

    async def find_definition(
        self,
        symbol_name: str,
        file_path: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> list[GraphNode]:
        """
        Return every definition of *symbol_name*.

        Definitions located in *file_path* come first; the relative order
        of the rest is unchanged.
        """
        key = _cache_key("def", project_id, symbol_name, file_path)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        definitions = await self._store.find_symbol_definitions(symbol_name, project_id)
        if file_path:
            definitions = (
                [d for d in definitions if d.path == file_path]
                + [d for d in definitions if d.path != file_path]
            )
        self._cache.set(key, definitions)
        return list(definitions)

    async def find_references(
        self,
        symbol_name: str,
        project_id: Optional[str] = None,
        include_definition: bool = False,
    ) -> list[dict]:
        """
        Return reference sites of *symbol_name*, newest first.

        With *include_definition*, each definition is prepended as an entry
        whose ``reference_type`` is ``"definition"``.
        """
        key = _cache_key("refs", project_id, symbol_name, include_definition)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        refs = await self._store.find_symbol_references(symbol_name, project_id)
        if include_definition:
            defs = await self.find_definition(symbol_name, None, project_id)
            refs = [
                {
                    "reference_id": None,
                    "symbol_node_id": d.id,
                    "reference_node_id": d.id,
                    "reference_type": "definition",
                    "line": d.metadata.get("line_start", 0),
                    "column": 0,
                    "context": d.metadata.get("signature", ""),
                    "file_path": d.path,
                    "reference_name": d.name,
                    "reference_type_node": d.type,
                }
                for d in defs
            ] + refs
        self._cache.set(key, refs)
        return list(refs)

    # ------------------------------------------------------------------
    # Module relationships
    # ------------------------------------------------------------------

    async def find_importers(self, module_path: str, project_id: Optional[str] = None) -> list[dict]:
        """Return nodes that import *module_path* (or a symbol in it)."""
        key = _cache_key("importers", project_id, module_path)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        params: list[Any] = [EdgeType.IMPORTS, module_path]
        project_clause = ""
        if project_id is not None:
            project_clause = " AND f.project_id = ?"
            params.append(project_id)
        rows = await self._store.query(
            "SELECT f.id AS importer_id, f.name AS importer_name, f.path AS importer_path, "
            "f.type AS importer_type, t.name AS imported_name, t.path AS imported_path, "
            "e.metadata AS import_metadata "
            "FROM graph_edges e "
            "JOIN graph_nodes f ON e.from_node_id = f.id "
            "JOIN graph_nodes t ON e.to_node_id = t.id "
            f"WHERE e.relationship = ? AND t.path = ?{project_clause} "
            "ORDER BY f.path, f.name",
            params,
        )
        self._cache.set(key, rows)
        return list(rows)

    async def find_exports(self, module_path: str, project_id: Optional[str] = None) -> list[GraphNode]:
        """Return the symbols exported by *module_path*."""
        key = _cache_key("exports", project_id, module_path)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        params: list[Any] = [EdgeType.EXPORTS, module_path]
        project_clause = ""
        if project_id is not None:
            project_clause = " AND n.project_id = ?"
            params.append(project_id)
        rows = await self._store.query(
            "SELECT DISTINCT n.* FROM graph_nodes n "
            "JOIN graph_edges e ON e.to_node_id = n.id "
            f"WHERE e.relationship = ? AND n.path = ?{project_clause} "
            "ORDER BY n.name",
            params,
        )
        nodes = [node_from_row(r) for r in rows]
        self._cache.set(key, nodes)
        return list(nodes)

    # ------------------------------------------------------------------
    # Code-health queries
    # ------------------------------------------------------------------

    async def find_unused_exports(self, project_id: str) -> list[GraphNode]:
        """Return exported symbols that nothing uses, calls or references."""
        key = _cache_key("unused", project_id)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        types_ph = ",".join("?" for _ in EXPORTABLE_TYPES)
        uses_ph = ",".join("?" for _ in _USE_REFERENCES)
        rows = await self._store.query(
            "SELECT n.* FROM graph_nodes n "
            f"WHERE n.project_id = ? AND n.type IN ({types_ph}) "
            "AND NOT EXISTS (SELECT 1 FROM symbol_references r "
            f"    WHERE r.symbol_node_id = n.id AND r.reference_type IN ({uses_ph})) "
            "AND EXISTS (SELECT 1 FROM graph_edges e "
            "    WHERE e.to_node_id = n.id AND e.relationship = ?) "
            "ORDER BY n.path, n.name",
            [project_id, *EXPORTABLE_TYPES, *_USE_REFERENCES, EdgeType.EXPORTS],
        )
        nodes = [node_from_row(r) for r in rows]
        self._cache.set(key, nodes)
        return list(nodes)

    async def find_missing_imports(self, file_path: str, project_id: Optional[str] = None) -> list[dict]:
        """
        Return symbols used in *file_path*, defined elsewhere, but not imported.

        A symbol counts as imported when an ``imports`` edge leads from a
        node of the file to the symbol itself or to its File node.

        Returns
        -------
        list[dict]
            Keys: symbol_node_id, symbol_name, symbol_type, symbol_path.
        """
        key = _cache_key("missing", project_id, file_path)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        uses_ph = ",".join("?" for _ in _USE_REFERENCES)
        params: list[Any] = [file_path, *_USE_REFERENCES, file_path]
        project_clause = ""
        if project_id is not None:
            project_clause = " AND site.project_id = ?"
            params.append(project_id)
        params.extend([file_path, EdgeType.IMPORTS, NodeType.FILE])
        rows = await self._store.query(
            "SELECT DISTINCT s.id AS symbol_node_id, s.name AS symbol_name, "
            "s.type AS symbol_type, s.path AS symbol_path "
            "FROM symbol_references r "
            "JOIN graph_nodes site ON r.reference_node_id = site.id "
            "JOIN graph_nodes s ON r.symbol_node_id = s.id "
            f"WHERE site.path = ? AND r.reference_type IN ({uses_ph}) AND s.path != ?"
            f"{project_clause} "
            "AND NOT EXISTS ("
            "    SELECT 1 FROM graph_edges e "
            "    JOIN graph_nodes f ON e.from_node_id = f.id "
            "    JOIN graph_nodes t ON e.to_node_id = t.id "
            "    WHERE f.path = ? AND f.project_id = site.project_id AND e.relationship = ? "
            "    AND (t.id = s.id OR (t.path = s.path AND t.type = ? "
            "         AND t.project_id = s.project_id))"
            ") "
            "ORDER BY s.path, s.name",
            params,
        )
        self._cache.set(key, rows)
        return list(rows)

    async def find_type_info(
        self,
        symbol_name: str,
        file_path: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> list[dict]:
        """
        Return type-like definitions of *symbol_name* with their supertypes.

        Returns
        -------
        list[dict]
            Keys: node, extends (names), implements (names).
        """
        key = _cache_key("type", project_id, symbol_name, file_path)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        defs = [
            d for d in await self.find_definition(symbol_name, file_path, project_id)
            if d.type in (NodeType.CLASS, NodeType.INTERFACE, NodeType.TYPE)
        ]
        info = []
        for d in defs:
            outgoing = await self._store.get_neighbors(d.id, direction="outgoing")
            info.append({
                "node": d,
                "extends": [n.node.name for n in outgoing if n.relationship == EdgeType.EXTENDS],
                "implements": [n.node.name for n in outgoing if n.relationship == EdgeType.IMPLEMENTS],
            })
        self._cache.set(key, info)
        return list(info)

    # ------------------------------------------------------------------
    # Usage / impact
    # ------------------------------------------------------------------

    async def find_usage_patterns(self, symbol_name: str, project_id: Optional[str] = None) -> dict:
        """
        Summarise how *symbol_name* is used.

        Returns
        -------
        dict
            Keys: total_usages, file_usage {path: count}, usage_types
            {reference_type: count}, hotspots (top 10 ``{file, count}``).
        """
        refs = await self.find_references(symbol_name, project_id, include_definition=False)
        file_usage = Counter(r["file_path"] for r in refs)
        usage_types = Counter(r["reference_type"] for r in refs)
        return {
            "total_usages": len(refs),
            "file_usage": dict(file_usage),
            "usage_types": dict(usage_types),
            "hotspots": [{"file": f, "count": c} for f, c in file_usage.most_common(10)],
        }

    async def analyze_symbol_impact(self, symbol_name: str, project_id: Optional[str] = None) -> dict:
        """
        Estimate the blast radius of changing *symbol_name*.

        Returns
        -------
        dict
            Keys: symbol, definitions, impact {reference_count, file_spread,
            affected_files, usage_types, hotspots, complexity},
            recommendations.
        """
        definitions = await self.find_definition(symbol_name, None, project_id)
        patterns = await self.find_usage_patterns(symbol_name, project_id)
        definition = definitions[0] if definitions else None
        ref_count = patterns["total_usages"]
        spread = len(patterns["file_usage"])
        return {
            "symbol": definition,
            "definitions": definitions,
            "impact": {
                "reference_count": ref_count,
                "file_spread": spread,
                "affected_files": sorted(patterns["file_usage"]),
                "usage_types": patterns["usage_types"],
                "hotspots": patterns["hotspots"],
                "complexity": calculate_symbol_complexity(definition, ref_count),
            },
            "recommendations": generate_symbol_recommendations(definition, ref_count, spread),
        }

    # ------------------------------------------------------------------
    # Search / neighbourhood
    # ------------------------------------------------------------------

    async def search_symbols(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 50,
        types: Sequence[str] = SEARCHABLE_TYPES,
    ) -> list[dict]:
        """
        Fuzzy symbol search.

        A node matches when its name similarity exceeds 0.3, its path
        similarity exceeds 0.2, or its name contains *query*.

        Returns
        -------
        list[dict]
            Keys: node, name_similarity, path_similarity, similarity;
            ordered by name similarity descending.
        """
        if not query.strip():
            return []
        key = _cache_key("search", project_id, query.lower(), limit, ",".join(types))
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        types_ph = ",".join("?" for _ in types)
        params: list[Any] = list(types)
        project_clause = ""
        if project_id is not None:
            project_clause = " AND project_id = ?"
            params.append(project_id)
        rows = await self._store.query(
            f"SELECT * FROM graph_nodes WHERE type IN ({types_ph}){project_clause}", params
        )
        q = query.lower()
        hits = []
        for row in rows:
            name_sim = trigram_similarity(row["name"], query)
            path_sim = trigram_similarity(row["path"], query)
            if name_sim > 0.3 or path_sim > 0.2 or q in row["name"].lower():
                hits.append({
                    "node": node_from_row(row),
                    "name_similarity": round(name_sim, 4),
                    "path_similarity": round(path_sim, 4),
                    "similarity": round(max(name_sim, path_sim), 4),
                })
        hits.sort(key=lambda h: (-h["name_similarity"], h["node"].name, h["node"].path))
        hits = hits[:limit]
        self._cache.set(key, hits)
        return list(hits)

    async def get_symbol_neighborhood(self, node_id: str, depth: int = 1) -> list["Neighbor"]:
        """Return nodes within *depth* edges of *node_id*, strongest edges first."""
        node = await self._store.get_node(node_id)
        if node is None:
            return []
        key = _cache_key("nbr", node.project_id, node_id, depth)
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        seen = {node_id}
        result: list["Neighbor"] = []
        frontier = [node_id]
        for _ in range(max(1, depth)):
            next_frontier = []
            for nid in frontier:
                for nbr in await self._store.get_neighbors(nid):
                    if nbr.node.id in seen:
                        continue
                    seen.add(nbr.node.id)
                    result.append(nbr)
                    next_frontier.append(nbr.node.id)
            frontier = next_frontier
        result.sort(key=lambda n: n.weight, reverse=True)
        self._cache.set(key, result)
        return list(result)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def invalidate_project(self, project_id: str) -> int:
        """Evict every cache entry of *project_id* (and cross-project entries)."""
        evicted = self._cache.invalidate(
            lambda k: k[1] in (project_id, _ALL_PROJECTS)
        )
        logger.debug("[symbolic] Invalidated %d cache entries for %s", evicted, project_id)
        return evicted

    async def rebuild_index(self, project_id: str) -> dict:
        """Invalidate the project's cache entries and refresh index statistics."""
        logger.info("[symbolic] Rebuilding symbolic index for %s", project_id)
        self.invalidate_project(project_id)
        stats = await self._store.get_graph_stats(project_id)
        self._total_symbols = stats["total_nodes"]
        self._last_indexed = utc_now()
        logger.info("[symbolic] Symbolic index rebuilt for %s: %d nodes",
                    project_id, stats["total_nodes"])
        return stats

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("[symbolic] Symbolic index cache cleared")

    def get_stats(self) -> dict:
        cache = self._cache.stats()
        return {
            "total_symbols": self._total_symbols,
            "last_indexed": self._last_indexed,
            "cache_size": cache["size"],
            "cache_hits": cache["hits"],
            "cache_misses": cache["misses"],
            "cache_hit_rate": cache["hit_rate"],
        }

    async def health(self) -> ComponentHealth:
        try:
            await self._store.find_symbol_definitions("__ckg_health_check__")
        except StoreError as exc:
            return ComponentHealth("symbolic_index", "error",
                                   f"Symbolic index health check failed: {exc}")
        return ComponentHealth("symbolic_index", "ok", "Symbolic index is healthy", self.get_stats())
