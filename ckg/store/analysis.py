"""
Structural analytics over a project's subgraph.

The store loads a project's nodes and edges into a ``networkx.DiGraph``
and the functions here compute cycles, paths, degree rankings and export
formats from it.  Everything in this module is pure and synchronous.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable, Optional

import networkx as nx

from ..models import EdgeType

logger = logging.getLogger(__name__)

# Upper bound on enumerated cycles; dense import graphs can have
# exponentially many simple cycles.
MAX_CYCLES = 100


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------

def build_digraph(nodes: Iterable[dict], edges: Iterable[dict]) -> nx.MultiDiGraph:
    """
    Build a directed multigraph from store rows.

    Parameters
    ----------
    nodes:
        Dicts with at least ``id``, ``type``, ``name``, ``path``.
    edges:
        Dicts with ``from_node_id``, ``to_node_id``, ``relationship``, ``weight``.
    """
    g = nx.MultiDiGraph()
    for n in nodes:
        g.add_node(
            n["id"],
            type=n.get("type", ""),
            name=n.get("name", ""),
            path=n.get("path", ""),
            language=n.get("language", ""),
        )
    for e in edges:
        src, dst = e["from_node_id"], e["to_node_id"]
        if not g.has_node(src) or not g.has_node(dst):
            continue
        g.add_edge(
            src, dst,
            key=e["relationship"],
            relationship=e["relationship"],
            weight=float(e.get("weight", 1.0)),
        )
    return g


def relationship_subgraph(g: nx.MultiDiGraph, relationship: str) -> nx.DiGraph:
    """Return a simple DiGraph containing only edges of *relationship*."""
    sub = nx.DiGraph()
    sub.add_nodes_from(g.nodes(data=True))
    for src, dst, data in g.edges(data=True):
        if data.get("relationship") == relationship:
            sub.add_edge(src, dst, weight=data.get("weight", 1.0))
    return sub


# ---------------------------------------------------------------------------
# Cycles / paths
# ---------------------------------------------------------------------------

def _canonical_cycle(cycle: list[str]) -> list[str]:
    """Rotate *cycle* so it starts at its smallest node id."""
    pivot = cycle.index(min(cycle))
    return cycle[pivot:] + cycle[:pivot]


def find_cycles(g: nx.MultiDiGraph, relationship: str = EdgeType.IMPORTS) -> list[list[str]]:
    """
    Return the cycles in the *relationship* subgraph as ordered node-id lists.

    Each cycle is rotated to start at its smallest id and the list is
    sorted, so results are deterministic.  At most :data:`MAX_CYCLES`
    cycles are returned.
    """
    sub = relationship_subgraph(g, relationship)
    cycles: list[list[str]] = []
    for cycle in nx.simple_cycles(sub):
        cycles.append(_canonical_cycle(list(cycle)))
        if len(cycles) >= MAX_CYCLES:
            logger.debug("Cycle enumeration capped at %d", MAX_CYCLES)
            break
    cycles.sort(key=lambda c: (len(c), c))
    return cycles


def shortest_path(
    g: nx.MultiDiGraph,
    source: str,
    target: str,
    max_depth: int = 5,
) -> Optional[list[str]]:
    """
    Return the shortest directed path from *source* to *target*, or None.

    Paths longer than *max_depth* edges are treated as not found.
    """
    if not g.has_node(source) or not g.has_node(target):
        return None
    try:
        path = nx.shortest_path(g, source, target)
    except nx.NetworkXNoPath:
        return None
    if len(path) - 1 > max_depth:
        return None
    return path


# ---------------------------------------------------------------------------
# Degree analytics
# ---------------------------------------------------------------------------

def connection_counts(g: nx.MultiDiGraph) -> list[dict]:
    """
    Return per-node connection counts sorted by total connections, descending.

    Returns
    -------
    list[dict]
        Keys: id, name, type, path, connection_count, outgoing_count,
        incoming_count.
    """
    rows = []
    for nid, attrs in g.nodes(data=True):
        out_deg = g.out_degree(nid)
        in_deg = g.in_degree(nid)
        rows.append({
            "id": nid,
            "name": attrs.get("name", ""),
            "type": attrs.get("type", ""),
            "path": attrs.get("path", ""),
            "connection_count": out_deg + in_deg,
            "outgoing_count": out_deg,
            "incoming_count": in_deg,
        })
    rows.sort(key=lambda r: (-r["connection_count"], r["name"]))
    return rows


def orphaned_nodes(g: nx.MultiDiGraph) -> list[str]:
    """Return ids of nodes with no incoming or outgoing edges."""
    return sorted(nid for nid in g.nodes if g.degree(nid) == 0)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def to_json(nodes: list[dict], edges: list[dict]) -> str:
    return json.dumps({"nodes": nodes, "edges": edges}, indent=2, default=str)


def _cypher_str(value: str) -> str:
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def to_cypher(nodes: list[dict], edges: list[dict]) -> str:
    """Render nodes and edges as Cypher CREATE / MATCH statements."""
    lines: list[str] = []
    for n in nodes:
        label = "".join(ch for ch in n.get("type", "Node") if ch.isalnum()) or "Node"
        lines.append(
            f"CREATE (:{label} {{id: {_cypher_str(n['id'])}, "
            f"name: {_cypher_str(n.get('name', ''))}, "
            f"path: {_cypher_str(n.get('path', ''))}}});"
        )
    for e in edges:
        rel = e["relationship"].upper()
        lines.append(
            f"MATCH (a {{id: {_cypher_str(e['from_node_id'])}}}), "
            f"(b {{id: {_cypher_str(e['to_node_id'])}}}) "
            f"CREATE (a)-[:{rel} {{weight: {float(e.get('weight', 1.0))}}}]->(b);"
        )
    return "\n".join(lines)


def to_gexf(g: nx.MultiDiGraph) -> str:
    """Render the graph as a GEXF document."""
    simple = nx.DiGraph()
    for nid, attrs in g.nodes(data=True):
        simple.add_node(nid, label=attrs.get("name", ""), type=attrs.get("type", ""),
                        path=attrs.get("path", ""))
    for src, dst, data in g.edges(data=True):
        simple.add_edge(src, dst, relationship=data.get("relationship", ""),
                        weight=float(data.get("weight", 1.0)))
    return "\n".join(nx.generate_gexf(simple))
