"""
Shared fixtures: an in-memory graph store and a small two-file graph.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from ckg.models import ExtractionResult, GraphEdge, NodeType
from ckg.store.graph_store import GraphStore
from factories import file_node, symbol_node


@pytest_asyncio.fixture
async def store():
    """An open in-memory :class:`GraphStore`, closed after the test."""
    s = await GraphStore(":memory:").open()
    yield s
    await s.close()


@pytest.fixture()
def two_file_graph() -> ExtractionResult:
    """
    ``a.py`` defines ``foo`` which calls ``bar``; ``b.py`` defines ``bar``
    and imports ``a.py``.
    """
    fa = file_node("p1", "a.py")
    fb = file_node("p1", "b.py")
    foo = symbol_node("p1", "a.py", "foo", line=1)
    bar = symbol_node("p1", "b.py", "bar", line=3)
    return ExtractionResult(
        nodes=[fa, fb, foo, bar],
        edges=[
            GraphEdge(from_node_id=fa.id, to_node_id=foo.id, relationship="contains"),
            GraphEdge(from_node_id=fb.id, to_node_id=bar.id, relationship="contains"),
            GraphEdge(from_node_id=foo.id, relationship="calls", target_name="bar"),
            GraphEdge(from_node_id=fb.id, relationship="imports",
                      target_type=NodeType.FILE, target_paths=("a.py",)),
        ],
    )
