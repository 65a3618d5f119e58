"""
Small graph builders shared by the tests.
"""

from __future__ import annotations

from ckg.models import GraphNode, NodeType


def file_node(project_id: str, path: str, language: str = "python", **metadata) -> GraphNode:
    return GraphNode(
        project_id=project_id, type=NodeType.FILE, name=path.rsplit("/", 1)[-1],
        path=path, language=language, metadata=metadata,
    )


def symbol_node(
    project_id: str,
    path: str,
    name: str,
    node_type: str = NodeType.FUNCTION,
    line: int = 1,
    **metadata,
) -> GraphNode:
    return GraphNode(
        project_id=project_id, type=node_type, name=name, path=path, language="python",
        metadata={"line_start": line, "line_end": line + 2,
                  "signature": f"def {name}():", **metadata},
    )
