"""
ckg: Code Knowledge Graph engine.

Indexes a codebase into a graph of symbols and relationships and answers
natural-language queries with a ranked, token-bounded context.

Public API for library usage::

    from ckg import CKGService, Config

    service = await CKGService.from_config(Config.load())
    await service.build_knowledge_graph("my-project", "/path/to/repo")
    result = await service.query_with_context("How does UserService log in?",
                                              project_id="my-project")
"""

from .config import Config
from .service import CKGService

__version__ = "1.0.0"

__all__ = ["CKGService", "Config"]
