"""
Indexing layer: extraction, chunking, full and incremental indexing.

Phase 1: full index of every supported file in one atomic batch.
Phase 2: steady-state watching; file changes are applied one at a time
in arrival order.
"""

from .chunker import Chunker, SymbolChunker
from .extractor import Extractor, TreeSitterExtractor, detect_language
from .indexer import IncrementalIndexer, IndexState, walk_source_files
from .watcher import ProjectWatcher

__all__ = [
    "Chunker",
    "Extractor",
    "IncrementalIndexer",
    "IndexState",
    "ProjectWatcher",
    "SymbolChunker",
    "TreeSitterExtractor",
    "detect_language",
    "walk_source_files",
]
