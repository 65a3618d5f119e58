"""
SQLite schema for the Code Knowledge Graph.

Every table that hangs off a node (edges, chunks, diagnostics, symbol
references) and every embedding that hangs off a chunk is declared with
``ON DELETE CASCADE`` so deleting a node never leaves orphans behind.
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS graph_nodes (
    id           TEXT PRIMARY KEY,
    project_id   TEXT NOT NULL,
    type         TEXT NOT NULL,
    name         TEXT NOT NULL,
    path         TEXT NOT NULL DEFAULT '',
    language     TEXT NOT NULL DEFAULT '',
    metadata     TEXT NOT NULL DEFAULT '{}',
    commit_hash  TEXT,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nodes_project_type ON graph_nodes(project_id, type);
CREATE INDEX IF NOT EXISTS idx_nodes_project_name ON graph_nodes(project_id, name);
CREATE INDEX IF NOT EXISTS idx_nodes_project_path ON graph_nodes(project_id, path);

CREATE TABLE IF NOT EXISTS graph_edges (
    id            TEXT PRIMARY KEY,
    from_node_id  TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    to_node_id    TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    relationship  TEXT NOT NULL,
    weight        REAL NOT NULL DEFAULT 1.0,
    confidence    REAL NOT NULL DEFAULT 1.0,
    metadata      TEXT NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL,
    UNIQUE (from_node_id, to_node_id, relationship)
);

CREATE INDEX IF NOT EXISTS idx_edges_from ON graph_edges(from_node_id, relationship);
CREATE INDEX IF NOT EXISTS idx_edges_to ON graph_edges(to_node_id, relationship);

CREATE TABLE IF NOT EXISTS code_chunks (
    id          TEXT PRIMARY KEY,
    node_id     TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    content     TEXT NOT NULL,
    chunk_type  TEXT NOT NULL DEFAULT 'basic',
    language    TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_node ON code_chunks(node_id);

CREATE TABLE IF NOT EXISTS embeddings (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id    TEXT NOT NULL REFERENCES code_chunks(id) ON DELETE CASCADE,
    vector      BLOB NOT NULL,
    dimensions  INTEGER NOT NULL,
    model       TEXT NOT NULL,
    provider    TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    UNIQUE (chunk_id, model)
);

CREATE TABLE IF NOT EXISTS diagnostics (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id         TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    severity        TEXT NOT NULL,
    message         TEXT NOT NULL,
    line            INTEGER NOT NULL DEFAULT 0,
    column_number   INTEGER NOT NULL DEFAULT 0,
    source          TEXT NOT NULL DEFAULT '',
    rule            TEXT NOT NULL DEFAULT '',
    fix_suggestion  TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_diagnostics_node ON diagnostics(node_id);

CREATE TABLE IF NOT EXISTS symbol_references (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol_node_id     TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    reference_node_id  TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
    reference_type     TEXT NOT NULL,
    line               INTEGER NOT NULL DEFAULT 0,
    column_number      INTEGER NOT NULL DEFAULT 0,
    context            TEXT NOT NULL DEFAULT '',
    created_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_refs_symbol ON symbol_references(symbol_node_id);
CREATE INDEX IF NOT EXISTS idx_refs_reference ON symbol_references(reference_node_id);
"""

# Tables in dependency order, children first
TABLES: tuple[str, ...] = (
    "symbol_references",
    "diagnostics",
    "embeddings",
    "code_chunks",
    "graph_edges",
    "graph_nodes",
)
