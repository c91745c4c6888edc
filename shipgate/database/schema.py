"""SQLite schema for the run log, artifact bindings and secrets."""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS build_numbers (
    pipeline TEXT PRIMARY KEY,
    last_number INTEGER NOT NULL
);

-- Append-only: rows are never updated or deleted.
CREATE TABLE IF NOT EXISTS run_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    pipeline TEXT NOT NULL,
    event TEXT NOT NULL,
    stage TEXT,
    payload_json TEXT NOT NULL DEFAULT '{}',
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_run_events_run ON run_events(run_id, seq);
CREATE INDEX IF NOT EXISTS idx_run_events_pipeline ON run_events(pipeline, event);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hash TEXT NOT NULL,
    name TEXT NOT NULL,
    media_type TEXT NOT NULL,
    run_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    retention TEXT,
    size INTEGER NOT NULL,
    sealed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    retain_until TEXT,
    UNIQUE(run_id, stage, name, hash)
);

CREATE INDEX IF NOT EXISTS idx_artifacts_run ON artifacts(run_id, sealed);
CREATE INDEX IF NOT EXISTS idx_artifacts_hash ON artifacts(hash);

CREATE TABLE IF NOT EXISTS secrets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,
    field TEXT NOT NULL,
    value TEXT NOT NULL,
    encrypted BOOLEAN DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(scope, field)
);
"""
