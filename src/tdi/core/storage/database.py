"""SQLite database management for the therapy analytics store.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per fused recommendation handed to a caller
CREATE TABLE IF NOT EXISTS recommendations (
    id                  TEXT PRIMARY KEY,
    subject_id          TEXT NOT NULL,
    recommendation_type TEXT NOT NULL,
    payload_json        TEXT NOT NULL,
    confidence          REAL NOT NULL,
    clinical_relevance  REAL NOT NULL,
    explanation_json    TEXT,
    sources_json        TEXT,
    status              TEXT NOT NULL DEFAULT 'pending',
    created_at          TEXT NOT NULL,
    updated_at          TEXT
);

-- Therapist decisions; free text is encrypted at rest
CREATE TABLE IF NOT EXISTS recommendation_feedback (
    id                TEXT PRIMARY KEY,
    recommendation_id TEXT NOT NULL REFERENCES recommendations(id),
    therapist_id      TEXT NOT NULL,
    decision          TEXT NOT NULL CHECK (decision IN ('accept', 'modify', 'reject')),
    reasoning_enc     TEXT,
    modifications_enc TEXT,
    timestamp         TEXT NOT NULL
);

-- Per-therapist counters (create-if-absent, last writer wins)
CREATE TABLE IF NOT EXISTS therapist_preferences (
    therapist_id     TEXT PRIMARY KEY,
    feedback_count   INTEGER NOT NULL DEFAULT 0,
    accept_count     INTEGER NOT NULL DEFAULT 0,
    modify_count     INTEGER NOT NULL DEFAULT 0,
    reject_count     INTEGER NOT NULL DEFAULT 0,
    last_feedback_at TEXT,
    updated_at       TEXT NOT NULL
);

-- Append-only learning statistics
CREATE TABLE IF NOT EXISTS learning_updates (
    id                TEXT PRIMARY KEY,
    pattern_key       TEXT NOT NULL,
    factor_name       TEXT NOT NULL,
    old_value         REAL,
    new_value         REAL,
    adjustment_factor REAL,
    confidence        REAL,
    reason            TEXT,
    created_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rejection_patterns (
    id                      TEXT PRIMARY KEY,
    recommendation_id       TEXT NOT NULL,
    recommendation_type     TEXT NOT NULL,
    therapist_id            TEXT NOT NULL,
    reason_enc              TEXT,
    confidence_at_rejection REAL,
    created_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS modification_patterns (
    id                  TEXT PRIMARY KEY,
    recommendation_id   TEXT NOT NULL,
    recommendation_type TEXT NOT NULL,
    therapist_id        TEXT NOT NULL,
    modifications_enc   TEXT,
    reasoning_enc       TEXT,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS success_patterns (
    id                  TEXT PRIMARY KEY,
    recommendation_id   TEXT NOT NULL,
    recommendation_type TEXT NOT NULL,
    therapist_id        TEXT NOT NULL,
    confidence          REAL,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common query patterns
CREATE INDEX IF NOT EXISTS idx_recs_subject       ON recommendations(subject_id);
CREATE INDEX IF NOT EXISTS idx_recs_status        ON recommendations(status);
CREATE INDEX IF NOT EXISTS idx_feedback_ts        ON recommendation_feedback(timestamp);
CREATE INDEX IF NOT EXISTS idx_feedback_rec       ON recommendation_feedback(recommendation_id);
CREATE INDEX IF NOT EXISTS idx_feedback_therapist ON recommendation_feedback(therapist_id);
CREATE INDEX IF NOT EXISTS idx_updates_pattern    ON learning_updates(pattern_key);
"""

# ---------------------------------------------------------------------------
# V2: Audit log and prediction validation tables
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    tool_name       TEXT,
    tool_input_hash TEXT,
    subject_hash    TEXT,
    duration_ms     REAL,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    metadata_json   TEXT
);

CREATE TABLE IF NOT EXISTS prediction_validations (
    id               TEXT PRIMARY KEY,
    prediction_id    TEXT NOT NULL,
    prediction_type  TEXT NOT NULL,
    predicted_value  REAL NOT NULL,
    actual_value     REAL NOT NULL,
    accuracy         REAL NOT NULL,
    absolute_error   REAL NOT NULL,
    percentage_error REAL NOT NULL,
    calibration      REAL NOT NULL,
    validator_id     TEXT,
    validated_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp   ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action      ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_tool        ON audit_log(tool_name);
CREATE INDEX IF NOT EXISTS idx_validations_type  ON prediction_validations(prediction_type);
CREATE INDEX IF NOT EXISTS idx_validations_ts    ON prediction_validations(validated_at);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class TherapyDatabase:
    """SQLite database manager for the analytics store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    Usage::

        with TherapyDatabase(":memory:") as db:
            conn = db.connection
            ...
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def connection(self) -> sqlite3.Connection:
        """The active connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Open the connection and bring the schema up to date. Idempotent."""
        if self._conn is not None:
            return

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_file))
        else:
            self._conn = sqlite3.connect(":memory:")

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._ensure_schema()
        logger.info("Therapy analytics database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        conn = self.connection

        # V1 is always applied; CREATE IF NOT EXISTS is idempotent
        conn.executescript(_SCHEMA_V1)

        current_version = self.get_schema_version()

        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log, prediction_validations")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Therapy analytics database closed")

    def __enter__(self) -> TherapyDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
