"""SQLite schema migrations for the content cache store."""

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from taxaharvest.store.errors import MigrationError


logger = structlog.get_logger()

# Current schema version
CURRENT_VERSION = 2


@dataclass(frozen=True)
class Migration:
    """A database migration.

    Attributes:
        version: Target version after applying this migration.
        description: Human-readable description.
        up_sql: SQL to apply the migration.
        down_sql: SQL to rollback the migration.
    """

    version: int
    description: str
    up_sql: str
    down_sql: str


# All migrations in order
MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        description="Import provenance, cached entities, lookups, and redirects",
        up_sql="""
-- One row per outbound request that reached the network
CREATE TABLE IF NOT EXISTS import_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running'
        CHECK (status IN ('running', 'succeeded', 'failed')),
    started_at TEXT NOT NULL,
    ended_at TEXT,
    duration_ms REAL,
    http_status INTEGER,
    payload_bytes INTEGER,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_import_runs_started_at ON import_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_import_runs_status ON import_runs(status);

-- At most one row per external id; refetches update in place
CREATE TABLE IF NOT EXISTS cached_entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,
    import_run_id INTEGER NOT NULL
        REFERENCES import_runs(id) ON DELETE RESTRICT,
    first_seen_at TEXT NOT NULL,
    downloaded_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    payload_bytes INTEGER NOT NULL,
    content_hash TEXT NOT NULL,
    canonical_title TEXT,
    parent_external_id TEXT,
    is_redirect INTEGER NOT NULL DEFAULT 0,
    attributes_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_cached_entities_downloaded_at
    ON cached_entities(downloaded_at);
CREATE INDEX IF NOT EXISTS idx_cached_entities_content_hash
    ON cached_entities(content_hash);
CREATE INDEX IF NOT EXISTS idx_cached_entities_parent
    ON cached_entities(parent_external_id);

-- Alternative ids resolving to a cached entity
CREATE TABLE IF NOT EXISTS entity_lookup (
    lookup_id TEXT PRIMARY KEY,
    entity_row_id INTEGER NOT NULL
        REFERENCES cached_entities(id) ON DELETE CASCADE,
    scope TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entity_lookup_entity ON entity_lookup(entity_row_id);

-- Searchable name variants produced by the name resolver
CREATE TABLE IF NOT EXISTS entity_names (
    entity_row_id INTEGER NOT NULL
        REFERENCES cached_entities(id) ON DELETE CASCADE,
    original_form TEXT NOT NULL,
    normalized_form TEXT NOT NULL,
    variant_kind TEXT NOT NULL,
    PRIMARY KEY (entity_row_id, normalized_form, variant_kind)
);
CREATE INDEX IF NOT EXISTS idx_entity_names_normalized
    ON entity_names(normalized_form);

-- Ordered hops from a redirect stub to its canonical entity
CREATE TABLE IF NOT EXISTS redirect_edges (
    entity_row_id INTEGER NOT NULL
        REFERENCES cached_entities(id) ON DELETE CASCADE,
    hop INTEGER NOT NULL CHECK (hop >= 1),
    target_title TEXT NOT NULL,
    target_entity_row_id INTEGER
        REFERENCES cached_entities(id) ON DELETE SET NULL,
    PRIMARY KEY (entity_row_id, hop)
);
CREATE INDEX IF NOT EXISTS idx_redirect_edges_target
    ON redirect_edges(target_entity_row_id);
""",
        down_sql="""
DROP INDEX IF EXISTS idx_redirect_edges_target;
DROP TABLE IF EXISTS redirect_edges;
DROP INDEX IF EXISTS idx_entity_names_normalized;
DROP TABLE IF EXISTS entity_names;
DROP INDEX IF EXISTS idx_entity_lookup_entity;
DROP TABLE IF EXISTS entity_lookup;
DROP INDEX IF EXISTS idx_cached_entities_parent;
DROP INDEX IF EXISTS idx_cached_entities_content_hash;
DROP INDEX IF EXISTS idx_cached_entities_downloaded_at;
DROP TABLE IF EXISTS cached_entities;
DROP INDEX IF EXISTS idx_import_runs_status;
DROP INDEX IF EXISTS idx_import_runs_started_at;
DROP TABLE IF EXISTS import_runs;
""",
    ),
    Migration(
        version=2,
        description="Candidates, failure ledger, and cursor state",
        up_sql="""
-- Ids known to exist, whether or not they have been fetched yet
CREATE TABLE IF NOT EXISTS candidates (
    external_id TEXT PRIMARY KEY,
    sort_key INTEGER,
    discovered_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    attributes_json TEXT NOT NULL DEFAULT '{}',
    missing_reason TEXT,
    missing_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_candidates_sort_key ON candidates(sort_key);

-- Scheduling state for failed fetches; cleared on success
CREATE TABLE IF NOT EXISTS failed_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    endpoint TEXT NOT NULL,
    external_id TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 1,
    last_error TEXT NOT NULL,
    last_status INTEGER,
    last_attempt_at TEXT NOT NULL,
    next_attempt_after TEXT,
    UNIQUE (endpoint, external_id),
    CHECK (next_attempt_after IS NULL OR next_attempt_after >= last_attempt_at)
);
CREATE INDEX IF NOT EXISTS idx_failed_requests_next
    ON failed_requests(endpoint, next_attempt_after);

-- Named cursor positions
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
""",
        down_sql="""
DROP TABLE IF EXISTS sync_state;
DROP INDEX IF EXISTS idx_failed_requests_next;
DROP TABLE IF EXISTS failed_requests;
DROP INDEX IF EXISTS idx_candidates_sort_key;
DROP TABLE IF EXISTS candidates;
""",
    ),
]


def get_migrations_to_apply(current_version: int) -> list[Migration]:
    """Get migrations that need to be applied.

    Args:
        current_version: The current schema version.

    Returns:
        List of migrations to apply in order.
    """
    return [m for m in MIGRATIONS if m.version > current_version]


class MigrationManager:
    """Manages SQLite schema migrations."""

    # SQL for schema version tracking table
    VERSION_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL,
    description TEXT
);
"""

    def __init__(self, connection: sqlite3.Connection) -> None:
        """Initialize the migration manager.

        Args:
            connection: SQLite connection to manage.
        """
        self._conn = connection
        self._log = logger.bind(component="store", operation="migration")

    def ensure_version_table(self) -> None:
        """Ensure the schema_version table exists."""
        self._conn.execute(self.VERSION_TABLE_SQL)
        self._conn.commit()

    def get_current_version(self) -> int:
        """Get the current schema version.

        Returns:
            Current version number, or 0 if no migrations applied.
        """
        self.ensure_version_table()
        cursor = self._conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def apply_migrations(self) -> list[int]:
        """Apply all pending migrations.

        Returns:
            List of version numbers that were applied.

        Raises:
            MigrationError: If a migration script fails.
        """
        current = self.get_current_version()
        pending = get_migrations_to_apply(current)

        if not pending:
            self._log.debug("no_migrations_pending", current_version=current)
            return []

        applied: list[int] = []

        for migration in pending:
            self._log.info(
                "applying_migration",
                version=migration.version,
                description=migration.description,
            )

            try:
                self._conn.executescript(migration.up_sql)
                self._conn.execute(
                    """
                    INSERT INTO schema_version (version, applied_at, description)
                    VALUES (?, ?, ?)
                    """,
                    (
                        migration.version,
                        datetime.now(UTC).isoformat(),
                        migration.description,
                    ),
                )
                self._conn.commit()
                applied.append(migration.version)
            except sqlite3.Error as e:
                self._log.error(
                    "migration_failed",
                    version=migration.version,
                    error=str(e),
                )
                self._conn.rollback()
                raise MigrationError(migration.version, str(e)) from e

            self._log.info("migration_applied", version=migration.version)

        return applied

    def rollback_to(self, target_version: int) -> list[int]:
        """Rollback to a specific version.

        Args:
            target_version: The version to rollback to.

        Returns:
            List of version numbers that were rolled back.

        Raises:
            ValueError: If target version is invalid.
            MigrationError: If a rollback script fails.
        """
        if target_version < 0:
            msg = f"Invalid target version: {target_version}"
            raise ValueError(msg)

        rolled_back: list[int] = []
        by_version = {m.version: m for m in MIGRATIONS}

        while (current := self.get_current_version()) > target_version:
            migration = by_version.get(current)
            if migration is None:
                break

            self._log.info(
                "rolling_back_migration",
                version=migration.version,
                description=migration.description,
            )

            try:
                self._conn.executescript(migration.down_sql)
                self._conn.execute(
                    "DELETE FROM schema_version WHERE version = ?",
                    (migration.version,),
                )
                self._conn.commit()
                rolled_back.append(migration.version)
            except sqlite3.Error as e:
                self._log.error(
                    "rollback_failed",
                    version=migration.version,
                    error=str(e),
                )
                self._conn.rollback()
                raise MigrationError(migration.version, str(e)) from e

        return rolled_back

    def get_applied_migrations(self) -> list[dict[str, str | int]]:
        """Get list of applied migrations.

        Returns:
            List of dicts with version, applied_at, and description.
        """
        self.ensure_version_table()
        cursor = self._conn.execute(
            """
            SELECT version, applied_at, description
            FROM schema_version
            ORDER BY version
            """
        )
        return [
            {
                "version": row[0],
                "applied_at": row[1],
                "description": row[2] or "",
            }
            for row in cursor.fetchall()
        ]
