"""
SQLite database module for bridge state.

Provides persistent storage for connections (OAuth token sets), field
mappings, the contact identity map, the sync ledger and the diagnostic
event log.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from typing import Any, Optional

from crm_sync.errors import StoreWriteFailedError

logger = logging.getLogger(__name__)

# SQL Schema for bridge state tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS connections (
    id INTEGER PRIMARY KEY,
    tenant_key TEXT NOT NULL,
    remote_account_id TEXT,
    scopes TEXT,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at_ms INTEGER,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL,
    last_error_code TEXT,
    last_error_at_ms INTEGER,
    UNIQUE(tenant_key),
    CHECK (
        (access_token IS NULL AND refresh_token IS NULL)
        OR (access_token IS NOT NULL AND refresh_token IS NOT NULL)
    )
);

CREATE INDEX IF NOT EXISTS idx_connections_remote_account
    ON connections(remote_account_id);

CREATE TABLE IF NOT EXISTS field_mappings (
    id INTEGER PRIMARY KEY,
    tenant_key TEXT NOT NULL,
    local_field_key TEXT NOT NULL,
    remote_property TEXT NOT NULL,
    direction TEXT NOT NULL,
    transform TEXT NOT NULL DEFAULT 'none',
    created_at_ms INTEGER NOT NULL,
    UNIQUE(tenant_key, remote_property)
);

CREATE TABLE IF NOT EXISTS contact_id_map (
    id INTEGER PRIMARY KEY,
    tenant_key TEXT NOT NULL,
    local_contact_id TEXT NOT NULL,
    remote_contact_id TEXT NOT NULL,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL,
    UNIQUE(tenant_key, local_contact_id),
    UNIQUE(tenant_key, remote_contact_id)
);

CREATE TABLE IF NOT EXISTS sync_ledger (
    id INTEGER PRIMARY KEY,
    tenant_key TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    local_contact_id TEXT,
    remote_contact_id TEXT,
    writer_source TEXT NOT NULL,
    correlation_id TEXT,
    payload_hash TEXT NOT NULL,
    created_at_ms INTEGER NOT NULL,
    expires_at_ms INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_ledger_lookup
    ON sync_ledger(entity_type, writer_source, payload_hash);
CREATE INDEX IF NOT EXISTS idx_sync_ledger_expires ON sync_ledger(expires_at_ms);

CREATE TABLE IF NOT EXISTS events_log (
    id INTEGER PRIMARY KEY,
    event_type TEXT NOT NULL,
    source TEXT NOT NULL,
    correlation_id TEXT,
    tenant_key TEXT,
    remote_account_id TEXT,
    object_type TEXT,
    object_id TEXT,
    occurred_at_ms INTEGER,
    received_at_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    error_code TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_log_tenant ON events_log(tenant_key);
CREATE INDEX IF NOT EXISTS idx_events_log_account ON events_log(remote_account_id);
"""

# Connection columns that callers may write
CONNECTION_FIELDS = (
    "remote_account_id",
    "scopes",
    "access_token",
    "refresh_token",
    "token_expires_at_ms",
    "last_error_code",
    "last_error_at_ms",
)

EVENT_FIELDS = (
    "event_type",
    "source",
    "correlation_id",
    "tenant_key",
    "remote_account_id",
    "object_type",
    "object_id",
    "occurred_at_ms",
    "received_at_ms",
    "status",
    "error_code",
)

DEFAULT_EVENT_LIMIT = 50
MAX_EVENT_LIMIT = 200


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SyncDatabase:
    """
    SQLite database manager for bridge state.

    Provides methods for:
    - Storing one connection (token set) per tenant
    - Saving and listing field mapping sets
    - Linking local and remote contact ids
    - Recording and querying sync ledger entries
    - Writing the diagnostic event log

    Usage:
        db = SyncDatabase('/path/to/crm_sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
            timeout: Seconds to wait for a locked database before failing
        """
        self.db_path = db_path
        self.timeout = timeout
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.

        Returns:
            sqlite3.Connection: Database connection
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception, so a failed
        operation never leaves a partial write behind.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    @contextmanager
    def _write(
        self, table: str, operation: str, fields: Optional[dict[str, Any]] = None
    ) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that reports sqlite failures as StoreWriteFailedError."""
        try:
            with self.connection() as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Store write failed: {operation} {table}: {e}")
            raise StoreWriteFailedError(table, operation, str(e), fields) from e

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Connection Operations
    # =========================================================================

    @staticmethod
    def _connection_row(row: Optional[sqlite3.Row]) -> Optional[dict[str, Any]]:
        if row is None:
            return None
        record = dict(row)
        record["scopes"] = json.loads(record["scopes"]) if record["scopes"] else []
        return record

    def get_connection(self, tenant_key: str) -> Optional[dict[str, Any]]:
        """
        Get the connection record for a tenant.

        Args:
            tenant_key: Tenant key of the installation

        Returns:
            Dictionary with all connection columns (``scopes`` decoded to a
            list), or None if the tenant never connected
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM connections WHERE tenant_key = ?", (tenant_key,)
            )
            return self._connection_row(cursor.fetchone())

    def get_connection_by_remote_account(
        self, remote_account_id: str
    ) -> Optional[dict[str, Any]]:
        """
        Get the most recently updated connection for a remote account id.

        Args:
            remote_account_id: Remote CRM account id (portal id)

        Returns:
            Connection dictionary, or None if no tenant is linked to the account
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM connections
                WHERE remote_account_id = ?
                ORDER BY updated_at_ms DESC
                LIMIT 1
                """,
                (str(remote_account_id),),
            )
            return self._connection_row(cursor.fetchone())

    def upsert_connection(self, tenant_key: str, **fields: Any) -> None:
        """
        Insert or update a tenant's connection in a single write.

        Args:
            tenant_key: Tenant key of the installation
            **fields: Any of CONNECTION_FIELDS; ``scopes`` is given as a list

        Raises:
            ValueError: If an unknown field name is passed
            StoreWriteFailedError: If the write is rejected, e.g. a half-written
                token pair
        """
        unknown = set(fields) - set(CONNECTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown connection fields: {sorted(unknown)}")

        values = dict(fields)
        if "scopes" in values and values["scopes"] is not None:
            values["scopes"] = json.dumps(list(values["scopes"]))
        if values.get("remote_account_id") is not None:
            values["remote_account_id"] = str(values["remote_account_id"])

        timestamp = now_ms()
        columns = ["tenant_key", *values, "created_at_ms", "updated_at_ms"]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(
            [f"{name} = excluded.{name}" for name in values]
            + ["updated_at_ms = excluded.updated_at_ms"]
        )

        with self._write("connections", "upsert", fields) as conn:
            conn.execute(
                f"""
                INSERT INTO connections ({", ".join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(tenant_key) DO UPDATE SET {updates}
                """,
                (tenant_key, *values.values(), timestamp, timestamp),
            )

    def clear_connection(self, tenant_key: str) -> bool:
        """
        Clear tokens, scopes and remote account of a tenant.

        The record itself is retained for audit.

        Args:
            tenant_key: Tenant key of the installation

        Returns:
            True if a connection record existed
        """
        with self._write("connections", "clear") as conn:
            cursor = conn.execute(
                """
                UPDATE connections
                SET access_token = NULL,
                    refresh_token = NULL,
                    token_expires_at_ms = NULL,
                    scopes = NULL,
                    remote_account_id = NULL,
                    updated_at_ms = ?
                WHERE tenant_key = ?
                """,
                (now_ms(), tenant_key),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Field Mapping Operations
    # =========================================================================

    def list_mappings(self, tenant_key: str) -> list[dict[str, Any]]:
        """
        List a tenant's field mappings in save order.

        Returns:
            List of dictionaries with local_field_key, remote_property,
            direction and transform
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT local_field_key, remote_property, direction, transform
                FROM field_mappings
                WHERE tenant_key = ?
                ORDER BY id
                """,
                (tenant_key,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def replace_mappings(
        self, tenant_key: str, mappings: Iterable[dict[str, Any]]
    ) -> int:
        """
        Replace a tenant's whole mapping set (delete-all-then-insert).

        Both steps run in one transaction: a rejected row leaves the
        previous set untouched.

        Args:
            tenant_key: Tenant key of the installation
            mappings: Rows with local_field_key, remote_property, direction
                      and transform

        Returns:
            Number of rows inserted
        """
        rows = list(mappings)
        timestamp = now_ms()
        with self._write("field_mappings", "replace") as conn:
            conn.execute("DELETE FROM field_mappings WHERE tenant_key = ?", (tenant_key,))
            conn.executemany(
                """
                INSERT INTO field_mappings
                    (tenant_key, local_field_key, remote_property, direction,
                     transform, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        tenant_key,
                        row["local_field_key"],
                        row["remote_property"],
                        row["direction"],
                        row.get("transform") or "none",
                        timestamp,
                    )
                    for row in rows
                ],
            )
        return len(rows)

    # =========================================================================
    # Contact Identity Map Operations
    # =========================================================================

    def get_identity_by_local_id(
        self, tenant_key: str, local_contact_id: str
    ) -> Optional[dict[str, Any]]:
        """Get the identity link for a local contact id."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT local_contact_id, remote_contact_id FROM contact_id_map
                WHERE tenant_key = ? AND local_contact_id = ?
                """,
                (tenant_key, local_contact_id),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_identity_by_remote_id(
        self, tenant_key: str, remote_contact_id: str
    ) -> Optional[dict[str, Any]]:
        """Get the identity link for a remote contact id."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT local_contact_id, remote_contact_id FROM contact_id_map
                WHERE tenant_key = ? AND remote_contact_id = ?
                """,
                (tenant_key, remote_contact_id),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def upsert_identity(
        self, tenant_key: str, local_contact_id: str, remote_contact_id: str
    ) -> None:
        """
        Link a local contact id to a remote contact id.

        Keyed by local id. A stale link that points the same remote id at a
        different local contact is removed in the same transaction, keeping
        both directions unique.

        Args:
            tenant_key: Tenant key of the installation
            local_contact_id: Local CRM contact id
            remote_contact_id: Remote CRM contact id
        """
        timestamp = now_ms()
        fields = {
            "local_contact_id": local_contact_id,
            "remote_contact_id": remote_contact_id,
        }
        with self._write("contact_id_map", "upsert", fields) as conn:
            cursor = conn.execute(
                """
                DELETE FROM contact_id_map
                WHERE tenant_key = ? AND remote_contact_id = ? AND local_contact_id != ?
                """,
                (tenant_key, remote_contact_id, local_contact_id),
            )
            if cursor.rowcount:
                logger.warning(
                    f"Relinked remote contact {remote_contact_id} "
                    f"to local contact {local_contact_id}"
                )
            conn.execute(
                """
                INSERT INTO contact_id_map
                    (tenant_key, local_contact_id, remote_contact_id,
                     created_at_ms, updated_at_ms)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_key, local_contact_id) DO UPDATE SET
                    remote_contact_id = excluded.remote_contact_id,
                    updated_at_ms = excluded.updated_at_ms
                """,
                (tenant_key, local_contact_id, remote_contact_id, timestamp, timestamp),
            )

    # =========================================================================
    # Sync Ledger Operations
    # =========================================================================

    def insert_ledger_entry(
        self,
        tenant_key: str,
        entity_type: str,
        writer_source: str,
        payload_hash: str,
        created_at_ms: int,
        expires_at_ms: int,
        local_contact_id: Optional[str] = None,
        remote_contact_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Insert one ledger entry. Duplicate entries are harmless."""
        fields = {
            "entity_type": entity_type,
            "writer_source": writer_source,
            "payload_hash": payload_hash,
            "local_contact_id": local_contact_id,
            "remote_contact_id": remote_contact_id,
        }
        with self._write("sync_ledger", "insert", fields) as conn:
            conn.execute(
                """
                INSERT INTO sync_ledger
                    (tenant_key, entity_type, local_contact_id, remote_contact_id,
                     writer_source, correlation_id, payload_hash,
                     created_at_ms, expires_at_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_key,
                    entity_type,
                    local_contact_id,
                    remote_contact_id,
                    writer_source,
                    correlation_id,
                    payload_hash,
                    created_at_ms,
                    expires_at_ms,
                ),
            )

    def query_ledger(
        self,
        tenant_key: str,
        entity_type: str,
        writer_source: str,
        payload_hash: str,
        local_contact_id: Optional[str] = None,
        remote_contact_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Query ledger entries matching a payload.

        Id filters are applied only when given. Expired entries are returned
        too; filtering on ``expires_at_ms`` is the caller's job.

        Returns:
            List of ledger entry dictionaries, newest first
        """
        query = """
            SELECT * FROM sync_ledger
            WHERE tenant_key = ? AND entity_type = ?
              AND writer_source = ? AND payload_hash = ?
        """
        params: list[Any] = [tenant_key, entity_type, writer_source, payload_hash]
        if local_contact_id is not None:
            query += " AND local_contact_id = ?"
            params.append(local_contact_id)
        if remote_contact_id is not None:
            query += " AND remote_contact_id = ?"
            params.append(remote_contact_id)
        query += " ORDER BY created_at_ms DESC"

        with self.connection() as conn:
            cursor = conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def purge_expired_ledger(self, now: Optional[int] = None) -> int:
        """
        Delete ledger entries that expired at or before ``now``.

        Args:
            now: Epoch milliseconds (defaults to the current time)

        Returns:
            Number of entries deleted
        """
        cutoff = now_ms() if now is None else now
        with self._write("sync_ledger", "purge") as conn:
            cursor = conn.execute(
                "DELETE FROM sync_ledger WHERE expires_at_ms <= ?", (cutoff,)
            )
            return cursor.rowcount

    # =========================================================================
    # Event Log Operations
    # =========================================================================

    def insert_event(self, **fields: Any) -> None:
        """
        Insert one diagnostic event.

        Args:
            **fields: Any of EVENT_FIELDS; event_type, source and status are
                      required, received_at_ms defaults to now
        """
        unknown = set(fields) - set(EVENT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown event fields: {sorted(unknown)}")
        values = {"received_at_ms": now_ms(), **fields}
        for key in ("remote_account_id", "object_id"):
            if values.get(key) is not None:
                values[key] = str(values[key])

        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._write("events_log", "insert", fields) as conn:
            conn.execute(
                f"INSERT INTO events_log ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )

    def list_events(
        self,
        tenant_key: Optional[str] = None,
        remote_account_id: Optional[str] = None,
        limit: int = DEFAULT_EVENT_LIMIT,
    ) -> list[dict[str, Any]]:
        """
        List recent events for a tenant and/or remote account.

        Args:
            tenant_key: Match events logged for this tenant
            remote_account_id: Also match events logged for this remote account
            limit: Maximum rows, clamped to 1..200

        Returns:
            Event dictionaries, newest first
        """
        limit = max(1, min(MAX_EVENT_LIMIT, int(limit)))
        conditions = []
        params: list[Any] = []
        if tenant_key is not None:
            conditions.append("tenant_key = ?")
            params.append(tenant_key)
        if remote_account_id is not None:
            conditions.append("remote_account_id = ?")
            params.append(str(remote_account_id))

        query = "SELECT * FROM events_log"
        if conditions:
            query += " WHERE " + " OR ".join(conditions)
        query += " ORDER BY received_at_ms DESC, id DESC LIMIT ?"
        params.append(limit)

        with self.connection() as conn:
            cursor = conn.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Utility Operations
    # =========================================================================

    def vacuum(self) -> None:
        """Optimize the database by running VACUUM."""
        conn = self._get_connection()
        try:
            conn.execute("VACUUM")
        finally:
            if self.db_path != ":memory:":
                conn.close()
