# Records_DB.py
# Description: SQLite-backed local record cache with per-record synchronization state.
#
"""
Records_DB.py
-------------

Durable local store for the offline-first sync engine.

The database holds two tables that are always written together:

- `records`: the cached entities. Each row carries a namespaced id
  (`tmp:<uuid>` for records the server has never seen, `srv:<id>` for
  server-assigned ids), the JSON-encoded field mapping, the sync state and,
  for pending updates, the set of locally changed field names.
- `pending_operations`: the queue of unconfirmed mutations (see
  `Pending_Queue.py`). `record_id` is UNIQUE, and references `records(id)`
  with ON UPDATE/ON DELETE CASCADE, so an operation can never outlive its
  record and follows it when a temporary id is re-keyed to a permanent one.

Features:
- Thread-local SQLite connections (`threading.local`), WAL mode for file databases.
- Schema versioning through `db_schema_version` (no migrations: a mismatch is a `SchemaError`).
- A transaction context manager; nested `with db.transaction()` blocks join the
  outermost transaction, which is what lets a record write and its queue entry
  commit or roll back as one unit.
- The snapshot replacement used by reconciliation (`replace_all`), which never
  touches a record that has a pending state.
"""
# Imports
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
#
# Third-Party Libraries
#
# Local Imports
from offline_sync.models import MergeStats, Record, RecordId, SyncState
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


# --- Custom Exceptions ---
class RecordsDBError(Exception):
    """Base exception for errors raised by the local record store."""
    pass


class StorageIOError(RecordsDBError):
    """A local storage transaction failed. Fatal to the operation that triggered it."""
    pass


class SchemaError(StorageIOError):
    """Exception for schema version mismatches or schema setup failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class RecordNotFoundError(RecordsDBError):
    """The requested record does not exist in the local store."""

    def __init__(self, record_id: RecordId, message: Optional[str] = None):
        super().__init__(message or f"Record {record_id} not found.")
        self.record_id = record_id


class RecordAlreadyDeletingError(RecordsDBError):
    """
    A mutation was requested for a record whose deletion is already pending.

    Attributes:
        record_id (RecordId): The record that is awaiting remote deletion.
    """

    def __init__(self, record_id: RecordId, message: str = "Record is already pending deletion."):
        super().__init__(message)
        self.record_id = record_id

    def __str__(self):
        return f"{super().__str__()} (ID: {self.record_id})"


# --- Database Class ---
class RecordsDB:
    """
    Manages SQLite connections and the record table of the local cache.

    Attributes:
        db_path (Path): Absolute path of the database file, or Path(":memory:").
        db_path_str (str): String form of the path used with sqlite3.connect.
        client_id (str): Identifier of this client instance, logged with every write.
        is_memory_db (bool): True for an in-memory database.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "offline_records_schema"

    _FULL_SCHEMA_SQL_V1 = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name, version) VALUES('offline_records_schema', 0);

CREATE TABLE IF NOT EXISTS records(
  id             TEXT PRIMARY KEY NOT NULL,
  id_kind        TEXT NOT NULL CHECK(id_kind IN ('tmp','srv')),
  fields         TEXT NOT NULL DEFAULT '{}',
  sync_state     TEXT NOT NULL CHECK(sync_state IN ('synced','pending_create','pending_update','pending_delete')),
  changed_fields TEXT NOT NULL DEFAULT '[]',
  created_at     DATETIME NOT NULL,
  last_modified  DATETIME NOT NULL,
  version        INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_records_sync_state ON records(sync_state);

CREATE TABLE IF NOT EXISTS pending_operations(
  seq            INTEGER PRIMARY KEY AUTOINCREMENT,
  op_id          TEXT UNIQUE NOT NULL,
  record_id      TEXT UNIQUE NOT NULL REFERENCES records(id) ON UPDATE CASCADE ON DELETE CASCADE,
  kind           TEXT NOT NULL CHECK(kind IN ('create','update','delete')),
  payload        TEXT NOT NULL DEFAULT '{}',
  changed_fields TEXT NOT NULL DEFAULT '[]',
  created_at     DATETIME NOT NULL,
  attempt_count  INTEGER NOT NULL DEFAULT 0,
  last_error     TEXT,
  revision       INTEGER NOT NULL DEFAULT 1,
  in_flight      INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_pending_operations_order ON pending_operations(created_at, seq);

UPDATE db_schema_version
   SET version = 1
 WHERE schema_name = 'offline_records_schema'
   AND version < 1;
"""

    def __init__(self, db_path: Union[str, Path], client_id: str):
        """
        Initializes the RecordsDB instance and makes sure the schema is in place.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
            client_id: Identifier of this client instance. Must not be empty.

        Raises:
            ValueError: If `client_id` is empty.
            StorageIOError: If the database directory cannot be created or the
                            database cannot be initialized.
            SchemaError: If the stored schema version is not the one this code supports.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageIOError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing RecordsDB for path: {self.db_path_str} [Client ID: {self.client_id}]")
        self._local = threading.local()
        try:
            self._initialize_schema()
        except SchemaError:
            self.close_connection()
            raise
        except (RecordsDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_connection()
            raise StorageIOError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        """
        Retrieves or creates the SQLite connection of the calling thread.

        Reopens the connection if it was closed. Enables WAL mode for file
        databases and foreign keys for every connection.

        Raises:
            StorageIOError: If connecting to the database fails.
        """
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise StorageIOError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        """
        Closes the calling thread's connection.

        An uncommitted transaction is rolled back first; file databases in WAL
        mode are checkpointed before closing.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            return
        try:
            if conn.in_transaction:
                logger.warning(f"Connection to {self.db_path_str} closed with an open transaction. Rolling back.")
                conn.rollback()
            if not self.is_memory_db:
                mode_row = conn.execute("PRAGMA journal_mode;").fetchone()
                if mode_row and mode_row[0].lower() == 'wal':
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            conn.close()
            logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
        except sqlite3.Error as e:
            logger.warning(f"Error while closing SQLite connection for {self.db_path_str}: {e}")
        finally:
            self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False) -> sqlite3.Cursor:
        """
        Executes a single SQL statement on the calling thread's connection.

        Args:
            query: The SQL statement.
            params: Optional parameters for the statement.
            commit: Commit right away when not inside a `transaction()` block.

        Raises:
            StorageIOError: For any SQLite error.
        """
        conn = self.get_connection()
        # sqlite3 opens an implicit transaction for DML, so check before executing
        joins_transaction = conn.in_transaction
        try:
            cursor = conn.execute(query, params or ())
            if commit and not joins_transaction:
                conn.commit()
            return cursor
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            if not joins_transaction and conn.in_transaction:
                conn.rollback()
            raise StorageIOError(f"Query execution failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for database transactions.

        Usage:
            with db.transaction() as conn:
                ...  # committed on success, rolled back on exception
        """
        return TransactionContextManager(self)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _apply_schema_v1(self, conn: sqlite3.Connection):
        logger.info(f"Applying schema version {self._CURRENT_SCHEMA_VERSION} to DB: {self.db_path_str}")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            logger.error(f"Schema application failed: {e}", exc_info=True)
            raise SchemaError(f"DB schema V{self._CURRENT_SCHEMA_VERSION} setup failed: {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != self._CURRENT_SCHEMA_VERSION:
            raise SchemaError(
                f"Schema version check failed. Expected {self._CURRENT_SCHEMA_VERSION}, got: {final_version}")

    def _initialize_schema(self):
        """
        Creates the schema on a fresh database, or verifies the version of an existing one.

        Raises:
            SchemaError: If the stored version differs from `_CURRENT_SCHEMA_VERSION`
                         (schema migration is not supported) or schema setup fails.
        """
        conn = self.get_connection()
        current_db_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. "
                    f"Code supports: {target_version}")

        if current_db_version == target_version:
            return
        if current_db_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer than "
                f"supported by code ({target_version}).")
        if current_db_version != 0:
            raise SchemaError(
                f"Migration path undefined for '{self._SCHEMA_NAME}' from version {current_db_version} "
                f"to {target_version}.")
        # executescript manages its own transaction
        self._apply_schema_v1(conn)
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {target_version}.")

    # --- Internal Helpers ---
    @staticmethod
    def _get_current_utc_timestamp_iso() -> str:
        """Current UTC time as ISO 8601 with millisecond precision and a 'Z' suffix."""
        return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

    @staticmethod
    def encode_fields(fields: Any) -> str:
        """
        Serializes a field mapping for storage.

        Raises:
            InputError: If `fields` is not a dict with non-empty string keys and
                        JSON-serializable values.
        """
        if not isinstance(fields, dict):
            raise InputError(f"Record fields must be a dict, got {type(fields).__name__}.")
        for name in fields:
            if not isinstance(name, str) or not name.strip():
                raise InputError(f"Invalid field name: {name!r}.")
        try:
            return json.dumps(fields, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise InputError(f"Record fields must be JSON-serializable: {e}") from e

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=RecordId.from_key(row['id']),
            fields=json.loads(row['fields']),
            sync_state=SyncState(row['sync_state']),
            changed_fields=set(json.loads(row['changed_fields'])),
            created_at=row['created_at'],
            last_modified=row['last_modified'],
            version=row['version'],
        )

    # --- Record Store Operations ---
    def list_records(self, states: Optional[Iterable[SyncState]] = None) -> List[Record]:
        """Returns all records (optionally only those in `states`), oldest first."""
        query = "SELECT * FROM records"
        params: tuple = ()
        if states is not None:
            state_values = [SyncState(s).value for s in states]
            if not state_values:
                return []
            query += f" WHERE sync_state IN ({', '.join('?' for _ in state_values)})"
            params = tuple(state_values)
        query += " ORDER BY created_at ASC, rowid ASC"
        cursor = self.execute_query(query, params)
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def find_record(self, record_id: RecordId) -> Optional[Record]:
        cursor = self.execute_query("SELECT * FROM records WHERE id = ?", (record_id.key,))
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def get_record(self, record_id: RecordId) -> Record:
        """
        Raises:
            RecordNotFoundError: If no record has this id.
        """
        record = self.find_record(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def upsert_record(self, record: Record) -> Record:
        """
        Inserts the record, or overwrites the stored row with the same id.

        The read of the current row and the write happen in one transaction; the
        stored version is bumped and `last_modified` set to now. `created_at` of an
        existing row is kept.

        Returns:
            The record as stored.
        """
        fields_json = self.encode_fields(record.fields)
        state = SyncState(record.sync_state)
        changed = sorted(record.changed_fields) if state is SyncState.PENDING_UPDATE else []
        now = self._get_current_utc_timestamp_iso()
        try:
            with self.transaction() as conn:
                row = conn.execute("SELECT version, created_at FROM records WHERE id = ?",
                                   (record.id.key,)).fetchone()
                if row is None:
                    conn.execute(
                        """INSERT INTO records (id, id_kind, fields, sync_state, changed_fields,
                                                created_at, last_modified, version)
                           VALUES (?, ?, ?, ?, ?, ?, ?, 1)""",
                        (record.id.key, record.id.kind.value, fields_json, state.value,
                         json.dumps(changed), record.created_at or now, now))
                else:
                    conn.execute(
                        """UPDATE records SET fields = ?, sync_state = ?, changed_fields = ?,
                                              last_modified = ?, version = ?
                           WHERE id = ?""",
                        (fields_json, state.value, json.dumps(changed), now, row['version'] + 1, record.id.key))
                stored = self._row_to_record(
                    conn.execute("SELECT * FROM records WHERE id = ?", (record.id.key,)).fetchone())
        except sqlite3.Error as e:
            logger.error(f"Failed to upsert record {record.id}: {e}", exc_info=True)
            raise StorageIOError(f"Failed to write record {record.id}: {e}") from e
        logger.debug(f"Upserted record {stored.id} (state={stored.sync_state.value}, v{stored.version}).")
        return stored

    def remove_record(self, record_id: RecordId) -> bool:
        """Deletes the record (and, by cascade, its pending operation). Returns False if it did not exist."""
        try:
            with self.transaction() as conn:
                cursor = conn.execute("DELETE FROM records WHERE id = ?", (record_id.key,))
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to remove record {record_id}: {e}") from e
        if cursor.rowcount:
            logger.debug(f"Removed record {record_id}.")
        return cursor.rowcount > 0

    def reassign_record_id(self, old_id: RecordId, new_id: RecordId) -> Record:
        """
        Re-keys a record, typically from its temporary id to the server-assigned one.

        The pending operation of the record follows through ON UPDATE CASCADE. A
        synced row already stored under `new_id` (e.g. pulled in by an earlier
        snapshot) is replaced.

        Raises:
            RecordNotFoundError: If `old_id` does not exist.
            StorageIOError: If `new_id` is held by a record with local pending changes.
        """
        if old_id == new_id:
            return self.get_record(old_id)
        try:
            with self.transaction() as conn:
                if conn.execute("SELECT 1 FROM records WHERE id = ?", (old_id.key,)).fetchone() is None:
                    raise RecordNotFoundError(old_id)
                clash = conn.execute("SELECT sync_state FROM records WHERE id = ?", (new_id.key,)).fetchone()
                if clash is not None:
                    if clash['sync_state'] != SyncState.SYNCED.value:
                        raise StorageIOError(
                            f"Cannot re-key {old_id} to {new_id}: target holds unsynced local changes.")
                    logger.warning(f"Replacing existing synced record {new_id} while re-keying {old_id}.")
                    conn.execute("DELETE FROM records WHERE id = ?", (new_id.key,))
                conn.execute("UPDATE records SET id = ?, id_kind = ?, last_modified = ? WHERE id = ?",
                             (new_id.key, new_id.kind.value, self._get_current_utc_timestamp_iso(), old_id.key))
                stored = self._row_to_record(
                    conn.execute("SELECT * FROM records WHERE id = ?", (new_id.key,)).fetchone())
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to re-key record {old_id} -> {new_id}: {e}") from e
        logger.info(f"Record {old_id} re-keyed to {new_id}.")
        return stored

    def replace_all(self, records: Sequence[Record]) -> MergeStats:
        """
        Makes `records` the set of synced records, leaving pending records alone.

        Used only by the reconciliation merge step. In one transaction:
        - a synced local record present in `records` gets the incoming fields,
        - a synced local record absent from `records` is deleted,
        - an incoming record unknown locally is inserted as synced,
        - a local record in any pending state is never modified, even when
          `records` holds a different version of it.
        """
        stats = MergeStats()
        incoming = {r.id.key: r for r in records}
        now = self._get_current_utc_timestamp_iso()
        try:
            with self.transaction() as conn:
                local_rows = {row['id']: row for row in
                              conn.execute("SELECT id, fields, sync_state, version FROM records").fetchall()}

                for key, row in local_rows.items():
                    if row['sync_state'] != SyncState.SYNCED.value:
                        if key in incoming:
                            stats.preserved += 1
                        continue
                    remote = incoming.get(key)
                    if remote is None:
                        conn.execute("DELETE FROM records WHERE id = ?", (key,))
                        stats.removed += 1
                        continue
                    if json.loads(row['fields']) == remote.fields:
                        stats.unchanged += 1
                        continue
                    conn.execute("UPDATE records SET fields = ?, changed_fields = '[]', last_modified = ?, "
                                 "version = ? WHERE id = ?",
                                 (self.encode_fields(remote.fields), now, row['version'] + 1, key))
                    stats.updated += 1

                for key, remote in incoming.items():
                    if key in local_rows:
                        continue
                    conn.execute(
                        """INSERT INTO records (id, id_kind, fields, sync_state, changed_fields,
                                                created_at, last_modified, version)
                           VALUES (?, ?, ?, ?, '[]', ?, ?, 1)""",
                        (key, remote.id.kind.value, self.encode_fields(remote.fields),
                         SyncState.SYNCED.value, now, now))
                    stats.added += 1
        except sqlite3.Error as e:
            logger.error(f"Snapshot replacement failed: {e}", exc_info=True)
            raise StorageIOError(f"Snapshot replacement failed: {e}") from e

        logger.info(f"Snapshot merged: {stats.updated} updated, {stats.added} added, {stats.removed} removed, "
                    f"{stats.unchanged} unchanged, {stats.preserved} pending preserved.")
        return stats

    def count_records_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in SyncState}
        cursor = self.execute_query("SELECT sync_state, COUNT(*) AS n FROM records GROUP BY sync_state")
        for row in cursor.fetchall():
            counts[row['sync_state']] = row['n']
        return counts


# --- Transaction Context Manager Class (Helper for `with db.transaction():`) ---
class TransactionContextManager:
    def __init__(self, db_instance: RecordsDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageIOError(f"Could not start transaction: {e}") from e
            self.is_outermost_transaction = True
            logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_outermost_transaction:
            # Nested block: the outermost block commits or rolls back
            return False

        if exc_type:
            logger.debug(f"Transaction failed, rolling back: {exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
            return False

        try:
            self.conn.commit()
            logger.debug(f"Transaction (outermost) committed on thread {threading.get_ident()}.")
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}",
                         exc_info=True)
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback after failed commit also FAILED: {rb_err}", exc_info=True)
            raise StorageIOError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Records_DB.py
#######################################################################################################################
