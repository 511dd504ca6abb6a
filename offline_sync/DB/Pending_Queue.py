# Pending_Queue.py
# Description: Durable queue of unconfirmed local mutations, with per-record coalescing.
#
# Imports
import json
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional
#
# Third-Party Imports
#
# Local Imports
from offline_sync.DB.Records_DB import (
    InputError,
    RecordAlreadyDeletingError,
    RecordsDB,
    StorageIOError,
)
from offline_sync.models import OperationKind, PendingOperation, RecordId
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class PendingOperationQueue:
    """
    Persistent FIFO of pending remote operations, stored in the `pending_operations`
    table of a RecordsDB.

    There is at most one operation per record. Enqueuing a mutation for a record
    that already has one coalesces the two:

        existing  new      result
        CREATE    UPDATE   CREATE, payload merged (latest values win)
        CREATE    DELETE   operation cancelled, `enqueue` returns None
                           (becomes DELETE if the create is already in flight)
        UPDATE    UPDATE   UPDATE, union of changed fields, latest values
        UPDATE    DELETE   DELETE, update payload discarded
        DELETE    any      RecordAlreadyDeletingError

    A coalesced operation keeps its place in the queue and gets a new `revision`.
    All methods join an enclosing `db.transaction()` block, so a record write and
    its queue entry can be committed together.
    """

    def __init__(self, db: RecordsDB):
        self.db = db

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> PendingOperation:
        return PendingOperation(
            op_id=row['op_id'],
            record_id=RecordId.from_key(row['record_id']),
            kind=OperationKind(row['kind']),
            payload=json.loads(row['payload']),
            changed_fields=set(json.loads(row['changed_fields'])),
            created_at=row['created_at'],
            attempt_count=row['attempt_count'],
            last_error=row['last_error'],
            revision=row['revision'],
            in_flight=bool(row['in_flight']),
        )

    def _fetch_one(self, where: str, params: tuple) -> Optional[PendingOperation]:
        cursor = self.db.execute_query(f"SELECT * FROM pending_operations WHERE {where}", params)
        row = cursor.fetchone()
        return self._row_to_operation(row) if row else None

    def _write(self, conn: sqlite3.Connection, op: PendingOperation):
        conn.execute(
            """UPDATE pending_operations
                  SET kind = ?, payload = ?, changed_fields = ?, revision = ?
                WHERE op_id = ?""",
            (op.kind.value, RecordsDB.encode_fields(op.payload), json.dumps(sorted(op.changed_fields)),
             op.revision, op.op_id))

    # --- Lookup ---
    def get(self, op_id: str) -> Optional[PendingOperation]:
        return self._fetch_one("op_id = ?", (op_id,))

    def get_for_record(self, record_id: RecordId) -> Optional[PendingOperation]:
        return self._fetch_one("record_id = ?", (record_id.key,))

    def list_pending(self) -> List[PendingOperation]:
        """All operations, oldest first (by creation time, then insertion order)."""
        cursor = self.db.execute_query("SELECT * FROM pending_operations ORDER BY created_at ASC, seq ASC")
        return [self._row_to_operation(row) for row in cursor.fetchall()]

    def count(self) -> int:
        return self.db.execute_query("SELECT COUNT(*) FROM pending_operations").fetchone()[0]

    # --- Enqueue / Coalesce ---
    def enqueue(self, record_id: RecordId, kind: OperationKind,
                fields: Optional[Dict[str, Any]] = None) -> Optional[PendingOperation]:
        """
        Adds an operation for `record_id`, or folds it into the one already queued.

        Args:
            record_id: Id of the record (must exist in the record store).
            kind: The kind of mutation.
            fields: CREATE: all fields of the new record. UPDATE: the changed
                    fields and their new values. Ignored for DELETE.

        Returns:
            The resulting queued operation, or None if the mutation cancelled
            the queued operation (delete of a record whose create is still queued).

        Raises:
            RecordAlreadyDeletingError: A DELETE is already queued for the record.
            InputError: Invalid payload, an UPDATE without fields, or a second CREATE.
            StorageIOError: The write failed.
        """
        kind = OperationKind(kind)
        payload = dict(fields or {}) if kind is not OperationKind.DELETE else {}
        if kind is OperationKind.UPDATE and not payload:
            raise InputError("An update operation needs at least one changed field.")
        RecordsDB.encode_fields(payload)

        try:
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM pending_operations WHERE record_id = ?",
                                   (record_id.key,)).fetchone()
                if row is None:
                    return self._insert(conn, record_id, kind, payload)
                return self._coalesce(conn, self._row_to_operation(row), kind, payload)
        except sqlite3.Error as e:
            logger.error(f"Failed to enqueue {kind.value} for {record_id}: {e}", exc_info=True)
            raise StorageIOError(f"Failed to enqueue {kind.value} for {record_id}: {e}") from e

    def _insert(self, conn: sqlite3.Connection, record_id: RecordId, kind: OperationKind,
                payload: Dict[str, Any]) -> PendingOperation:
        op = PendingOperation(
            op_id=str(uuid.uuid4()),
            record_id=record_id,
            kind=kind,
            payload=payload,
            changed_fields=set(payload) if kind is OperationKind.UPDATE else set(),
            created_at=RecordsDB._get_current_utc_timestamp_iso(),
        )
        conn.execute(
            """INSERT INTO pending_operations (op_id, record_id, kind, payload, changed_fields, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (op.op_id, record_id.key, kind.value, RecordsDB.encode_fields(payload),
             json.dumps(sorted(op.changed_fields)), op.created_at))
        logger.debug(f"Queued {kind.value} operation {op.op_id} for {record_id}.")
        return op

    def _coalesce(self, conn: sqlite3.Connection, existing: PendingOperation, kind: OperationKind,
                  payload: Dict[str, Any]) -> Optional[PendingOperation]:
        record_id = existing.record_id
        if existing.kind is OperationKind.DELETE:
            raise RecordAlreadyDeletingError(record_id)
        if kind is OperationKind.CREATE:
            raise InputError(f"Record {record_id} already has a queued {existing.kind.value} operation.")

        if kind is OperationKind.DELETE:
            if existing.kind is OperationKind.CREATE and not existing.in_flight:
                conn.execute("DELETE FROM pending_operations WHERE op_id = ?", (existing.op_id,))
                logger.debug(f"Delete of never-synced record {record_id} cancelled queued create "
                             f"{existing.op_id}.")
                return None
            existing.kind = OperationKind.DELETE
            existing.payload = {}
            existing.changed_fields = set()
        else:
            existing.payload.update(payload)
            if existing.kind is OperationKind.UPDATE:
                existing.changed_fields |= set(payload)

        existing.revision += 1
        self._write(conn, existing)
        logger.debug(f"Coalesced {kind.value} into operation {existing.op_id} for {record_id} "
                     f"(now {existing.kind.value}, revision {existing.revision}).")
        return existing

    # --- Outcome ---
    def ack(self, op_id: str) -> bool:
        """Removes a confirmed operation. Returns False if it was no longer queued."""
        cursor = self.db.execute_query("DELETE FROM pending_operations WHERE op_id = ?", (op_id,), commit=True)
        return cursor.rowcount > 0

    def drop(self, op_id: str, reason: Optional[str] = None) -> bool:
        """Removes an operation that can never succeed (permanent remote failure)."""
        removed = self.ack(op_id)
        if removed:
            logger.warning(f"Dropped pending operation {op_id}: {reason or 'no reason given'}")
        return removed

    def fail(self, op_id: str, error: str) -> Optional[PendingOperation]:
        """Keeps the operation for a later run, recording the attempt and its error."""
        self.db.execute_query(
            """UPDATE pending_operations
                  SET attempt_count = attempt_count + 1, last_error = ?, in_flight = 0
                WHERE op_id = ?""",
            (str(error), op_id), commit=True)
        return self.get(op_id)

    def rewrite(self, op_id: str, kind: OperationKind, payload: Dict[str, Any]) -> PendingOperation:
        """
        Replaces kind and payload of an operation and clears its in-flight flag.

        Used when a create confirmed by the server was edited while in flight: the
        remaining edits become an UPDATE of the now permanent record.
        """
        kind = OperationKind(kind)
        op = self.get(op_id)
        if op is None:
            raise InputError(f"Pending operation {op_id} does not exist.")
        op.kind = kind
        op.payload = dict(payload) if kind is not OperationKind.DELETE else {}
        op.changed_fields = set(op.payload) if kind is OperationKind.UPDATE else set()
        op.revision += 1
        op.in_flight = False
        with self.db.transaction() as conn:
            self._write(conn, op)
            conn.execute("UPDATE pending_operations SET in_flight = 0 WHERE op_id = ?", (op_id,))
        return op

    # --- Dispatch Tracking ---
    def begin_dispatch(self, op_id: str) -> Optional[PendingOperation]:
        """Marks the operation as awaiting its remote call and returns its current state."""
        self.db.execute_query("UPDATE pending_operations SET in_flight = 1 WHERE op_id = ?", (op_id,), commit=True)
        return self.get(op_id)

    def end_dispatch(self, op_id: str):
        self.db.execute_query("UPDATE pending_operations SET in_flight = 0 WHERE op_id = ?", (op_id,), commit=True)

    def reset_in_flight(self) -> int:
        """Clears in-flight flags left behind by an interrupted run."""
        cursor = self.db.execute_query("UPDATE pending_operations SET in_flight = 0 WHERE in_flight = 1",
                                       commit=True)
        if cursor.rowcount:
            logger.warning(f"Cleared {cursor.rowcount} stale in-flight marker(s) from an interrupted sync run.")
        return cursor.rowcount

#
# End of Pending_Queue.py
########################################################################################################################
