# Records_Library.py
# Description: Service layer for reading and mutating records while offline, and for synchronizing them.
#
# Imports
import logging
from typing import Any, Dict, List, Optional
#
# Third-Party Imports
#
# Local Imports
from offline_sync.config import database_settings, server_settings, sync_settings
from offline_sync.DB.Pending_Queue import PendingOperationQueue
from offline_sync.DB.Records_DB import (
    InputError,
    RecordAlreadyDeletingError,
    RecordsDB,
)
from offline_sync.models import (
    STATE_FOR_OPERATION,
    OperationKind,
    PendingOperation,
    Record,
    RecordId,
    SyncReport,
    SyncState,
)
from offline_sync.remote_api.client import HTTPRemoteClient, RemoteClient
from offline_sync.Sync.connectivity import ConnectivityMonitor, ManualConnectivityMonitor
from offline_sync.Sync.Sync_Coordinator import SyncCoordinator
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


class RecordsService:
    """
    The operations offered to the application.

    Every mutation is applied to the local store right away and queued for the
    remote store in the same transaction, so it works offline and either both
    writes happen or neither does. `reconcile()` pushes the queue and pulls the
    authoritative state.
    """

    def __init__(self, db: RecordsDB, remote: RemoteClient, monitor: ConnectivityMonitor,
                 remote_timeout: float = 30.0, reconcile_on_reconnect: bool = True):
        self.db = db
        self.remote = remote
        self.monitor = monitor
        self.queue = PendingOperationQueue(db)
        self.coordinator = SyncCoordinator(db, self.queue, remote, monitor,
                                           remote_timeout=remote_timeout,
                                           reconcile_on_reconnect=reconcile_on_reconnect)
        logger.info(f"RecordsService initialized on {db.db_path_str} (client '{db.client_id}').")

    @classmethod
    def from_config(cls, config: Dict[str, Any], monitor: Optional[ConnectivityMonitor] = None,
                    remote: Optional[RemoteClient] = None) -> "RecordsService":
        db_conf = database_settings(config)
        sync_conf = sync_settings(config)
        db = RecordsDB(db_conf["path"], client_id=db_conf["client_id"])
        if remote is None:
            remote = HTTPRemoteClient(**server_settings(config))
        return cls(db, remote, monitor or ManualConnectivityMonitor(online=True),
                   remote_timeout=sync_conf["remote_timeout"],
                   reconcile_on_reconnect=sync_conf["reconcile_on_reconnect"])

    def start(self):
        """Starts reconciling on reconnect. Call from the running event loop."""
        self.coordinator.start()

    async def close(self):
        await self.coordinator.close()
        await self.remote.close()
        self.db.close_connection()

    @staticmethod
    def _validate_fields(fields: Any, allow_empty: bool = False) -> Dict[str, Any]:
        RecordsDB.encode_fields(fields)
        if not fields and not allow_empty:
            raise InputError("At least one field is required.")
        return dict(fields)

    # --- Reads ---
    def list_records(self) -> List[Record]:
        return self.db.list_records()

    def get_record(self, record_id: RecordId) -> Record:
        return self.db.get_record(record_id)

    def pending_operations(self) -> List[PendingOperation]:
        return self.queue.list_pending()

    # --- Mutations ---
    def create_record(self, fields: Dict[str, Any]) -> Record:
        """Stores a new record under a temporary id and queues its creation."""
        fields = self._validate_fields(fields, allow_empty=True)
        record_id = RecordId.temporary()
        with self.db.transaction():
            record = self.db.upsert_record(Record(id=record_id, fields=fields, sync_state=SyncState.PENDING_CREATE))
            self.queue.enqueue(record_id, OperationKind.CREATE, fields)
        logger.info(f"Created record {record_id} locally; creation queued.")
        return record

    def update_record(self, record_id: RecordId, fields: Dict[str, Any]) -> Record:
        """
        Changes fields of a record and queues the change.

        Raises:
            RecordNotFoundError: No such record.
            RecordAlreadyDeletingError: The record is pending deletion.
            InputError: `fields` is empty or not serializable.
        """
        fields = self._validate_fields(fields)
        with self.db.transaction():
            record = self.db.get_record(record_id)
            if record.sync_state is SyncState.PENDING_DELETE:
                raise RecordAlreadyDeletingError(record_id)
            record.fields.update(fields)

            op = self.queue.get_for_record(record_id)
            if op is None and record_id.is_temporary:
                # a dropped create: queue it again with everything
                op = self.queue.enqueue(record_id, OperationKind.CREATE, record.fields)
            elif op is None and record.sync_state is SyncState.PENDING_UPDATE:
                # a dropped update: resend its fields too
                payload = {name: record.fields[name] for name in record.changed_fields if name in record.fields}
                payload.update(fields)
                op = self.queue.enqueue(record_id, OperationKind.UPDATE, payload)
            else:
                op = self.queue.enqueue(record_id, OperationKind.UPDATE, fields)

            record.sync_state = STATE_FOR_OPERATION[op.kind]
            record.changed_fields = set(op.changed_fields) if op.kind is OperationKind.UPDATE else set()
            stored = self.db.upsert_record(record)
        logger.debug(f"Updated {sorted(fields)} of record {record_id}; state {stored.sync_state.value}.")
        return stored

    def update_field(self, record_id: RecordId, field: str, value: Any) -> Record:
        return self.update_record(record_id, {field: value})

    def delete_record(self, record_id: RecordId) -> Optional[Record]:
        """
        Deletes a record.

        A record the server has never seen is removed immediately, together with
        its queued create, and None is returned. Otherwise the record stays
        visible as PENDING_DELETE until the server confirms the deletion.
        """
        with self.db.transaction():
            record = self.db.get_record(record_id)
            if record.sync_state is SyncState.PENDING_DELETE:
                raise RecordAlreadyDeletingError(record_id)

            if record_id.is_temporary:
                op = self.queue.get_for_record(record_id)
                if op is None or self.queue.enqueue(record_id, OperationKind.DELETE) is None:
                    self.db.remove_record(record_id)
                    logger.info(f"Deleted never-synced record {record_id} locally.")
                    return None
            else:
                self.queue.enqueue(record_id, OperationKind.DELETE)

            record.sync_state = SyncState.PENDING_DELETE
            record.changed_fields = set()
            stored = self.db.upsert_record(record)
        logger.info(f"Record {record_id} marked for deletion.")
        return stored

    # --- Resolution of records left pending ---
    def discard_local_changes(self, record_id: RecordId) -> Optional[Record]:
        """
        Drops the queued operation of a record and gives up its local changes.

        A record the server has never seen is removed (returns None). Any other
        record goes back to SYNCED; its field values are replaced by the server's
        on the next reconciliation. A pending delete is cancelled the same way.

        Raises:
            InputError: The operation is being sent to the server right now.
        """
        with self.db.transaction():
            record = self.db.get_record(record_id)
            op = self.queue.get_for_record(record_id)
            if op is not None:
                if op.in_flight:
                    raise InputError(f"Record {record_id} is being synchronized; try again after the current run.")
                self.queue.drop(op.op_id, "local changes discarded")
            if record_id.is_temporary:
                self.db.remove_record(record_id)
                return None
            record.sync_state = SyncState.SYNCED
            record.changed_fields = set()
            return self.db.upsert_record(record)

    def retry_record(self, record_id: RecordId) -> Optional[Record]:
        """
        Queues again the operation of a record whose earlier attempt was rejected.

        Records that are synced or still have a queued operation are returned
        unchanged. A never-synced record pending deletion is removed (returns None).
        """
        with self.db.transaction():
            record = self.db.get_record(record_id)
            if record.is_synced or self.queue.get_for_record(record_id) is not None:
                return record

            if record.sync_state is SyncState.PENDING_CREATE:
                self.queue.enqueue(record_id, OperationKind.CREATE, record.fields)
            elif record.sync_state is SyncState.PENDING_UPDATE:
                changed = record.changed_fields or set(record.fields)
                payload = {name: record.fields[name] for name in changed if name in record.fields}
                if not payload:
                    record.sync_state = SyncState.SYNCED
                    return self.db.upsert_record(record)
                self.queue.enqueue(record_id, OperationKind.UPDATE, payload)
            elif record_id.is_temporary:
                self.db.remove_record(record_id)
                return None
            else:
                self.queue.enqueue(record_id, OperationKind.DELETE)
        logger.info(f"Re-queued {record.sync_state.value} for record {record_id}.")
        return record

    # --- Synchronization ---
    async def reconcile(self) -> SyncReport:
        return await self.coordinator.reconcile()

    def status_summary(self) -> Dict[str, Any]:
        summary = self.coordinator.status()
        summary["records"] = self.db.count_records_by_state()
        return summary

#
# End of Records_Library.py
#######################################################################################################################
