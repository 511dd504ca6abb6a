# Sync_Coordinator.py
# Description: Drains the pending operation queue against the remote store and merges the remote snapshot back.
#
"""
Sync_Coordinator.py
-------------------

`SyncCoordinator.reconcile()` runs one reconciliation:

1. If the connectivity monitor reports offline, return an OFFLINE report.
2. Dispatch every pending operation, oldest first, one at a time. Transient
   failures stay queued for a later run, permanent failures are dropped and
   reported. A confirmed create re-keys the record from its temporary id to the
   server-assigned one.
3. Fetch the authoritative record list and merge it into the local store.
   Records with a pending state are never touched by the merge.

Only one run can be active at a time; a call made during a run returns an
ALREADY_RUNNING report instead of waiting. Local mutations are plain SQLite
transactions, so they interleave with a run at its await points (the remote
calls). An operation that is coalesced while its remote call is in flight is
detected through its `revision` and its newer intent is kept.
"""
# Imports
import asyncio
import time
from typing import Callable, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from offline_sync.DB.Pending_Queue import PendingOperationQueue
from offline_sync.DB.Records_DB import RecordsDB
from offline_sync.models import (
    CoordinatorState,
    OperationKind,
    PendingOperation,
    Record,
    SyncError,
    SyncReport,
    SyncState,
    SyncStatus,
)
from offline_sync.remote_api.client import RemoteClient
from offline_sync.remote_api.exceptions import (
    APIConnectionError,
    RemoteNotFoundError,
    SyncAPIError,
    TransientRemoteError,
)
from offline_sync.remote_api.schemas import RemoteRecord
from offline_sync.Sync.connectivity import ConnectivityChange, ConnectivityMonitor
from offline_sync.Sync.merge import fields_changed_since, resolve_create_echo, snapshot_to_records
#
########################################################################################################################
#
# Functions:


class SyncCoordinator:
    def __init__(self, db: RecordsDB, queue: PendingOperationQueue, remote: RemoteClient,
                 monitor: ConnectivityMonitor, remote_timeout: float = 30.0, reconcile_on_reconnect: bool = True):
        self.db = db
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.remote_timeout = remote_timeout
        self.reconcile_on_reconnect = reconcile_on_reconnect

        self.state = CoordinatorState.IDLE
        self.last_report: Optional[SyncReport] = None
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._trigger_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---
    def start(self):
        """
        Subscribes to connectivity changes. Must be called from the event loop
        that should run reconciliations triggered by reconnects.
        """
        if self._unsubscribe is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)
        logger.debug("SyncCoordinator subscribed to connectivity changes.")

    async def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._trigger_task
        if task is not None and not task.done():
            await task
        self._trigger_task = None

    def _on_connectivity_change(self, change: ConnectivityChange):
        if not change.came_online or not self.reconcile_on_reconnect:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule_reconcile()
        else:
            loop.call_soon_threadsafe(self._schedule_reconcile)

    def _schedule_reconcile(self):
        if self._trigger_task is not None and not self._trigger_task.done():
            logger.debug("Reconnect reconciliation already scheduled.")
            return
        logger.info("Connectivity restored; scheduling reconciliation.")
        self._trigger_task = self._loop.create_task(self._triggered_reconcile())

    async def _triggered_reconcile(self):
        try:
            await self.reconcile()
        except Exception as e:
            logger.opt(exception=True).error(f"Reconciliation triggered by reconnect failed: {e}")

    # --- Reconciliation ---
    async def reconcile(self) -> SyncReport:
        if self._lock.locked():
            logger.info("Reconciliation already in progress; not starting another.")
            return SyncReport(status=SyncStatus.ALREADY_RUNNING)

        async with self._lock:
            self.state = CoordinatorState.RUNNING
            try:
                report = await self._run()
            finally:
                self.state = CoordinatorState.IDLE
        self.last_report = report
        return report

    async def _run(self) -> SyncReport:
        started = time.monotonic()
        if not self.monitor.is_online:
            logger.info("Offline; reconciliation skipped.")
            return SyncReport(status=SyncStatus.OFFLINE)

        report = SyncReport(status=SyncStatus.COMPLETED)
        self.queue.reset_in_flight()
        pending = self.queue.list_pending()
        logger.info(f"Reconciliation started with {len(pending)} pending operation(s).")

        for queued in pending:
            await self._dispatch(queued, report)

        try:
            remote_records = await asyncio.wait_for(self.remote.list_records(), self.remote_timeout)
        except asyncio.TimeoutError:
            report.errors.append(SyncError(message=f"Fetching the remote snapshot timed out after "
                                                   f"{self.remote_timeout}s", transient=True))
            logger.warning("Remote snapshot fetch timed out; merge skipped.")
        except SyncAPIError as e:
            report.errors.append(SyncError(message=str(e), transient=isinstance(e, TransientRemoteError)))
            logger.warning(f"Remote snapshot fetch failed; merge skipped: {e}")
        else:
            report.merge_stats = self.db.replace_all(snapshot_to_records(remote_records))
            report.merged = True

        report.duration_ms = round((time.monotonic() - started) * 1000, 3)
        logger.info(f"Reconciliation finished: {report.succeeded} succeeded, {report.failed} failed, "
                    f"merged={report.merged} ({report.duration_ms} ms).")
        return report

    async def _dispatch(self, queued: PendingOperation, report: SyncReport):
        current = self.queue.get(queued.op_id)
        if current is None:
            # cancelled by a local mutation since the run started
            return
        if current.record_id.is_temporary and current.kind is not OperationKind.CREATE:
            # create never confirmed, then deleted: nothing exists remotely to delete
            logger.info(f"Discarding {current.kind.value} for never-synced record {current.record_id}.")
            self.db.remove_record(current.record_id)
            return

        op = self.queue.begin_dispatch(current.op_id)
        logger.debug(f"Dispatching {op.kind.value} {op.op_id} for {op.record_id} (attempt {op.attempt_count + 1}).")
        try:
            echo = await asyncio.wait_for(self._call_remote(op), self.remote_timeout)
        except asyncio.TimeoutError:
            self._on_failure(op, APIConnectionError(f"Remote call timed out after {self.remote_timeout}s"), report)
        except SyncAPIError as e:
            self._on_failure(op, e, report)
        except BaseException:
            self.queue.end_dispatch(op.op_id)
            raise
        else:
            self._on_success(op, echo, report)

    async def _call_remote(self, op: PendingOperation) -> Optional[RemoteRecord]:
        if op.kind is OperationKind.CREATE:
            return await self.remote.create(op.payload)
        if op.kind is OperationKind.DELETE:
            await self.remote.delete(op.record_id)
            return None
        if len(op.changed_fields) == 1:
            (name,) = op.changed_fields
            return await self.remote.update_field(op.record_id, name, op.payload[name])
        record = self.db.get_record(op.record_id)
        return await self.remote.update(op.record_id, record.fields)

    def _on_success(self, dispatched: PendingOperation, echo: Optional[RemoteRecord], report: SyncReport):
        with self.db.transaction():
            current = self.queue.get(dispatched.op_id)
            coalesced = current is not None and current.revision != dispatched.revision

            if dispatched.kind is OperationKind.CREATE:
                self._confirm_create(dispatched, current, echo)
            elif dispatched.kind is OperationKind.UPDATE:
                if coalesced:
                    # newer local intent (more edits or a delete) stays queued
                    self.queue.end_dispatch(dispatched.op_id)
                else:
                    record = self.db.get_record(dispatched.record_id)
                    self._mark_synced(record, resolve_create_echo(record.fields, echo))
                    self.queue.ack(dispatched.op_id)
            else:
                self.db.remove_record(dispatched.record_id)
                self.queue.ack(dispatched.op_id)
        report.succeeded += 1
        logger.debug(f"{dispatched.kind.value} {dispatched.op_id} for {dispatched.record_id} confirmed.")

    def _confirm_create(self, dispatched: PendingOperation, current: Optional[PendingOperation],
                        echo: Optional[RemoteRecord]):
        if echo is None:
            raise ValueError("A confirmed create must return the created record.")
        local = self.db.reassign_record_id(dispatched.record_id, echo.record_id)

        if current is None or current.revision == dispatched.revision:
            self._mark_synced(local, resolve_create_echo(local.fields, echo))
            if current is not None:
                self.queue.ack(current.op_id)
            return

        if current.kind is OperationKind.DELETE:
            # record is PENDING_DELETE already; the op now names the permanent id
            self.queue.end_dispatch(current.op_id)
            return

        changes = fields_changed_since(dispatched.payload, current.payload)
        if not changes:
            self._mark_synced(local, resolve_create_echo(local.fields, echo))
            self.queue.ack(current.op_id)
            return
        self.queue.rewrite(current.op_id, OperationKind.UPDATE, changes)
        local.sync_state = SyncState.PENDING_UPDATE
        local.changed_fields = set(changes)
        self.db.upsert_record(local)
        logger.info(f"Record {local.id} was edited while its create was in flight; "
                    f"{sorted(changes)} queued as an update.")

    def _mark_synced(self, record: Record, fields: dict):
        record.fields = fields
        record.sync_state = SyncState.SYNCED
        record.changed_fields = set()
        self.db.upsert_record(record)

    def _on_failure(self, dispatched: PendingOperation, error: Exception, report: SyncReport):
        if dispatched.kind is OperationKind.DELETE and isinstance(error, RemoteNotFoundError):
            logger.info(f"Record {dispatched.record_id} was already gone remotely; delete treated as confirmed.")
            self._on_success(dispatched, None, report)
            return

        current = self.queue.get(dispatched.op_id)
        if (dispatched.kind is OperationKind.CREATE and current is not None
                and current.kind is OperationKind.DELETE):
            report.cancelled += 1
            logger.warning(f"Create of {dispatched.record_id} failed after a local delete; removing it locally. "
                           f"If the server stored it anyway the next snapshot brings it back: {error}")
            self.db.remove_record(dispatched.record_id)
            return

        transient = isinstance(error, TransientRemoteError)
        coalesced = current is not None and current.revision != dispatched.revision
        report.failed += 1
        report.errors.append(SyncError(message=str(error), transient=transient, record_id=dispatched.record_id,
                                       op_id=dispatched.op_id, kind=dispatched.kind))
        if transient or coalesced:
            self.queue.fail(dispatched.op_id, str(error))
            logger.warning(f"{dispatched.kind.value} for {dispatched.record_id} failed, kept for retry: {error}")
        else:
            self.queue.drop(dispatched.op_id, str(error))
            logger.error(f"{dispatched.kind.value} for {dispatched.record_id} rejected by the server: {error}")

    # --- Introspection ---
    def status(self) -> dict:
        return {
            "state": self.state.value,
            "online": self.monitor.is_online,
            "pending_operations": self.queue.count(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

#
# End of Sync_Coordinator.py
########################################################################################################################
