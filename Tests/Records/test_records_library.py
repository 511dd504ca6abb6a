# test_records_library.py
#
#
# Imports
import pytest
#
# Third-Party Imports
#
# Local Imports
from offline_sync.DB.Records_DB import (
    InputError,
    RecordAlreadyDeletingError,
    RecordNotFoundError,
    StorageIOError,
)
from offline_sync.models import OperationKind, Record, RecordId, SyncState, SyncStatus
from offline_sync.Records.Records_Library import RecordsService
from offline_sync.remote_api.client import HTTPRemoteClient
#
#######################################################################################################################
#
# Functions:


@pytest.fixture
def synced(mem_db):
    """A record already confirmed by the server."""
    return mem_db.upsert_record(Record(id=RecordId.permanent(3), fields={"nombre": "Queso", "camara": "1"}))


class TestCreate:
    def test_create_is_local_and_queued(self, service):
        record = service.create_record({"nombre": "Pan", "camara": "2"})

        assert record.id.is_temporary
        assert record.sync_state is SyncState.PENDING_CREATE
        assert service.get_record(record.id).fields == {"nombre": "Pan", "camara": "2"}
        [op] = service.pending_operations()
        assert op.kind is OperationKind.CREATE
        assert op.record_id == record.id

    def test_create_with_invalid_fields(self, service):
        with pytest.raises(InputError):
            service.create_record({"": "no name"})
        assert service.list_records() == []
        assert service.pending_operations() == []

    def test_create_is_atomic(self, service, mocker):
        mocker.patch.object(service.queue, "enqueue", side_effect=StorageIOError("disk full"))
        with pytest.raises(StorageIOError):
            service.create_record({"nombre": "Pan"})
        assert service.list_records() == []


class TestUpdate:
    def test_update_synced_record(self, service, synced):
        updated = service.update_field(synced.id, "camara", "4")

        assert updated.fields == {"nombre": "Queso", "camara": "4"}
        assert updated.sync_state is SyncState.PENDING_UPDATE
        assert updated.changed_fields == {"camara"}
        [op] = service.pending_operations()
        assert (op.kind, op.payload) == (OperationKind.UPDATE, {"camara": "4"})

    def test_update_of_unsynced_record_stays_create(self, service):
        record = service.create_record({"nombre": "Pan"})
        updated = service.update_record(record.id, {"camara": "2"})

        assert updated.sync_state is SyncState.PENDING_CREATE
        assert updated.changed_fields == set()
        [op] = service.pending_operations()
        assert op.kind is OperationKind.CREATE
        assert op.payload == {"nombre": "Pan", "camara": "2"}

    def test_update_requires_fields(self, service, synced):
        with pytest.raises(InputError):
            service.update_record(synced.id, {})

    def test_update_missing_record(self, service):
        with pytest.raises(RecordNotFoundError):
            service.update_field(RecordId.permanent(999), "camara", "1")

    def test_update_after_delete_is_rejected(self, service, synced):
        service.delete_record(synced.id)
        with pytest.raises(RecordAlreadyDeletingError):
            service.update_field(synced.id, "camara", "9")
        [op] = service.pending_operations()
        assert op.kind is OperationKind.DELETE

    def test_update_is_atomic(self, service, synced, mocker):
        mocker.patch.object(service.queue, "enqueue", side_effect=StorageIOError("disk full"))
        with pytest.raises(StorageIOError):
            service.update_field(synced.id, "camara", "4")
        assert service.get_record(synced.id).fields["camara"] == "1"
        assert service.get_record(synced.id).sync_state is SyncState.SYNCED


class TestDelete:
    def test_delete_synced_record_waits_for_server(self, service, synced):
        deleted = service.delete_record(synced.id)

        assert deleted.sync_state is SyncState.PENDING_DELETE
        assert service.get_record(synced.id).sync_state is SyncState.PENDING_DELETE
        [op] = service.pending_operations()
        assert op.kind is OperationKind.DELETE

    def test_delete_unsynced_record_cancels_create(self, service):
        record = service.create_record({"nombre": "Pan"})

        assert service.delete_record(record.id) is None
        assert service.list_records() == []
        assert service.pending_operations() == []

    def test_delete_replaces_pending_update(self, service, synced):
        service.update_field(synced.id, "camara", "4")
        service.delete_record(synced.id)

        [op] = service.pending_operations()
        assert op.kind is OperationKind.DELETE
        assert op.payload == {}

    def test_delete_twice_is_rejected(self, service, synced):
        service.delete_record(synced.id)
        with pytest.raises(RecordAlreadyDeletingError):
            service.delete_record(synced.id)

    def test_delete_while_create_in_flight(self, service):
        record = service.create_record({"nombre": "Pan"})
        [op] = service.pending_operations()
        service.queue.begin_dispatch(op.op_id)

        deleted = service.delete_record(record.id)

        assert deleted.sync_state is SyncState.PENDING_DELETE
        assert service.queue.get(op.op_id).kind is OperationKind.DELETE


class TestResolution:
    def test_discard_update_returns_to_synced(self, service, synced):
        service.update_field(synced.id, "camara", "4")
        restored = service.discard_local_changes(synced.id)

        assert restored.sync_state is SyncState.SYNCED
        assert service.pending_operations() == []

    def test_discard_unsynced_record_removes_it(self, service):
        record = service.create_record({"nombre": "Pan"})
        assert service.discard_local_changes(record.id) is None
        assert service.list_records() == []

    def test_discard_in_flight_is_rejected(self, service, synced):
        service.update_field(synced.id, "camara", "4")
        [op] = service.pending_operations()
        service.queue.begin_dispatch(op.op_id)

        with pytest.raises(InputError):
            service.discard_local_changes(synced.id)
        assert service.queue.get(op.op_id) is not None

    def test_retry_requeues_dropped_update(self, service, synced):
        service.update_record(synced.id, {"camara": "4", "nombre": "Queso azul"})
        [op] = service.pending_operations()
        service.queue.drop(op.op_id, "422 rejected")

        service.retry_record(synced.id)

        [retried] = service.pending_operations()
        assert retried.kind is OperationKind.UPDATE
        assert retried.payload == {"camara": "4", "nombre": "Queso azul"}
        assert retried.attempt_count == 0

    def test_retry_requeues_dropped_create(self, service):
        record = service.create_record({"nombre": "Pan"})
        [op] = service.pending_operations()
        service.queue.drop(op.op_id, "422 rejected")

        service.retry_record(record.id)
        [retried] = service.pending_operations()
        assert (retried.kind, retried.payload) == (OperationKind.CREATE, {"nombre": "Pan"})

    def test_update_after_dropped_update_resends_all_changes(self, service, synced):
        service.update_field(synced.id, "camara", "4")
        [op] = service.pending_operations()
        service.queue.drop(op.op_id, "422 rejected")

        service.update_field(synced.id, "nombre", "Queso azul")
        [requeued] = service.pending_operations()
        assert requeued.payload == {"camara": "4", "nombre": "Queso azul"}

    def test_retry_of_synced_record_does_nothing(self, service, synced):
        assert service.retry_record(synced.id).is_synced
        assert service.pending_operations() == []

    def test_retry_of_orphaned_unsynced_delete_removes_record(self, service):
        record = service.create_record({"nombre": "Pan"})
        [op] = service.pending_operations()
        service.queue.begin_dispatch(op.op_id)
        service.delete_record(record.id)
        service.queue.drop(op.op_id, "rejected")

        assert service.retry_record(record.id) is None
        assert service.list_records() == []


class TestServiceSurface:
    @pytest.mark.asyncio
    async def test_reconcile_and_status_summary(self, service, fake_remote, monitor):
        fake_remote.seed(1, nombre="Leche")
        service.create_record({"nombre": "Pan"})

        report = await service.reconcile()

        assert report.status is SyncStatus.COMPLETED
        summary = service.status_summary()
        assert summary["state"] == "idle"
        assert summary["online"] is True
        assert summary["pending_operations"] == 0
        assert summary["records"]["synced"] == 2
        assert summary["last_report"]["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_close_releases_remote(self, service, fake_remote):
        await service.close()
        assert fake_remote.closed

    def test_from_config(self, fake_remote):
        config = {
            "database": {"path": ":memory:", "client_id": "from_config_client"},
            "sync": {"remote_timeout": "12.5", "reconcile_on_reconnect": "false"},
        }
        service = RecordsService.from_config(config, remote=fake_remote)
        try:
            assert service.db.client_id == "from_config_client"
            assert service.remote is fake_remote
            assert service.coordinator.remote_timeout == 12.5
            assert service.coordinator.reconcile_on_reconnect is False
            assert service.monitor.is_online
        finally:
            service.db.close_connection()

    def test_from_config_builds_http_client(self):
        config = {
            "database": {"path": ":memory:"},
            "server": {"url": "http://example.test/", "token": "abc", "timeout": 3},
        }
        service = RecordsService.from_config(config)
        try:
            assert isinstance(service.remote, HTTPRemoteClient)
            assert service.remote.base_url == "http://example.test"
            assert service.remote.token == "abc"
            assert service.remote.timeout == 3.0
        finally:
            service.db.close_connection()

#
# End of test_records_library.py
#######################################################################################################################
