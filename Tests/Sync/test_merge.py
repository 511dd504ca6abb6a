# test_merge.py
#
#
# Imports
import pytest
#
# Third-Party Imports
#
# Local Imports
from offline_sync.models import RecordId, SyncState
from offline_sync.remote_api.schemas import RemoteRecord
from offline_sync.Sync.merge import fields_changed_since, resolve_create_echo, snapshot_to_records
#
#######################################################################################################################
#
# Functions:


def _remote(**data) -> RemoteRecord:
    return RemoteRecord.model_validate(data)


def test_snapshot_records_are_synced_with_permanent_ids():
    records = snapshot_to_records([_remote(id=1, nombre="A"), _remote(id="2", nombre="B")])

    assert [r.id for r in records] == [RecordId.permanent(1), RecordId.permanent(2)]
    assert all(r.sync_state is SyncState.SYNCED for r in records)
    assert records[0].fields == {"nombre": "A"}


def test_snapshot_duplicate_ids_keep_last_entry():
    records = snapshot_to_records([_remote(id=1, nombre="first"), _remote(id="1", nombre="second")])

    assert len(records) == 1
    assert records[0].fields == {"nombre": "second"}


def test_create_echo_overrides_local_fields():
    echo = _remote(id=5, nombre="Pan", camara="normalised")
    assert resolve_create_echo({"nombre": "Pan", "camara": "1", "local_only": True}, echo) == {
        "nombre": "Pan", "camara": "normalised", "local_only": True,
    }


def test_create_echo_without_body_keeps_local_fields():
    assert resolve_create_echo({"nombre": "Pan"}, None) == {"nombre": "Pan"}


@pytest.mark.parametrize("dispatched, current, expected", [
    ({"a": 1}, {"a": 1}, {}),
    ({"a": 1}, {"a": 2}, {"a": 2}),
    ({"a": 1}, {"a": 1, "b": None}, {"b": None}),
    ({"a": 1, "b": 2}, {"a": 1, "b": 3}, {"b": 3}),
])
def test_fields_changed_since(dispatched, current, expected):
    assert fields_changed_since(dispatched, current) == expected

#
# End of test_merge.py
#######################################################################################################################
