# merge.py
# Description: Last-writer-wins policy for folding remote state into the local store.
#
# Imports
from typing import Any, Dict, Iterable, List, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from offline_sync.models import Record, SyncState
from offline_sync.remote_api.schemas import RemoteRecord
#
########################################################################################################################
#
# Functions:


def snapshot_to_records(remote_records: Iterable[RemoteRecord]) -> List[Record]:
    """
    Converts the authoritative list into synced local records.

    If the server lists an id twice the later entry wins.
    """
    by_key: Dict[str, Record] = {}
    for remote in remote_records:
        record_id = remote.record_id
        if record_id.key in by_key:
            logger.warning(f"Remote snapshot lists record {record_id} more than once; keeping the last entry.")
        by_key[record_id.key] = Record(id=record_id, fields=remote.fields, sync_state=SyncState.SYNCED)
    return list(by_key.values())


def resolve_create_echo(local_fields: Dict[str, Any], echo: Optional[RemoteRecord]) -> Dict[str, Any]:
    """Fields of a record whose create was confirmed: the local fields overlaid by the server's echo."""
    fields = dict(local_fields)
    if echo is not None:
        fields.update(echo.fields)
    return fields


def fields_changed_since(dispatched: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    """Fields of `current` that were added or given a different value after `dispatched` was sent."""
    return {name: value for name, value in current.items()
            if name not in dispatched or dispatched[name] != value}

#
# End of merge.py
########################################################################################################################
