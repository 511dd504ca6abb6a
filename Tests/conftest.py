# Tests/conftest.py
#
#
# Imports
import asyncio
from typing import Any, Dict, List, Optional
import pytest
#
# Third-party imports
#
# Local imports
from offline_sync.DB.Pending_Queue import PendingOperationQueue
from offline_sync.DB.Records_DB import RecordsDB
from offline_sync.models import RecordId
from offline_sync.Records.Records_Library import RecordsService
from offline_sync.remote_api.client import RemoteClient
from offline_sync.remote_api.exceptions import RemoteNotFoundError
from offline_sync.remote_api.schemas import RemoteRecord
from offline_sync.Sync.connectivity import ManualConnectivityMonitor
#
############################################################################################################################
#
# Functions:

class FakeRemoteClient(RemoteClient):
    """
    In-memory stand-in for the remote store.

    Every call is appended to `calls` as a tuple starting with the method name.
    `fail_next(method, exc)` makes the next call of that method raise `exc`.
    When `gate` is set, calls signal `entered` and wait for the gate before
    doing anything, which lets a test mutate records while a call is in flight.
    """

    def __init__(self, start_id: int = 100):
        self.server: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.next_id = start_id
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.closed = False

    def seed(self, record_id: int, **fields) -> str:
        self.server[str(record_id)] = dict(fields)
        return str(record_id)

    def fail_next(self, method: str, exc: Exception):
        self.failures.setdefault(method, []).append(exc)

    def hold_calls(self):
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    def release_calls(self):
        gate = self.gate
        self.gate = None
        if gate is not None:
            gate.set()

    def calls_of(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _record(self, key: str) -> RemoteRecord:
        return RemoteRecord.model_validate({**self.server[key], "id": int(key)})

    async def _enter(self, method: str, *args):
        self.calls.append((method, *args))
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def create(self, fields: Dict[str, Any]) -> RemoteRecord:
        await self._enter("create", dict(fields))
        self.next_id += 1
        key = str(self.next_id)
        self.server[key] = dict(fields)
        return self._record(key)

    async def update(self, record_id: RecordId, fields: Dict[str, Any]) -> Optional[RemoteRecord]:
        await self._enter("update", record_id.value, dict(fields))
        if record_id.value not in self.server:
            raise RemoteNotFoundError(404, "Record not found")
        self.server[record_id.value].update(fields)
        return self._record(record_id.value)

    async def update_field(self, record_id: RecordId, field: str, value: Any) -> Optional[RemoteRecord]:
        await self._enter("update_field", record_id.value, field, value)
        if record_id.value not in self.server:
            raise RemoteNotFoundError(404, "Record not found")
        self.server[record_id.value][field] = value
        return self._record(record_id.value)

    async def delete(self, record_id: RecordId) -> None:
        await self._enter("delete", record_id.value)
        if record_id.value not in self.server:
            raise RemoteNotFoundError(404, "Record not found")
        del self.server[record_id.value]

    async def list_records(self) -> List[RemoteRecord]:
        await self._enter("list_records")
        return [self._record(key) for key in self.server]

    async def close(self):
        self.closed = True


# --- Fixtures ---

@pytest.fixture
def client_id():
    """Provides a consistent client ID for tests."""
    return "test_client_001"


@pytest.fixture
def mem_db(client_id):
    """In-memory record store, fresh for every test."""
    db = RecordsDB(":memory:", client_id)
    yield db
    db.close_connection()


@pytest.fixture
def file_db(tmp_path, client_id):
    db = RecordsDB(tmp_path / "records.db", client_id)
    yield db
    db.close_connection()


@pytest.fixture
def queue(mem_db):
    return PendingOperationQueue(mem_db)


@pytest.fixture
def fake_remote():
    return FakeRemoteClient()


@pytest.fixture
def monitor():
    return ManualConnectivityMonitor(online=True)


@pytest.fixture
def service(mem_db, fake_remote, monitor):
    return RecordsService(mem_db, fake_remote, monitor, remote_timeout=5.0)
