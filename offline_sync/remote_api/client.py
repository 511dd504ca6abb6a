# offline_sync/remote_api/client.py
#
#
# Imports
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote
#
# 3rd-party Libraries
import httpx
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from .exceptions import (
    APIConnectionError,
    NetworkUnavailableError,
    PermanentAPIResponseError,
    error_for_status,
)
from .schemas import RecordList, RemoteRecord
from offline_sync.models import RecordId
#
########################################################################################################################
#
# Functions:

def _require_permanent(record_id: RecordId) -> str:
    if not isinstance(record_id, RecordId):
        raise TypeError(f"Expected a RecordId, got {type(record_id).__name__}.")
    if record_id.is_temporary:
        raise ValueError(f"Temporary id {record_id} cannot be sent to the remote store.")
    return record_id.value


class RemoteClient(ABC):
    """
    Capability to talk to the authoritative remote store.

    Only permanent ids are ever accepted. Implementations raise subclasses of
    TransientRemoteError or PermanentRemoteError for every failure.
    """

    @abstractmethod
    async def create(self, fields: Dict[str, Any]) -> RemoteRecord:
        """Creates a record and returns it with its server-assigned id."""

    @abstractmethod
    async def update(self, record_id: RecordId, fields: Dict[str, Any]) -> Optional[RemoteRecord]:
        """Replaces the fields of a record. Returns the stored record if the server echoes it."""

    @abstractmethod
    async def update_field(self, record_id: RecordId, field: str, value: Any) -> Optional[RemoteRecord]:
        """Changes a single field of a record."""

    @abstractmethod
    async def delete(self, record_id: RecordId) -> None:
        ...

    @abstractmethod
    async def list_records(self) -> List[RemoteRecord]:
        """Returns the full authoritative list of records."""

    async def close(self):
        pass


class HTTPRemoteClient(RemoteClient):
    """
    JSON-over-HTTP implementation of RemoteClient.

        create        POST   {resource_path}
        update        PUT    {resource_path}/{id}
        update_field  PATCH  {resource_path}/{id}/{field}
        delete        DELETE {resource_path}/{id}
        list_records  GET    {resource_path}

    The list endpoint may answer with a bare JSON array or with an object holding
    the array under `list_key`.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 resource_path: str = "/records", list_key: str = "records",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.resource_path = "/" + resource_path.strip('/')
        self.list_key = list_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _record_path(self, record_id: RecordId, *parts: str) -> str:
        segments = [quote(_require_permanent(record_id), safe='')]
        segments.extend(quote(p, safe='') for p in parts)
        return f"{self.resource_path}/{'/'.join(segments)}"

    async def _request(self, method: str, endpoint: str,
                       json_body: Optional[Dict[str, Any]] = None) -> Union[Dict[str, Any], List[Any], None]:
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"{method} {url}")

        try:
            response = await client.request(method, endpoint, json=json_body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_detail = e.response.reason_phrase or str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    detail = response_data.get("detail") or response_data.get("message") or response_data.get("error")
                    if isinstance(detail, str):
                        error_detail = detail
            except ValueError:
                response_data = {"raw_text": e.response.text}
            raise error_for_status(e.response.status_code, error_detail, response_data) from e
        except httpx.ConnectError as e:
            raise NetworkUnavailableError(f"Cannot reach {url}: {e}") from e
        except httpx.RequestError as e:  # timeouts, read/write errors, protocol errors
            raise APIConnectionError(f"Connection error to {url}: {e}") from e

        if not response.content or not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as e:  # JSONDecodeError and UnicodeDecodeError
            raise PermanentAPIResponseError(response.status_code, "Failed to decode JSON response",
                                            response_data={"raw_text": response.text}) from e

    @staticmethod
    def _parse_record(data: Any, status_code: int = 200) -> RemoteRecord:
        try:
            return RemoteRecord.model_validate(data)
        except ValidationError as e:
            raise PermanentAPIResponseError(status_code, f"Invalid record in response: {e}",
                                            response_data=data if isinstance(data, dict) else {"raw": data}) from e

    def _maybe_record(self, data: Any) -> Optional[RemoteRecord]:
        if isinstance(data, dict) and ("id" in data or "insertId" in data):
            return self._parse_record(data)
        return None

    async def create(self, fields: Dict[str, Any]) -> RemoteRecord:
        data = await self._request("POST", self.resource_path, json_body=dict(fields))
        if not isinstance(data, dict) or ("id" not in data and "insertId" not in data):
            raise PermanentAPIResponseError(200, "Create response carries no record id",
                                            response_data=data if isinstance(data, dict) else {"raw": data})
        merged = dict(fields)
        if "id" not in data:
            # insert acknowledgement such as {"message": ..., "insertId": 7}
            merged["id"] = data["insertId"]
        else:
            merged.update(data)
        return self._parse_record(merged)

    async def update(self, record_id: RecordId, fields: Dict[str, Any]) -> Optional[RemoteRecord]:
        data = await self._request("PUT", self._record_path(record_id), json_body=dict(fields))
        return self._maybe_record(data)

    async def update_field(self, record_id: RecordId, field: str, value: Any) -> Optional[RemoteRecord]:
        data = await self._request("PATCH", self._record_path(record_id, field), json_body={field: value})
        return self._maybe_record(data)

    async def delete(self, record_id: RecordId) -> None:
        await self._request("DELETE", self._record_path(record_id))

    async def list_records(self) -> List[RemoteRecord]:
        data = await self._request("GET", self.resource_path)
        if data is None:
            return []
        if isinstance(data, dict):
            items = data.get(self.list_key)
            if not isinstance(items, list):
                raise PermanentAPIResponseError(200, f"List response has no '{self.list_key}' array",
                                                response_data=data)
            data = items
        if not isinstance(data, list):
            raise PermanentAPIResponseError(200, "List response is neither an array nor an object",
                                            response_data={"raw": data})
        try:
            return RecordList(records=data).records
        except ValidationError as e:
            raise PermanentAPIResponseError(200, f"Invalid record list: {e}", response_data={"raw": data}) from e

#
# End of offline_sync/remote_api/client.py
########################################################################################################################
