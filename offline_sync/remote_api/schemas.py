# offline_sync/remote_api/schemas.py
from typing import Any, Dict, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from offline_sync.models import RecordId


# --- Records as returned by the server ---
class RemoteRecord(BaseModel):
    """
    A record in the authoritative store. Everything other than the id is a field.

    Some servers answer a create with `insertId` instead of `id`; both are accepted.
    """
    model_config = ConfigDict(extra="allow")

    id: Union[int, str]

    @model_validator(mode="before")
    @classmethod
    def _accept_insert_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and "insertId" in data:
            data = dict(data)
            data["id"] = data.pop("insertId")
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id_not_blank(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("Record id must be a number or a string")
        if isinstance(value, str) and not value.strip():
            raise ValueError("Record id cannot be empty")
        return value

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    @property
    def record_id(self) -> RecordId:
        return RecordId.permanent(self.id)


class RecordList(BaseModel):
    records: List[RemoteRecord] = Field(default_factory=list)

#
# End of offline_sync/remote_api/schemas.py
########################################################################################################################
