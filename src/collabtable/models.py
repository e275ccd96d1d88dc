"""Wire models shared by the server and the client.

Attributes are snake_case in Python and camelCase on the wire, so every
model accepts either spelling and dumps with ``by_alias=True``.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class CollabList(WireModel):
    id: str
    name: str
    created_at: int
    updated_at: int
    is_deleted: bool = False


class Field(WireModel):
    id: str
    list_id: str
    name: str
    field_type: str = "TEXT"
    field_options: str | None = ""
    order: int = 0
    alignment: str = "start"
    created_at: int
    updated_at: int
    is_deleted: bool = False


class Item(WireModel):
    id: str
    list_id: str
    created_at: int
    updated_at: int
    is_deleted: bool = False


class ItemValue(WireModel):
    id: str
    item_id: str
    field_id: str
    value: str | None = ""
    updated_at: int


class SyncRequest(WireModel):
    last_sync_timestamp: int = 0
    lists: list[CollabList] = PydanticField(default_factory=list)
    fields: list[Field] = PydanticField(default_factory=list)
    items: list[Item] = PydanticField(default_factory=list)
    item_values: list[ItemValue] = PydanticField(default_factory=list)

    def counts(self) -> tuple[int, int, int, int]:
        return len(self.lists), len(self.fields), len(self.items), len(self.item_values)

    def is_empty(self) -> bool:
        return not any(self.counts())


class SyncResponse(WireModel):
    lists: list[CollabList] = PydanticField(default_factory=list)
    fields: list[Field] = PydanticField(default_factory=list)
    items: list[Item] = PydanticField(default_factory=list)
    item_values: list[ItemValue] = PydanticField(default_factory=list)
    server_timestamp: int

    def counts(self) -> tuple[int, int, int, int]:
        return len(self.lists), len(self.fields), len(self.items), len(self.item_values)


class NotificationEvent(WireModel):
    id: str
    device_id_origin: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    list_id: str | None = None
    created_at: int


class PollResponse(WireModel):
    notifications: list[NotificationEvent] = PydanticField(default_factory=list)
    server_timestamp: int


class MessageEnvelope(WireModel):
    """Frame used on the real-time socket: ``{id, type, payload}``."""
    id: str | None = None
    type: str
    payload: Any = None
