import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RoomMessage(BaseModel):
    """Envelope published on a room's channel.

    The JSON encoding of this model is the wire format between instances.
    Sockets only ever receive the payload (see to_frame()).
    """

    model_config = ConfigDict(frozen=True)

    room_id: str = Field(min_length=1)
    payload: Any
    published_at: str = Field(default_factory=utc_now_iso)
    origin: str = ""

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, data) -> "RoomMessage":
        return cls.model_validate_json(data)

    def to_frame(self) -> str:
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload)
