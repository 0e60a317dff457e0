from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict


def _as_utc(value: datetime) -> datetime:
    # The database hands back naive UTC timestamps
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class RoomOut(BaseModel):
    id: str
    room_code: str
    created_at: UTCDateTime
    expires_at: UTCDateTime

    model_config = ConfigDict(from_attributes=True)


class FileOut(BaseModel):
    id: str
    room_id: str
    file_name: str
    file_path: str
    uploaded_at: UTCDateTime
    signed_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class DeleteResult(BaseModel):
    success: bool


class CleanupResult(BaseModel):
    deleted: int
