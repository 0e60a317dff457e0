from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # Stored naive; every timestamp in the database is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid4())


class Room(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    room_code: str = Field(max_length=6, unique=True, index=True)  # unique across all rows, expired or not
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    expires_at: datetime = Field(index=True, sa_type=DateTime())

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class File(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    room_id: str = Field(foreign_key="room.id", index=True, ondelete="CASCADE")
    file_name: str  # client supplied, display only
    file_path: str = Field(unique=True)
    uploaded_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime())
