from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from roomdrop.config import ROOM_EXPIRY_MINUTES
from roomdrop.core.exceptions import (
    CodeExhausted,
    InvalidRoomCode,
    PersistenceError,
    RoomExpired,
    RoomNotFound,
)
from roomdrop.models import Room, utcnow
from roomdrop.services.files import delete_files_for_room
from roomdrop.storage import ObjectStore

logger = logging.getLogger("roomdrop")

# No I, O, 0 or 1: codes get read aloud and typed by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10
_CODE_PATTERN = re.compile(r"[A-Z0-9]{6}")


class RoomState(NamedTuple):
    room: Room
    expired: bool


def generate_room_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not _CODE_PATTERN.fullmatch(normalized):
        raise InvalidRoomCode()
    return normalized


def _code_taken(session: Session, code: str) -> bool:
    return session.exec(select(Room.id).where(Room.room_code == code)).first() is not None


def create_room(session: Session, now: datetime | None = None) -> Room:
    """Create a room with a fresh code, expiring ``ROOM_EXPIRY_MINUTES`` from ``now``.

    The existence check only saves a round trip; the unique constraint on
    ``room_code`` is what guarantees uniqueness. An insert that loses a race
    to a concurrent create is retried like any other collision.
    """
    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_room_code()
        try:
            if _code_taken(session, code):
                logger.info("event=room_code_collision attempt=%d", attempt)
                continue
            created_at = now or utcnow()
            room = Room(
                room_code=code,
                created_at=created_at,
                expires_at=created_at + timedelta(minutes=ROOM_EXPIRY_MINUTES),
            )
            session.add(room)
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("event=room_code_collision attempt=%d source=constraint", attempt)
            continue
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("Failed to create room") from exc

        session.refresh(room)
        logger.info("event=room_created room_id=%s code=%s expires_at=%s", room.id, code, room.expires_at)
        return room

    logger.error("event=room_code_exhausted attempts=%d", MAX_CODE_ATTEMPTS)
    raise CodeExhausted()


def get_room(session: Session, code: str) -> Room:
    """Look up a room by code, expired or not."""
    normalized = normalize_room_code(code)
    try:
        room = session.exec(select(Room).where(Room.room_code == normalized)).first()
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to load room") from exc
    if room is None:
        raise RoomNotFound()
    return room


def resolve_room_for_display(session: Session, code: str, now: datetime | None = None) -> RoomState:
    room = get_room(session, code)
    return RoomState(room=room, expired=room.is_expired(now))


def resolve_room_for_mutation(session: Session, code: str, now: datetime | None = None) -> Room:
    """Like :func:`get_room`, but an expired room is refused even before the sweep removes it."""
    room = get_room(session, code)
    if room.is_expired(now):
        raise RoomExpired()
    return room


def delete_room(session: Session, store: ObjectStore, room_id: str) -> bool:
    """Tear down a room and its files. Returns False if the room was already gone."""
    try:
        room = session.get(Room, room_id)
        if room is None:
            return False
        code = room.room_code
        delete_files_for_room(session, store, room_id)
        session.delete(room)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError("Failed to delete room") from exc
    logger.info("event=room_deleted room_id=%s code=%s", room_id, code)
    return True
