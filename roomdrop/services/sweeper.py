from __future__ import annotations

import logging
import time
from datetime import datetime

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Session, select

from roomdrop.core.exceptions import PersistenceError, RoomdropError
from roomdrop.models import Room, utcnow
from roomdrop.services.rooms import delete_room
from roomdrop.storage import ObjectStore

logger = logging.getLogger("roomdrop.sweeper")

MAX_RETRIES = 5
BASE_DELAY_SECONDS = 1

_TRANSIENT_ERRORS = (
    "ssl connection has been closed unexpectedly",
    "connection not found",
    "server closed the connection unexpectedly",
    "connection timed out",
    "could not connect to server",
)


def _is_transient(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _TRANSIENT_ERRORS)


def fetch_expired_room_ids(session: Session, now: datetime) -> list[str]:
    """Snapshot the ids of rooms past expiry, retrying dropped connections with backoff."""
    for attempt in range(MAX_RETRIES):
        try:
            return list(session.exec(select(Room.id).where(Room.expires_at < now)).all())
        except OperationalError as e:
            session.rollback()
            if not _is_transient(e) or attempt == MAX_RETRIES - 1:
                logger.error("event=sweep_query_failed attempt=%d error=%s", attempt + 1, e)
                raise PersistenceError("Failed to fetch expired rooms") from e
            delay = BASE_DELAY_SECONDS * (2 ** attempt)  # 1s, 2s, 4s, 8s
            logger.warning(
                "event=sweep_query_retry attempt=%d delay_seconds=%d error=%s", attempt + 1, delay, e
            )
            time.sleep(delay)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Failed to fetch expired rooms") from e


def sweep_expired_rooms(session: Session, store: ObjectStore, now: datetime | None = None) -> int:
    """Delete every room whose ``expires_at`` is before ``now``, with its files.

    Rooms are torn down one at a time; a failure on one room is logged and
    the sweep moves on. Rooms already removed by someone else are skipped.
    Returns the number of rooms this call deleted.
    """
    now = now or utcnow()
    room_ids = fetch_expired_room_ids(session, now)

    deleted = 0
    failures = 0
    for room_id in room_ids:
        try:
            if delete_room(session, store, room_id):
                deleted += 1
        except RoomdropError as exc:
            failures += 1
            session.rollback()
            logger.error("event=sweep_room_failed room_id=%s error=%s cause=%r", room_id, exc, exc.__cause__)

    if failures:
        logger.warning("event=sweep_summary deleted=%d failures=%d", deleted, failures)
    elif deleted:
        logger.info("event=sweep_summary deleted=%d", deleted)
    return deleted
