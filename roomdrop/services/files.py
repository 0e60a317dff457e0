from __future__ import annotations

import logging
import re
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from roomdrop.config import ALLOWED_CONTENT_TYPES, MAX_FILE_SIZE, SIGNED_URL_TTL_SECONDS
from roomdrop.core.exceptions import (
    MetadataWriteFailed,
    PersistenceError,
    StorageError,
    TooLarge,
    UnsupportedType,
)
from roomdrop.models import File, utcnow
from roomdrop.storage import ObjectStore

logger = logging.getLogger("roomdrop")

MAX_FILE_SIZE_MB = MAX_FILE_SIZE / (1024 * 1024)
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name)


def build_file_path(room_id: str, file_name: str, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    return f"rooms/{room_id}/{timestamp_ms}_{sanitize_filename(file_name)}"


def signed_url_for(store: ObjectStore, file_path: str) -> str | None:
    try:
        return store.sign(file_path, SIGNED_URL_TTL_SECONDS)
    except StorageError as exc:
        logger.warning("event=sign_failure file_path=%s error=%s", file_path, exc)
        return None


def list_files(session: Session, room_id: str) -> list[File]:
    """Files of a room, newest first."""
    try:
        stmt = select(File).where(File.room_id == room_id).order_by(File.uploaded_at.desc())
        return list(session.exec(stmt).all())
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to fetch files") from exc


def validate_upload(size_bytes: int, declared_name: str, declared_type: str) -> None:
    if declared_type not in ALLOWED_CONTENT_TYPES:
        logger.warning(
            "event=upload_rejected reason=content_type filename=%s content_type=%s",
            declared_name,
            declared_type,
        )
        raise UnsupportedType()
    if size_bytes > MAX_FILE_SIZE:
        logger.warning(
            "event=upload_rejected reason=max_size filename=%s size_bytes=%s limit_bytes=%s",
            declared_name,
            size_bytes,
            MAX_FILE_SIZE,
        )
        raise TooLarge(f"File too large. Max {MAX_FILE_SIZE_MB:g}MB.")


def upload_file(
    session: Session,
    store: ObjectStore,
    room_id: str,
    data: bytes,
    declared_name: str,
    declared_type: str,
) -> tuple[File, str | None]:
    """Store an uploaded file for a room and return its record with a signed URL.

    The bytes are written first and the metadata row second. If the row
    cannot be written, the stored object is removed again before
    :class:`MetadataWriteFailed` is raised, so callers never see a row
    without bytes. The signed URL is ``None`` when signing fails.
    """
    validate_upload(len(data), declared_name, declared_type)

    file_path = build_file_path(room_id, declared_name)
    store.put(file_path, data, declared_type)

    record = File(
        room_id=room_id,
        file_name=declared_name,
        file_path=file_path,
        uploaded_at=utcnow(),
    )
    try:
        session.add(record)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("event=metadata_write_failure room_id=%s file_path=%s error=%s", room_id, file_path, exc)
        try:
            store.delete(file_path)
            logger.info("event=compensating_delete file_path=%s", file_path)
        except StorageError as cleanup_exc:
            logger.error("event=compensating_delete_failure file_path=%s error=%s", file_path, cleanup_exc)
        raise MetadataWriteFailed() from exc

    # The row is committed from here on, so its bytes must stay
    try:
        session.refresh(record)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("event=metadata_refresh_failure room_id=%s file_path=%s error=%s", room_id, file_path, exc)
        raise PersistenceError("Failed to load file metadata") from exc

    logger.info(
        "event=upload_success room_id=%s file_id=%s file_path=%s size_bytes=%s content_type=%s",
        room_id,
        record.id,
        file_path,
        len(data),
        declared_type,
    )
    return record, signed_url_for(store, file_path)


def delete_files_for_room(session: Session, store: ObjectStore, room_id: str) -> int:
    """Remove every stored object and metadata row of a room.

    Object deletion is best effort: failures are logged and skipped. Rows are
    deleted in the caller's transaction; the caller commits.
    """
    records = session.exec(select(File).where(File.room_id == room_id)).all()
    if not records:
        return 0

    failed = store.delete_many([f.file_path for f in records])
    if failed:
        logger.warning("event=room_objects_left room_id=%s count=%d", room_id, len(failed))

    for record in records:
        session.delete(record)
    session.flush()
    return len(records)
