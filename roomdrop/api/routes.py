from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from sqlmodel import Session, select

from roomdrop.config import CLEANUP_API_KEY, RATE_LIMIT_PER_MINUTE, STORAGE_BACKEND
from roomdrop.core.exceptions import InvalidInput, MissingFile, RoomExpired, StorageError
from roomdrop.core.metrics import metrics
from roomdrop.core.rate_limit import RateLimiter
from roomdrop.db import ensure_connection, get_session
from roomdrop.models import File as FileModel
from roomdrop.schemas import CleanupResult, DeleteResult, FileOut, RoomOut
from roomdrop.services.files import list_files, signed_url_for, upload_file
from roomdrop.services.rooms import (
    create_room,
    delete_room,
    get_room,
    resolve_room_for_display,
    resolve_room_for_mutation,
)
from roomdrop.services.stats import fetch_room_totals
from roomdrop.services.sweeper import sweep_expired_rooms
from roomdrop.storage import LocalObjectStore, ObjectStore, get_object_store

router = APIRouter()

logger = logging.getLogger("roomdrop")

room_rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE, scope="rooms")
upload_rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE, scope="uploads")
metrics_rate_limiter = RateLimiter(RATE_LIMIT_PER_MINUTE, scope="metrics")


def _check_rate_limit(limiter: RateLimiter, request: Request) -> None:
    client = request.client.host if request.client else "unknown"
    allowed, retry_after = limiter.hit(client)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )


async def limit_room_creation(request: Request):
    _check_rate_limit(room_rate_limiter, request)


async def limit_uploads(request: Request):
    _check_rate_limit(upload_rate_limiter, request)


async def limit_metrics(request: Request):
    _check_rate_limit(metrics_rate_limiter, request)


def require_cleanup_key(request: Request):
    """When CLEANUP_API_KEY is set, the sweep endpoint needs it in a header or query parameter."""
    if not CLEANUP_API_KEY:
        return None

    api_key = request.headers.get("x-api-key") or request.query_params.get("api_key")
    if api_key != CLEANUP_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key


def _file_out(record: FileModel, signed_url: str | None) -> FileOut:
    return FileOut(**record.model_dump(), signed_url=signed_url)


@router.post("/rooms", status_code=201, response_model=RoomOut, dependencies=[Depends(limit_room_creation)])
def create_room_endpoint(session: Session = Depends(get_session)):
    room = create_room(session)
    metrics.record_room_created()
    return room


@router.get("/rooms/{code}", response_model=RoomOut)
def get_room_endpoint(code: str, session: Session = Depends(get_session)):
    state = resolve_room_for_display(session, code)
    if state.expired:
        raise RoomExpired()
    return state.room


@router.delete("/rooms/{code}", response_model=DeleteResult)
def delete_room_endpoint(
    code: str,
    session: Session = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    room = get_room(session, code)
    if delete_room(session, store, room.id):
        metrics.record_room_deleted()
    return {"success": True}


@router.get("/rooms/{code}/files", response_model=list[FileOut])
def list_room_files(
    code: str,
    session: Session = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    room = get_room(session, code)
    return [_file_out(f, signed_url_for(store, f.file_path)) for f in list_files(session, room.id)]


@router.post(
    "/rooms/{code}/files",
    status_code=201,
    response_model=FileOut,
    dependencies=[Depends(limit_uploads)],
)
async def upload_to_room(
    code: str,
    file: UploadFile | None = File(None),
    session: Session = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    room = resolve_room_for_mutation(session, code)
    if file is None or not file.filename:
        raise MissingFile()

    data = await file.read()
    try:
        record, signed_url = upload_file(
            session,
            store,
            room.id,
            data,
            file.filename,
            file.content_type or "application/octet-stream",
        )
    except InvalidInput:
        metrics.record_rejection()
        raise

    metrics.record_upload(len(data))
    return _file_out(record, signed_url)


@router.post("/cleanup", response_model=CleanupResult, dependencies=[Depends(require_cleanup_key)])
def cleanup(
    session: Session = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    deleted = sweep_expired_rooms(session, store)
    metrics.record_sweep(deleted)
    logger.info("event=cleanup_deleted count=%s source=api", deleted)
    return {"deleted": deleted}


@router.get("/objects/{key:path}", include_in_schema=False)
def serve_object(
    key: str,
    expires: int = 0,
    signature: str = "",
    session: Session = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    # Only the local backend hands out links to this app; S3 links go to the bucket
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(status_code=404, detail="Not found")
    if not store.verify(key, expires, signature):
        raise HTTPException(status_code=403, detail="Link is invalid or has expired")
    try:
        path = store.path_for(key)
    except StorageError:
        raise HTTPException(status_code=404, detail="Not found")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Not found")

    record = session.exec(select(FileModel).where(FileModel.file_path == key)).first()
    filename = record.file_name if record else path.name
    logger.info("event=object_served key=%s", key)

    response = FileResponse(path, filename=filename, content_disposition_type="inline")
    response.headers["Cache-Control"] = "private, no-store"
    return response


@router.get("/metrics", dependencies=[Depends(limit_metrics)])
def metrics_snapshot(session: Session = Depends(get_session)):
    payload = {**metrics.snapshot(), **fetch_room_totals(session)}
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.get("/health")
def health():
    return {
        "status": "ok" if ensure_connection() else "degraded",
        "storage": STORAGE_BACKEND,
    }
