import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("roomdrop")


class RoomdropError(Exception):
    """Base error; ``status_code`` is what the API answers with."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(RoomdropError):
    status_code = 404
    default_message = "Not found"


class Expired(RoomdropError):
    status_code = 410
    default_message = "Gone"


class InvalidInput(RoomdropError):
    status_code = 400
    default_message = "Invalid input"


class Upstream(RoomdropError):
    status_code = 500
    default_message = "Upstream failure"


class RoomNotFound(NotFound):
    default_message = "Room not found"


class RoomExpired(Expired):
    default_message = "Room has expired"


class InvalidRoomCode(InvalidInput):
    default_message = "Room codes are 6 letters or digits"


class MissingFile(InvalidInput):
    default_message = "No file provided"


class UnsupportedType(InvalidInput):
    default_message = "File type not allowed. Only images and PDFs accepted."


class TooLarge(InvalidInput):
    default_message = "File too large"


class StorageError(Upstream):
    default_message = "Failed to upload file"


class PersistenceError(Upstream):
    default_message = "Database error"


class MetadataWriteFailed(PersistenceError):
    default_message = "Failed to save file metadata"


class CodeExhausted(Upstream):
    default_message = "Failed to create room"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RoomdropError)
    async def roomdrop_error_handler(request: Request, exc: RoomdropError):
        if isinstance(exc, Upstream):
            logger.error(
                "event=request_failed method=%s path=%s error=%s cause=%r",
                request.method,
                request.url.path,
                exc.message,
                exc.__cause__,
            )
        return JSONResponse({"detail": exc.message}, status_code=exc.status_code)
