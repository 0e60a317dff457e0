import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomdrop.api.routes import router
from roomdrop.cleaner import start_cleaner
from roomdrop.config import CORS_ORIGINS, ENABLE_CLEANER, STORAGE_BACKEND
from roomdrop.core.exceptions import register_exception_handlers
from roomdrop.core.metrics import metrics
from roomdrop.db import init_db

app = FastAPI(title="roomdrop API", version="1.0.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("roomdrop")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()
logger.info("Using %s object storage.", STORAGE_BACKEND)

app.include_router(router)
register_exception_handlers(app)

if ENABLE_CLEANER:
    start_cleaner(metrics, logger)
