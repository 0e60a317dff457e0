import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


DB_URL = os.getenv("DB_URL", "sqlite:///./roomdrop.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

ROOM_EXPIRY_MINUTES = int(os.getenv("ROOM_EXPIRY_MINUTES", "30"))
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(10 * 1024 * 1024)))
ALLOWED_CONTENT_TYPES = frozenset(
    t.strip()
    for t in os.getenv(
        "ALLOWED_CONTENT_TYPES",
        "image/jpeg,image/png,image/gif,image/webp,application/pdf",
    ).split(",")
    if t.strip()
)
SIGNED_URL_TTL_SECONDS = int(os.getenv("SIGNED_URL_TTL_SECONDS", "1800"))

# Object storage: "local" keeps bytes under UPLOAD_DIR, "s3" uses a bucket
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
UPLOAD_DIR = os.getenv(
    "UPLOAD_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "uploads"))
)
SIGNING_SECRET = os.getenv("SIGNING_SECRET", "roomdrop-dev-signing-secret")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID") or None
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY") or None

# Expiry sweep
ENABLE_CLEANER = _flag("ENABLE_CLEANER", "true")
CLEANUP_INTERVAL_MINUTES = int(os.getenv("CLEANUP_INTERVAL_MINUTES", "5"))
CLEANUP_API_KEY = os.getenv("CLEANUP_API_KEY")

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
REDIS_URL = os.getenv("REDIS_URL", "")
