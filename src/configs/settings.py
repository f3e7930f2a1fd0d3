import os


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "realestate_chat")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Service account JSON for firebase-admin; falls back to serviceAccountKey.json at the repo root
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

MAX_MESSAGE_LENGTH = _int("MAX_MESSAGE_LENGTH", 1000)

CHAT_SEND_LIMIT = _int("CHAT_SEND_LIMIT", 30)
CHAT_SEND_WINDOW_SECONDS = _int("CHAT_SEND_WINDOW_SECONDS", 60)

TYPING_TTL_SECONDS = float(os.getenv("TYPING_TTL_SECONDS", "3"))
TYPING_SWEEP_INTERVAL_SECONDS = float(os.getenv("TYPING_SWEEP_INTERVAL_SECONDS", "1"))

MAX_IMAGE_BYTES = _int("MAX_IMAGE_BYTES", 5 * 1024 * 1024)
MAX_VIDEO_BYTES = _int("MAX_VIDEO_BYTES", 50 * 1024 * 1024)
MAX_DOCUMENT_BYTES = _int("MAX_DOCUMENT_BYTES", 10 * 1024 * 1024)

IMAGE_MAX_WIDTH = _int("IMAGE_MAX_WIDTH", 1920)
IMAGE_MAX_HEIGHT = _int("IMAGE_MAX_HEIGHT", 1080)
IMAGE_QUALITY = _int("IMAGE_QUALITY", 80)

# Outbound frames buffered per socket before the connection is dropped
SOCKET_QUEUE_SIZE = _int("SOCKET_QUEUE_SIZE", 256)

FILES_URL_PREFIX = os.getenv("FILES_URL_PREFIX", "/api/files")
