from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.configs.settings import CORS_ORIGINS, LOG_LEVEL
from src.chat.chat_routes import router as chat_router
from src.chat.chat_server import router as realtime_router, typing_sweeper
from src.chat.db import ensure_indexes
from src.chat.errors import ChatError
from src.chat.models import utcnow, iso

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ensure_indexes()
    sweeper = asyncio.create_task(typing_sweeper())
    logger.info("Chat core started")
    try:
        yield
    finally:
        sweeper.cancel()


app = FastAPI(
    title="Listing Chat API",
    description="Real-time conversations between listing owners and interested users",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.code, "reason": exc.reason, "detail": exc.detail},
    )


@app.get("/health")
async def health():
    return {"ok": True, "status": "healthy", "timestamp": iso(utcnow())}


app.include_router(chat_router, prefix="/api", tags=["chat"])
app.include_router(realtime_router, prefix="/api")
