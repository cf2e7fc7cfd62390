from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from videobatch import __version__
from videobatch.api.dependencies import get_dispatcher
from videobatch.api.routers import batches_router, enterprise_router, health_router
from videobatch.core.config import settings
from videobatch.services.dispatch import QueueDispatcher

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    dispatcher = get_dispatcher()
    logger.info("api_started", dispatch_mode=dispatcher.mode)
    yield
    if isinstance(dispatcher, QueueDispatcher):
        dispatcher.publisher.close()


app = FastAPI(
    title="Video Batch API",
    description="""
## Batch video generation

Submit many prompts at once; credits are reserved up front and settled
per video once generation finishes.

### Consumer

* `POST /api/video/batch` with a session token (`Authorization: Bearer` or
  the session cookie)
* `GET /api/video/batch?batch_id=...` for progress

### Enterprise

* `POST /api/enterprise/video-batch` with `X-API-Key`
* Retries with the same `Idempotency-Key` never create a second batch
* Per-key rate limit per UTC minute

### Pricing

`sora-2` 10 credits, `veo-flash` 50, `veo-pro` 250 per video.
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Batches", "description": "Consumer batch submission and status"},
        {"name": "Enterprise", "description": "API-key batch submission, status and balance"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-request-id"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"ok": False, "error": "INTERNAL_ERROR"})


app.include_router(health_router)
app.include_router(batches_router, prefix=settings.api_prefix)
app.include_router(enterprise_router, prefix=settings.api_prefix)


@app.get("/")
async def root() -> dict:
    return {"service": "videobatch-api", "version": __version__, "docs": "/docs"}
