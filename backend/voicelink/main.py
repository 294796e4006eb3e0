import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from voicelink.api.v1.router import api_v1_router
from voicelink.core.config import settings
from voicelink.core.rate_limit import limiter
from voicelink.providers import build_provider_context
from voicelink.providers.exceptions import ProviderError
from voicelink.services.jobs import JobRunner, job_worker_loop
from voicelink.services.maintenance import maintenance_loop
from voicelink.services.webhooks import EventDispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    context = app.state.provider_context
    tasks = [
        asyncio.create_task(job_worker_loop(app.state.job_runner)),
        asyncio.create_task(maintenance_loop(context)),
    ]
    logger.info(
        "Voice gateway started (providers=%s, active=%s)",
        context.registry.available_providers,
        settings.VOICE_PROVIDER,
    )

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.state.provider_context = build_provider_context()
app.state.event_dispatcher = EventDispatcher()
app.state.limiter = limiter
app.state.job_runner = JobRunner()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message, "provider": exc.provider},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    client = request.client.host if request.client else "-"
    logger.warning("Rate limit hit on %s from %s: %s", request.url.path, client, exc.detail)
    return JSONResponse(
        status_code=429,
        content={"success": False, "code": "rate_limited", "message": f"Rate limit exceeded: {exc.detail}"},
    )


app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
