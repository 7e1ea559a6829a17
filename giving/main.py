from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from giving.api import webhooks
from giving.core.config import settings
from giving.core.errors import init_sentry
from giving.core.logging_config import get_logger
from giving.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Giving webhooks starting", environment=settings.ENVIRONMENT)
    yield


init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Trust X-Forwarded-* from the platform proxy so request URLs and client IPs are right
app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=["*"])
app.add_middleware(cast(Any, RequestContextMiddleware))

app.include_router(webhooks.router)


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}
