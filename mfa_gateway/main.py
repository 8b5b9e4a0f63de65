import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from mfa_gateway.core.config import LOG_LEVEL, VERSION
from mfa_gateway.core.gateway import Gateway, build_gateway_from_env
from mfa_gateway.core.tasks import start_background_tasks
from mfa_gateway.routers import auth, health, proxy

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events: startup and shutdown."""
    # Missing credentials abort startup here, never per request.
    if app.state.gateway is None:
        app.state.gateway = build_gateway_from_env()
    stop_sweeper = start_background_tasks(app.state.gateway)

    yield

    stop_sweeper.set()
    await app.state.gateway.proxy.aclose()


def create_app(gateway: Optional[Gateway] = None) -> FastAPI:
    app = FastAPI(
        title="HTTPS MFA Proxy",
        version=VERSION,
        lifespan=lifespan,
        docs_url=None,  # The catch-all proxy route owns every other path
        redoc_url=None,
        openapi_url=None,
    )
    app.state.gateway = gateway

    # Local routes first; the proxy catch-all must stay last.
    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(proxy.router)
    return app


app = create_app()

if __name__ == "__main__":
    # If run directly for debug
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8081)
