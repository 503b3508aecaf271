from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from latchkey.api.error_handling import register_exception_handlers
from latchkey.api.routes import router
from latchkey.config import TokenSweepMode
from latchkey.logging import get_logger, set_correlation_id
from latchkey.service.tokens import TokenLedger

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_token_sweep(ledger: TokenLedger, interval_seconds: int) -> None:
    """Background loop purging persistent-login tokens past their lifetime."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                await asyncio.to_thread(ledger.sweep_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("token_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release it on shutdown."""
    global _sweep_task
    from latchkey.service.runtime import close_runtime, get_runtime

    runtime = get_runtime()
    if runtime.settings.token_sweep_mode == TokenSweepMode.BACKGROUND:
        _sweep_task = asyncio.create_task(
            _run_token_sweep(
                runtime.ledger, runtime.settings.token_sweep_interval_seconds
            )
        )
        logger.info(
            "token_sweep_task_started",
            interval_seconds=runtime.settings.token_sweep_interval_seconds,
        )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        close_runtime()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="latchkey", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID.

    Taken from the client's X-Request-ID header when present, otherwise
    generated; bound into structured logs and echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry session state and must never be cached
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store reachability and build version."""
    from latchkey.service.runtime import get_runtime

    runtime = get_runtime()
    healthy = True
    store_check: Dict[str, Any] = {"status": "ok"}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.get_user, "healthz-probe"),
            timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        healthy = False
        store_check = {"status": "error", "error": type(exc).__name__}
        logger.warning("health_store_check_failed", error=str(exc))

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": {"store": store_check},
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
