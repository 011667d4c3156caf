from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from authgate.api.error_handling import register_exception_handlers, service_error_response
from authgate.api.routes import router
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.errors import RateLimitedError
from authgate.service.rate_limit import classify_path, resolve_client_address

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain audit deliveries and close backends on shutdown."""
    from authgate.service.runtime import get_runtime

    get_runtime()
    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthGate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


# Middlewares registered later wrap earlier ones: rate gate is innermost,
# correlation id outermost so 429 envelopes carry the request id.
@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    endpoint_class = classify_path(request.url.path)
    if endpoint_class is None or request.method == "OPTIONS":
        return await call_next(request)

    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    peer = request.client.host if request.client else None
    address = resolve_client_address(request.headers, peer)
    decision = await runtime.rate_gate.admit_request(address, endpoint_class)
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if not decision.allowed:
        denial = RateLimitedError(retry_after=decision.window_seconds)
        return service_error_response(denial, headers=headers)
    response = await call_next(request)
    for name, value in headers.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to logs and echo it in ``X-Request-ID``.

    The id is taken from the client's ``X-Request-ID`` header when present,
    otherwise generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health(response: Response) -> Dict[str, Any]:
    """Check the account store and the session/rate cache."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    healthy = store_ok and cache_ok
    if not healthy:
        response.status_code = 503
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {
            "store": {"status": "healthy" if store_ok else "unhealthy"},
            "cache": {"status": "healthy" if cache_ok else "unhealthy"},
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
