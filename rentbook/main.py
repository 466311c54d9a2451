import asyncio
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from rentbook.api.v1.router import api_router
from rentbook.core.errors import Internal, InvalidArgument, ServiceError
from rentbook.schemas.common import ErrorResponse
from rentbook.services.container import Services

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
READY_TIMEOUT = 5.0


async def _catalog_refresh_loop(services: Services) -> None:
    """Background task: reload the item catalog every cache TTL."""
    interval = max(1, services.settings.booking.items_cache_ttl)
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(services.catalog.reload)
        except Exception:
            logger.exception("Error during item catalog refresh.")


def _error_response(err: ServiceError, request_id: str = "") -> JSONResponse:
    body = ErrorResponse(error=err.kind, message=err.message)
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=err.http_status, content=body.model_dump(), headers=headers)


def _cors_headers(services: Services) -> dict:
    auth = services.settings.api.auth
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": ", ".join(
            ["Content-Type", REQUEST_ID_HEADER, auth.header_api_key, auth.header_extra]
        ),
    }


def create_app(services: Services, run_background: bool = True) -> FastAPI:
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: warm the catalog, start the sheets worker
        services.catalog.reload()
        tasks = []
        if run_background:
            if services.worker is not None and settings.worker.enabled:
                services.worker.start()
            tasks.append(asyncio.create_task(_catalog_refresh_loop(services)))
        yield

        # Shutdown: cancel background tasks
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if run_background and services.worker is not None:
            services.worker.stop()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.app.version, lifespan=lifespan)
    app.state.services = services

    auth = settings.api.auth
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER, auth.header_api_key, auth.header_extra],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        if request.method == "OPTIONS":
            response = Response(status_code=status.HTTP_204_NO_CONTENT, headers=_cors_headers(services))
        else:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "%s %s remote=%s status=%d duration=%.1fms request_id=%s",
            request.method,
            request.url.path,
            request.client.host if request.client else "-",
            response.status_code,
            (time.perf_counter() - started) * 1000,
            request_id,
        )
        return response

    # -----------------------------------------------------------------------
    # Errors
    # -----------------------------------------------------------------------

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        request_id = getattr(request.state, "request_id", "")
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s (request_id=%s)", request.method, request.url.path, exc, request_id)
        return _error_response(exc, request_id)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "invalid request") if errors else "invalid request"
        return _error_response(InvalidArgument(message), getattr(request.state, "request_id", ""))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "")
        logger.exception("Unhandled error on %s %s (request_id=%s)", request.method, request.url.path, request_id)
        return _error_response(Internal("internal error"), request_id)

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz():
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz():
        checks = [("database", services.database.ping)]
        if services.redis is not None:
            checks.append(("redis", services.redis.ping))
        pool = ThreadPoolExecutor(max_workers=len(checks))
        try:
            pending = [(name, pool.submit(fn)) for name, fn in checks]
            for name, future in pending:
                try:
                    future.result(timeout=READY_TIMEOUT)
                except FutureTimeout:
                    logger.warning("Readiness: %s did not answer within %.0fs.", name, READY_TIMEOUT)
                    return PlainTextResponse("not ready", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
                except Exception as e:
                    logger.warning("Readiness: %s ping failed: %s", name, e)
                    return PlainTextResponse("not ready", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
        finally:
            # hung pings are abandoned
            pool.shutdown(wait=False)
        return "ready"

    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app
