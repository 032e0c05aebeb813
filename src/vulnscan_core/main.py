# src/vulnscan_core/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from typing import Optional
import logging
import time
import uuid

from vulnscan_core.api.routes import router
from vulnscan_core.config import EngineSettings, load_settings
from vulnscan_core.engine.errors import ScanEngineError, TransientJobFailure
from vulnscan_core.engine.scan_service import ScanService

TRACE_HEADER = "X-Trace-Id"

logger = logging.getLogger("vulnscan_core.api")


def configure_logging(level: str = "INFO"):
    # Configure structured logging
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s'
    )


def _error_response(request: Request, status_code: int, error: str) -> JSONResponse:
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "trace_id": trace_id},
        headers={TRACE_HEADER: trace_id},
    )


def create_app(settings: Optional[EngineSettings] = None, service: Optional[ScanService] = None) -> FastAPI:
    """
    Build the API. The scan service is created and started on startup unless
    one is passed in, and stopped on shutdown.
    """
    app = FastAPI(title="vulnscan-core Scan Engine")

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        # a caller-supplied id lets submission logs and job logs be joined up
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"[trace_id={trace_id}] Unhandled error on {request.method} {request.url.path}")
            return _error_response(request, 500, "Internal server error")
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"[trace_id={trace_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)")
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(TransientJobFailure)
    async def transient_failure_handler(request: Request, exc: TransientJobFailure):
        logger.warning(f"[trace_id={getattr(request.state, 'trace_id', None)}] Engine unavailable: {exc}")
        return _error_response(request, 503, str(exc))

    @app.exception_handler(ScanEngineError)
    async def engine_error_handler(request: Request, exc: ScanEngineError):
        logger.warning(f"[trace_id={getattr(request.state, 'trace_id', None)}] Rejected: {exc}")
        return _error_response(request, 409, str(exc))

    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        if service is not None:
            app.state.scan_service = service
        else:
            engine_settings = settings or load_settings()
            configure_logging(engine_settings.log_level)
            app.state.scan_service = ScanService(engine_settings)
        app.state.scan_service.start()
        logger.info("Scan engine API started.")

    @app.on_event("shutdown")
    def on_shutdown():
        app.state.scan_service.shutdown(wait=False)

    return app


app = create_app()
