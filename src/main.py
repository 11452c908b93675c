# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import router
from engine.config import LOG_LEVEL
from engine.errors import ScanError
from engine.job_manager import JobManager
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)

ERROR_STATUS_CODES = {
    "validation": 400,
    "not_found": 404,
    "invalid_transition": 409,
    "persistence": 503,
}


def create_app(job_manager: JobManager = None, manage_lifecycle: bool = True) -> FastAPI:
    app = FastAPI(title="Scan Orchestrator")
    app.state.job_manager = job_manager

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
        try:
            response = await call_next(request)
        except Exception as exc:
            logging.error(f"[trace_id={trace_id}] Unhandled error: {exc}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "kind": "internal", "trace_id": trace_id}
            )
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(ScanError)
    async def scan_error_handler(request: Request, exc: ScanError):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
        log = logging.warning if status_code < 500 else logging.error
        log(f"[trace_id={trace_id}] {exc.kind}: {exc.message}")
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": exc.message, "kind": exc.kind, "trace_id": trace_id}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        logging.error(f"[trace_id={trace_id}] Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "kind": "internal", "trace_id": trace_id}
        )

    app.include_router(router)

    if manage_lifecycle:
        @app.on_event("startup")
        def on_startup():
            if app.state.job_manager is None:
                app.state.job_manager = JobManager.from_config()
            app.state.job_manager.startup()
            logging.info("Scan Orchestrator API started.")

        @app.on_event("shutdown")
        def on_shutdown():
            if app.state.job_manager is not None:
                app.state.job_manager.shutdown()
            logging.info("Scan Orchestrator API stopped.")

    return app


app = create_app()
