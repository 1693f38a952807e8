"""
Ledgerflow - FastAPI Backend

Intent routing and ledger reconciliation workflows.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Route a message:
   curl -X POST http://localhost:8000/v1/intent/route \
     -H "Authorization: Bearer <token>" -H "Content-Type: application/json" \
     -d '{"message": "show my expenses", "owner_id": "42"}'
"""
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ledgerflow.api.routes import router as v1_router
from ledgerflow.core.engine import LedgerflowEngine
from ledgerflow.core.settings import Settings
from ledgerflow.services.errors import LedgerflowError, to_http_exception
from ledgerflow.services.logging import log_error, log_request, logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise

        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
            client_id=client_id,
        )
        return response


def create_app(engine: Optional[LedgerflowEngine] = None) -> FastAPI:
    app = FastAPI(
        title="Ledgerflow API",
        description="Intent routing and ledger reconciliation workflows.",
        version="1.0.0",
    )
    if engine is not None:
        app.state.engine = engine

    app.include_router(v1_router)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Compile the workflows once; requests share them read-only."""
        if getattr(app.state, "engine", None) is None:
            app.state.engine = LedgerflowEngine.from_settings(Settings.from_env())
            logger.info("Ledgerflow engine ready")

    @app.exception_handler(LedgerflowError)
    async def ledgerflow_exception_handler(request: Request, exc: LedgerflowError):
        """Handle all LedgerflowErrors with structured responses."""
        log_error(exc.code.value, str(exc), exc.context)
        http_exc = to_http_exception(exc)
        return JSONResponse(status_code=http_exc.status_code, content=http_exc.detail)

    @app.get("/health", tags=["System"], summary="Health Check")
    async def health(request: Request):
        engine = getattr(request.app.state, "engine", None)
        return {
            "status": "healthy" if engine is not None else "starting",
            "version": "v1.0.0",
            **(engine.health() if engine is not None else {}),
        }

    return app


app = create_app()
