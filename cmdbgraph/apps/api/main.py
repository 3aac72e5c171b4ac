from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from cmdbgraph.apps.api.errors import (
    cmdb_exception_handler,
    http_exception_handler,
    store_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from cmdbgraph.apps.api.response import API_VERSION
from cmdbgraph.apps.api.routes.cis import router as cis_router
from cmdbgraph.apps.api.routes.health import router as health_router
from cmdbgraph.apps.api.routes.relationships import router as relationships_router
from cmdbgraph.core.config import get_settings
from cmdbgraph.core.errors import CmdbError
from cmdbgraph.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(CmdbError, cmdb_exception_handler)
    app.add_exception_handler(SQLAlchemyError, store_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(cis_router, prefix=f"/{API_VERSION}")
    app.include_router(relationships_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router)
    return app


app = create_app()
