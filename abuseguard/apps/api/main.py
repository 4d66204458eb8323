from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from abuseguard.apps.api.errors import (
    abuseguard_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from abuseguard.apps.api.response import API_VERSION
from abuseguard.apps.api.routes.admin import router as admin_router
from abuseguard.apps.api.routes.audit import router as audit_router
from abuseguard.apps.api.routes.enforcement import router as enforcement_router
from abuseguard.apps.api.routes.health import router as health_router
from abuseguard.apps.api.routes.overrides import router as overrides_router
from abuseguard.core.config import get_settings
from abuseguard.core.errors import AbuseGuardError
from abuseguard.core.logging import configure_logging
from abuseguard.persistence.db import Database, get_database


def create_app(database: Database | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="AbuseGuard API")
    app.state.database = database or get_database()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(AbuseGuardError, abuseguard_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(overrides_router, prefix=f"/{API_VERSION}")
    app.include_router(enforcement_router, prefix=f"/{API_VERSION}")
    # Operator tooling: manual suspension, on-demand scans and reporting.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation except health.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="AbuseGuard API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        schema["info"]["x-app-name"] = get_settings().app_name
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app
