from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from timbersync.apps.api.errors import (
    authentication_error_handler,
    authorization_denied_handler,
    company_predicate_exception_handler,
    conflict_handler,
    http_exception_handler,
    infrastructure_error_handler,
    not_found_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    validation_failure_handler,
)
from timbersync.apps.api.response import API_VERSION, build_meta, is_versioned_request
from timbersync.apps.api.routes.admin_licenses import router as admin_licenses_router
from timbersync.apps.api.routes.admin_logs import router as admin_logs_router
from timbersync.apps.api.routes.admin_users import router as admin_users_router
from timbersync.apps.api.routes.applications import router as applications_router
from timbersync.apps.api.routes.auth import router as auth_router
from timbersync.apps.api.routes.companies import router as companies_router
from timbersync.apps.api.routes.datasets import router as datasets_router
from timbersync.apps.api.routes.health import router as health_router
from timbersync.apps.api.routes.inventory import router as inventory_router
from timbersync.apps.api.routes.licenses import router as licenses_router
from timbersync.apps.api.routes.sync import router as sync_router
from timbersync.core.errors import (
    AuthenticationError,
    AuthorizationDenied,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationFailure,
)
from timbersync.core.logging import configure_logging
from timbersync.persistence.guards import CompanyPredicateError


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
# Device endpoints authenticate with a license key or a prior activation, not a bearer token.
_PUBLIC_PATH_PREFIXES = (
    "/v1/health",
    "/v1/auth/login",
    "/v1/licenses/",
    "/v1/sync/",
)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="TimberSync API", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "http_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped_response = JSONResponse(
                            content={
                                "data": payload,
                                "meta": build_meta(request),
                            },
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(CompanyPredicateError)
    async def _company_predicate_exception_handler(request: Request, exc: CompanyPredicateError):
        return await company_predicate_exception_handler(request, exc)

    # Domain errors raised by services and route adapters.
    app.add_exception_handler(AuthenticationError, authentication_error_handler)
    app.add_exception_handler(AuthorizationDenied, authorization_denied_handler)
    app.add_exception_handler(ValidationFailure, validation_failure_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.add_exception_handler(InfrastructureError, infrastructure_error_handler)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_users_router, prefix=f"/{API_VERSION}")
    app.include_router(companies_router, prefix=f"/{API_VERSION}")
    app.include_router(applications_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_licenses_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_logs_router, prefix=f"/{API_VERSION}")
    # Public device endpoints for activation, verification and offline sync.
    app.include_router(licenses_router, prefix=f"/{API_VERSION}")
    app.include_router(sync_router, prefix=f"/{API_VERSION}")
    app.include_router(datasets_router, prefix=f"/{API_VERSION}")
    app.include_router(inventory_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="TimberSync API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="TimberSync API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": "http://localhost:8000"}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path.startswith(_PUBLIC_PATH_PREFIXES):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
