"""CRM agent endpoint - FastAPI application.

A single endpoint lets AI-agent clients list and call CRM tools over
JSON-RPC. ``GET`` returns a static discovery document; ``POST`` carries the
JSON-RPC envelope and requires an API key.
"""

import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from shared.config import Settings, get_settings
from shared.logging import get_logger, request_scope, setup_logging
from shared.models import DiscoveryDocument, HealthResponse
from shared.schema import widening_count, widenings
from crm.backend import CrmBackend
from crm.memory import InMemoryCrmBackend, seed_demo_data
from crm.tools import CRM_TOOLS, build_crm_registry
from mcp_server.audit import AuditLogger
from mcp_server.auth import AUTH_SCHEMES, CredentialStore, IdentityResolver, InMemoryCredentialStore
from mcp_server.dispatcher import McpDispatcher, ServerInfo
from mcp_server.registry import validate_catalogue

logger = get_logger(__name__)


def _load_credentials(settings: Settings) -> CredentialStore:
    path = settings.server.credentials_path
    if path and Path(path).exists():
        return InMemoryCredentialStore.from_yaml(path)
    logger.warning("No credentials file; every API key will be rejected", path=path)
    return InMemoryCredentialStore()


def _demo_backend(settings: Settings) -> CrmBackend:
    backend = InMemoryCrmBackend()
    if settings.server.seed_demo_data:
        seed_demo_data(backend)
    return backend


def create_app(
    settings: Optional[Settings] = None,
    credential_store: Optional[CredentialStore] = None,
    backend: Optional[CrmBackend] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Collaborators that are not passed in are created at startup from
    settings: credentials from YAML, the in-memory CRM backend, and the file
    audit logger.
    """
    settings = settings or get_settings()
    endpoint_path = settings.server.endpoint_path

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        setup_logging(settings.log_level, json_output=settings.environment == "production")
        logger.info("Starting CRM agent endpoint", endpoint=endpoint_path)

        validate_catalogue(CRM_TOOLS)

        store = credential_store if credential_store is not None else _load_credentials(settings)
        crm = backend if backend is not None else _demo_backend(settings)
        audit = audit_logger if audit_logger is not None else AuditLogger(
            log_path=settings.server.audit_log_path,
            enabled=settings.server.enable_audit,
            max_pending=settings.server.audit_max_pending,
        )

        app.state.dispatcher = McpDispatcher(
            resolver=IdentityResolver(store),
            registry_factory=lambda context: build_crm_registry(context, crm),
            server=ServerInfo(
                name=settings.server.server_name,
                version=settings.server.server_version,
                protocol_version=settings.server.protocol_version,
            ),
            audit_logger=audit,
        )

        logger.info("CRM agent endpoint started", tool_count=len(CRM_TOOLS))

        yield

        logger.info("Shutting down CRM agent endpoint")
        await audit.flush()

    app = FastAPI(
        title="CRM Agent Endpoint",
        description="Tool endpoint for AI agents (JSON-RPC / Model Context Protocol)",
        version=settings.server.server_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    discovery = DiscoveryDocument(
        name=settings.server.server_name,
        endpoint=endpoint_path,
        auth=AUTH_SCHEMES,
        protocol_version=settings.server.protocol_version,
    ).model_dump(by_alias=True)

    @app.get(endpoint_path, tags=["Agent"])
    async def describe_endpoint() -> dict[str, Any]:
        """Static discovery document. No authentication."""
        return discovery

    @app.post(endpoint_path, tags=["Agent"])
    async def handle_rpc(request: Request) -> Response:
        """JSON-RPC entry point for agent clients."""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        with request_scope(request_id=request_id):
            raw_body = await request.body()
            outcome = await request.app.state.dispatcher.handle(
                raw_body, request.headers, request_id=request_id
            )

        if outcome.payload is None:
            return Response(status_code=outcome.status_code)

        headers = {"WWW-Authenticate": "Bearer"} if outcome.status_code == 401 else None
        return JSONResponse(
            content=jsonable_encoder(outcome.payload),
            status_code=outcome.status_code,
            headers=headers,
        )

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=settings.server.server_version,
            tool_count=len(CRM_TOOLS),
            schema_widenings=widening_count(),
            schema_widenings_by_kind=widenings(),
        )

    return app


app = create_app()


def main():
    """Run the agent endpoint."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mcp_server.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
