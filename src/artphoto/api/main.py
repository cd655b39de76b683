"""Art Photo Generator -- FastAPI Application.

This module is the single entry point for the web application.  It defines
the application factory, all REST API routes, and the ``main()`` CLI function
that launches the uvicorn server.

Architecture
------------
- **Configuration** is an :class:`~artphoto.core.config.ArtPhotoConfig`
  built once, either by the caller of :func:`create_app` or by
  :func:`create_app` itself from the ``ARTPHOTO_*`` environment.  The
  module-level ``app`` (for ``uvicorn artphoto.api.main:app``) is built that
  way, so CORS origins come from configuration on every entry point.
- **Services** (signer, remote client, artifact store, ledger and
  orchestrator) are assembled in the lifespan handler and stored on
  ``app.state.services``.  Missing credentials fail the startup with a
  :class:`~artphoto.core.errors.ConfigurationError`.
- **Route handlers** are plain ``def`` functions: submit and poll make
  blocking HTTP calls, so FastAPI runs them in its threadpool.
- **Responses** use the envelope the frontend expects:
  ``{"success": true, "data": ...}`` or ``{"error": ..., "message": ...}``.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/health``                   Liveness probe
POST      ``/api/generate-art-photo``   Submit a generation task
GET       ``/api/task-status/{id}``     Poll a task (remote passthrough)
POST      ``/api/upload-image``         Upload a base64 image
GET       ``/api/history``              All history records
GET       ``/api/history/{id}``         One history record
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    artphoto

Direct invocation::

    python -m artphoto.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from artphoto import __version__
from artphoto.api.models import GenerateArtPhotoRequest, UploadImageRequest
from artphoto.core.artifact_store import ArtifactStore, S3ArtifactStore, decode_data_uri
from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import (
    ArtPhotoError,
    AuthError,
    ConfigurationError,
    GenerationTimeout,
    RemoteAPIError,
    RemoteTaskFailed,
    UploadError,
    ValidationError,
)
from artphoto.core.history import HistoryLedger
from artphoto.core.orchestrator import TaskOrchestrator
from artphoto.core.remote import RemoteGenerationClient
from artphoto.core.signer import Signer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators shared by the route handlers.

    Attributes:
        orchestrator: Task lifecycle driver.
        artifact_store: Store used by the upload endpoint.
        ledger: History ledger served by the history endpoints.
        http_client: Transport owned by the app, closed on shutdown.
    """

    orchestrator: TaskOrchestrator
    artifact_store: ArtifactStore
    ledger: HistoryLedger
    http_client: httpx.Client | None = None


def build_services(config: ArtPhotoConfig) -> Services:
    """Assemble production services from *config*.

    Raises:
        ConfigurationError: If remote or storage credentials are missing.
    """
    signer = Signer.from_config(config)
    artifact_store = S3ArtifactStore.from_config(config)
    http_client = httpx.Client(timeout=config.request_timeout)
    ledger = HistoryLedger(config.history_file, config.history_capacity)
    remote = RemoteGenerationClient(config, signer, http_client)
    orchestrator = TaskOrchestrator(config, remote, artifact_store, ledger)
    return Services(orchestrator, artifact_store, ledger, http_client)


# ---------------------------------------------------------------------------
# Error mapping.
# ---------------------------------------------------------------------------

# (status code, short error summary) per exception class; first match wins.
_ERROR_RESPONSES: tuple[tuple[type[ArtPhotoError], int, str], ...] = (
    (ValidationError, 400, "invalid request"),
    (ConfigurationError, 500, "server misconfigured"),
    (RemoteTaskFailed, 502, "generation failed"),
    (GenerationTimeout, 504, "generation timed out"),
    (UploadError, 502, "image upload failed"),
    (RemoteAPIError, 502, "remote API call failed"),
    (AuthError, 502, "remote API rejected credentials"),
)


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _map_error(exc: ArtPhotoError) -> JSONResponse:
    for exc_type, status_code, summary in _ERROR_RESPONSES:
        if isinstance(exc, exc_type):
            if isinstance(exc, AuthError) and exc.status_code in (401, 403):
                status_code = exc.status_code
            return _error_response(status_code, summary, str(exc))
    return _error_response(500, "internal error", str(exc))


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(config: ArtPhotoConfig | None = None, services: Services | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Configuration to use.  Built from the environment when
            omitted.
        services: Pre-built services (used by tests).  Built from *config*
            at startup when omitted.

    Returns:
        The configured application.
    """
    config = config or ArtPhotoConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        app.state.config = config
        app.state.services = services or build_services(config)
        logger.info("Art photo services initialised (history at %s).", app.state.services.ledger.path)

        yield

        # --- Shutdown ------------------------------------------------------
        client = app.state.services.http_client
        if client is not None:
            client.close()
            logger.info("HTTP client closed on shutdown.")

    app = FastAPI(
        title="Art Photo Generator",
        description="Signed remote art-photo generation with task history.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ArtPhotoError)
    async def handle_core_error(request: Request, exc: ArtPhotoError) -> JSONResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _map_error(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(400, "missing required parameters", str(exc.errors()))

    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict:
        """Liveness probe."""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/generate-art-photo")
    def generate_art_photo(req: GenerateArtPhotoRequest, request: Request) -> dict:
        """Submit a generation task.

        Returns:
            ``{"success": true, "data": {"taskId": ...}}``
        """
        task_id = _services(request).orchestrator.submit(req.prompt, req.image_urls)
        return {"success": True, "data": {"taskId": task_id}}

    @app.get("/api/task-status/{task_id}")
    def task_status(task_id: str, request: Request) -> dict:
        """Poll a task once and pass the remote status through.

        Binary payloads are replaced by ``Result.data.uploaded_image_urls``.
        """
        status = _services(request).orchestrator.poll(task_id)
        return {"success": True, "data": status.raw}

    @app.post("/api/upload-image")
    def upload_image(req: UploadImageRequest, request: Request) -> dict:
        """Upload a base64 image to the artifact store.

        Returns:
            ``{"success": true, "data": {"imageUrl": ...}}``
        """
        data, content_type = decode_data_uri(req.image)
        url = _services(request).artifact_store.put(data, content_type)
        return {"success": True, "data": {"imageUrl": url}}

    @app.get("/api/history")
    def list_history(request: Request) -> dict:
        """Return every history record, newest first."""
        records = _services(request).ledger.all()
        return {"success": True, "data": [record.to_json() for record in records]}

    @app.get("/api/history/{task_id}", response_model=None)
    def get_history_record(task_id: str, request: Request) -> dict | JSONResponse:
        """Return one history record, or 404 if the task is unknown."""
        record = _services(request).ledger.find_by_id(task_id)
        if record is None:
            return _error_response(404, "record not found", f"no history record for task {task_id}")
        return {"success": True, "data": record.to_json()}


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :class:`ArtPhotoConfig` (the
    ``ARTPHOTO_SERVER_HOST``, ``ARTPHOTO_SERVER_PORT`` and
    ``ARTPHOTO_LOG_LEVEL`` environment variables).  Credentials are
    validated before the server starts listening.

    This function is registered as the ``artphoto`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    config = ArtPhotoConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config.validate_remote_credentials()
    config.validate_storage()

    uvicorn.run(
        create_app(config),
        host=config.server_host,
        port=config.server_port,
    )


if __name__ == "__main__":
    main()
