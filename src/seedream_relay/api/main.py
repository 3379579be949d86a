"""Seedream Relay — FastAPI Application.

This module defines the application factory, all HTTP routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
The relay is stateless across requests:

- **Configuration** comes from :class:`~seedream_relay.core.config.RelayConfig`
  (environment variables and ``.env``).
- **Upstream calls** go through one shared ``httpx.AsyncClient`` wrapped by
  :class:`~seedream_relay.core.http_client.ResilientClient`.  The client and
  the services built on it live on ``app.state`` for the lifetime of the app.
- **Uploads** are plain files under ``upload_dir``, served back at
  ``/uploads`` with immutable caching headers.
- **The browser client** is a static single-page app served from
  ``static_dir`` by the catch-all route.

Every failure is answered with a JSON ``{"error": ...}`` body; core
exceptions are translated by a single exception handler.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/health``                   Token presence and retry settings
POST      ``/api/generate``             Create 1-4 predictions
GET       ``/api/predictions/{id}``     Proxy an upstream status lookup
POST      ``/api/upload``               Store a data-URL image, return URL
GET       ``/uploads/{name}``           Serve a stored upload
GET       ``/debug/uploads``            List uploads (debug routes only)
GET       ``/{path}``                   Static files / SPA fallback
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    seedream-relay

Direct invocation::

    python -m seedream_relay.api.main
"""

from __future__ import annotations

import functools
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from seedream_relay import __version__
from seedream_relay.api.models import GenerateRequest, UploadRequest
from seedream_relay.core.batch import BatchOrchestrator, GenerationJob
from seedream_relay.core.config import RelayConfig, config
from seedream_relay.core.errors import ConfigurationError, RelayError
from seedream_relay.core.http_client import ResilientClient
from seedream_relay.core.predictions import PredictionAdapter
from seedream_relay.core.status import StatusPoller
from seedream_relay.core.uploads import UPLOADS_PREFIX, UploadStore, public_base_url

logger = logging.getLogger(__name__)

UPLOAD_CACHE_CONTROL = "public, max-age=31536000, immutable"


class ImmutableStaticFiles(StaticFiles):
    """StaticFiles that marks every response as cacheable forever.

    Upload names are random and files are never rewritten, so a URL always
    refers to the same bytes.
    """

    async def get_response(self, path, scope):
        response = await super().get_response(path, scope)
        if response.status_code == 200:
            response.headers["Cache-Control"] = UPLOAD_CACHE_CONTROL
        return response


# ---------------------------------------------------------------------------
# Exception handlers — every failure is a JSON body with an ``error`` key.
# ---------------------------------------------------------------------------


async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(exc.payload(), status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse({"error": "Invalid request body: " + "; ".join(messages)}, status_code=400)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def _require_token(settings: RelayConfig) -> None:
    if not settings.has_token:
        raise ConfigurationError("Missing REPLICATE_API_TOKEN on server.")


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    """Report whether a credential is configured and the retry policy."""
    settings: RelayConfig = request.app.state.settings
    return {
        "ok": True,
        "hasToken": settings.has_token,
        "timeoutMs": settings.request_timeout_ms,
        "maxRetries": settings.max_retries,
    }


@router.post("/api/generate")
async def generate_images(req: GenerateRequest, request: Request) -> dict:
    """Create ``numImages`` predictions concurrently.

    The prompt is validated before anything else, so a blank prompt never
    reaches the upstream.

    Returns:
        ``{"mode": "single", id, getUrl, webUrl, status, output}`` for one
        image, otherwise ``{"mode": "batch", count, items, tookMs}``.

    Raises:
        InvalidRequestError: 400 for a missing or blank prompt.
        ConfigurationError: 500 when no credential is configured.
        UpstreamError: 502 when any prediction fails.
    """
    job = GenerationJob.from_client(req.prompt, req.num_images, req.aspect, req.image_url)
    _require_token(request.app.state.settings)

    orchestrator: BatchOrchestrator = request.app.state.orchestrator
    try:
        result = await orchestrator.generate(job)
    except RelayError as exc:
        logger.error("[/api/generate] ERROR: %s", exc)
        raise
    return result.to_response()


@router.get("/api/predictions/{prediction_id}")
async def get_prediction(prediction_id: str, request: Request) -> JSONResponse:
    """Return the upstream status document with the upstream status code."""
    _require_token(request.app.state.settings)

    poller: StatusPoller = request.app.state.poller
    try:
        status_code, document = await poller.get_status(prediction_id)
    except RelayError as exc:
        logger.error("[/api/predictions/%s] ERROR: %s", prediction_id, exc)
        raise
    return JSONResponse(document, status_code=status_code)


@router.post("/api/upload")
async def upload_image(req: UploadRequest, request: Request) -> dict:
    """Store a data-URL image and return its public URL.

    Returns:
        ``{"url", "mime", "size"}`` where ``size`` is the decoded byte count.

    Raises:
        InvalidRequestError: 400 for a missing, oversized or malformed data
            URL, or a malformed forwarding header.
        UploadUnreachableError: 400 when the saved file is not reachable at
            its public URL.
    """
    settings: RelayConfig = request.app.state.settings
    uploads: UploadStore = request.app.state.uploads
    try:
        base_url = public_base_url(request.headers, request.url.scheme, settings.public_base_url)
        asset = await uploads.ingest(req.data_url, base_url)
    except RelayError as exc:
        logger.error("[/api/upload] ERROR: %s", exc)
        raise
    return asset.to_dict()


@router.get("/debug/uploads")
async def list_uploads(request: Request) -> dict:
    """List stored uploads.  Disabled unless ``enable_debug_routes`` is set."""
    if not request.app.state.settings.enable_debug_routes:
        raise HTTPException(status_code=404, detail="Not Found")
    files = request.app.state.uploads.list_files()
    return {"count": len(files), "files": files}


@router.get("/{full_path:path}")
async def spa_fallback(full_path: str, request: Request) -> FileResponse:
    """Serve a static client file, or ``index.html`` for client-side routes."""
    static_dir = request.app.state.settings.static_dir.resolve()

    if full_path:
        candidate = (static_dir / full_path).resolve()
        if candidate.is_relative_to(static_dir) and candidate.is_file():
            return FileResponse(candidate)

    index_path = static_dir / "index.html"
    if index_path.is_file():
        return FileResponse(index_path)
    raise HTTPException(status_code=404, detail="Client application not installed")


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: RelayConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the relay application.

    Args:
        settings: Configuration to use.  Defaults to the global ``config``.
        transport: Optional httpx transport shared by the upstream client and
            the upload verifier.  Tests pass an ``httpx.MockTransport``.

    Returns:
        A configured FastAPI instance.  Services are created by the lifespan,
        so run it (``TestClient`` as a context manager, or uvicorn).
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        http = httpx.AsyncClient(
            timeout=settings.request_timeout_ms / 1000,
            transport=transport,
        )
        client = ResilientClient.from_config(http, settings)
        adapter = PredictionAdapter(client, settings)
        app.state.orchestrator = BatchOrchestrator(adapter, cancel_abandoned=settings.cancel_abandoned)
        app.state.poller = StatusPoller(client, settings)

        verifier_factory = httpx.AsyncClient
        if transport is not None:
            verifier_factory = functools.partial(httpx.AsyncClient, transport=transport)
        app.state.uploads = UploadStore(
            settings.upload_dir,
            verify=settings.verify_uploads,
            verify_timeout_ms=settings.verify_timeout_ms,
            ttl_seconds=settings.upload_ttl_seconds,
            max_upload_bytes=settings.max_upload_bytes,
            client_factory=verifier_factory,
        )

        if not settings.has_token:
            logger.warning("Missing REPLICATE_API_TOKEN env var.")
        logger.info(
            "Relay ready (timeout %d ms, %d retries, schema %s)",
            settings.request_timeout_ms,
            settings.max_retries,
            settings.input_schema,
        )

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await app.state.orchestrator.aclose()
        await http.aclose()

    app = FastAPI(
        title="Seedream Relay",
        description="Credential-hiding proxy for Replicate's seedream-4 model.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RelayError, _relay_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    # Mounted before the router so the catch-all route cannot shadow it.
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    app.mount(
        UPLOADS_PREFIX,
        ImmutableStaticFiles(directory=str(settings.upload_dir)),
        name="uploads",
    )
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~seedream_relay.core.config.config`
    (``HOST``, ``PORT`` and ``LOG_LEVEL`` environment variables).  Defaults to
    ``0.0.0.0:3000``.

    This function is registered as the ``seedream-relay`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "seedream_relay.api.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
