"""Image Harvest: FastAPI Application.

This module is the single entry point for the web service.  It builds the
FastAPI ``app`` instance, wires the generation pipeline onto ``app.state``
during the lifespan, defines the REST routes, and provides the ``main()``
CLI function that launches the uvicorn server.

Request flow
------------
``POST /api/images/generate`` runs, in order:

1. :class:`~imageharvest.core.validation.RequestValidator`: 400 on failure,
   nothing else is touched.
2. :class:`~imageharvest.core.admission.AdmissionController`: 429 with
   ``Retry-After`` when the caller's window is used up.
3. :class:`~imageharvest.core.pipeline.GenerationPipeline`: enqueues the
   request and waits for the worker's result.  Provider and persistence
   failures come back as failure entries with status 200; queue failures
   are 503.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
POST      ``/api/images/generate``      Generate and store one image
GET       ``/api/images/{id}``          Stored image record
GET       ``/api/providers``            Provider catalog
GET       ``/api/queue/stats``          Queue counters
GET       ``/api/health``               Liveness probe
========  ============================  ====================================

Identity
--------
The caller is identified by the ``X-User-Id`` header, set by the
authentication layer in front of this service, or by the client IP address.

Usage
-----
CLI (installed entry point)::

    image-harvest

Direct invocation::

    python -m imageharvest.api.main
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from imageharvest import __version__
from imageharvest.api.models import GenerateRequest
from imageharvest.core.admission import AdmissionController, resolve_identity
from imageharvest.core.config import HarvestConfig, config
from imageharvest.core.dispatcher import ProviderDispatcher
from imageharvest.core.errors import AdmissionRejected, QueueError, ValidationError
from imageharvest.core.models import Allowed, GenerationRequest
from imageharvest.core.persistence import PersistenceCoordinator
from imageharvest.core.pipeline import GenerationPipeline
from imageharvest.core.queue import QueueManager
from imageharvest.core.tagging import TaggingService
from imageharvest.core.validation import RequestValidator
from imageharvest.providers import load_catalog, provider_registry
from imageharvest.storage import LocalBlobStorage, SQLiteImageRepository

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: HarvestConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    rng: random.Random | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; the global :data:`config` when omitted.
        transport: HTTP transport for outbound provider and tagging calls.
            Tests pass an ``httpx.MockTransport``.
        rng: Random source for provider selection.

    Returns:
        A configured application.  Components are created when its lifespan
        starts, not here.
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the pipeline on startup and drain it on shutdown.

        On startup every component is created and stored on ``app.state``
        and the queue worker loop is started.

        On shutdown the queue stops accepting work and finishes in-flight
        entries, pending tagging tasks get ``tagging_timeout`` seconds to
        finish, and the shared HTTP client is closed.
        """
        # --- Startup -------------------------------------------------------
        catalog = load_catalog(settings.providers_file)
        client = httpx.AsyncClient(transport=transport, timeout=settings.provider_timeout)
        repository = SQLiteImageRepository(settings.database_path)
        blob_storage = LocalBlobStorage(settings.storage_dir, settings.storage_url_prefix)
        queue = QueueManager.from_config(settings)
        tagging = TaggingService.from_config(settings, repository, client)
        pipeline = GenerationPipeline(
            queue,
            ProviderDispatcher(catalog, provider_registry, settings, client, rng=rng),
            PersistenceCoordinator(blob_storage, repository, settings.default_guidance),
            tagging,
            fanout=settings.multi_provider_fanout,
        )

        app.state.settings = settings
        app.state.catalog = catalog
        app.state.validator = RequestValidator.from_config(settings, catalog.keys())
        app.state.admission = AdmissionController.from_config(settings)
        app.state.repository = repository
        app.state.queue = queue
        app.state.tagging = tagging
        app.state.pipeline = pipeline

        pipeline.start()
        logger.info(
            "Image Harvest %s ready: %d providers, fan-out %s",
            __version__,
            len(catalog),
            "on" if settings.multi_provider_fanout else "off",
        )

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await queue.shutdown(timeout=settings.task_timeout)
        try:
            await asyncio.wait_for(tagging.wait_idle(), timeout=settings.tagging_timeout)
        except asyncio.TimeoutError:
            logger.warning("Abandoning %d unfinished tagging tasks", tagging.pending)
        await client.aclose()
        logger.info("Image Harvest shut down.")

    app = FastAPI(
        title="Image Harvest",
        description="Rate-limited, queued image generation across external providers.",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(router)
    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(AdmissionRejected, _admission_rejected_handler)
    app.add_exception_handler(QueueError, _queue_error_handler)

    # Stored images are served from the same origin as the URLs handed out.
    app.mount(
        f"/{settings.storage_url_prefix.strip('/')}",
        StaticFiles(directory=str(settings.storage_dir)),
        name="images",
    )
    return app


# ---------------------------------------------------------------------------
# Error responses.
# ---------------------------------------------------------------------------


async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "errors": exc.errors},
    )


async def _admission_rejected_handler(request: Request, exc: AdmissionRejected) -> JSONResponse:
    decision = exc.decision
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "retryAfter": decision.retry_after,
            "limit": decision.limit,
            "windowMs": decision.window_ms,
        },
        headers={
            "Retry-After": str(decision.retry_after),
            "RateLimit-Limit": str(decision.limit),
            "RateLimit-Remaining": "0",
            "RateLimit-Reset": str(decision.retry_after),
        },
    )


async def _queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    logger.error("Queue rejected request: %s", exc)
    return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})


def _set_rate_limit_headers(response: Response, decision: Allowed) -> None:
    response.headers["RateLimit-Limit"] = str(decision.limit)
    response.headers["RateLimit-Remaining"] = str(decision.remaining)
    response.headers["RateLimit-Reset"] = str(decision.reset_after)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@router.post("/images/generate")
async def generate_image(req: GenerateRequest, request: Request, response: Response) -> dict:
    """Validate, admit, and run one generation request.

    Args:
        req: Request payload.
        request: Used for the caller identity and application state.
        response: Receives the ``RateLimit-*`` headers.

    Returns:
        ``{success, requestId, results, duration}`` where ``results`` holds
        one entry per provider called.

    Raises:
        ValidationError: Rendered as 400.
        AdmissionRejected: Rendered as 429.
        QueueError: Rendered as 503.
    """
    state = request.app.state
    normalized = state.validator.normalize(req.prompt, req.providers, req.guidance)

    user_id = request.headers.get(USER_ID_HEADER) or None
    client_ip = request.client.host if request.client else None
    decision = state.admission.admit(resolve_identity(user_id, client_ip))
    if not isinstance(decision, Allowed):
        raise AdmissionRejected(decision)
    if not decision.bypass:
        _set_rate_limit_headers(response, decision)

    generation = GenerationRequest(
        prompt=normalized.prompt,
        providers=normalized.providers,
        guidance=normalized.guidance,
        original=(req.original or "").strip() or normalized.prompt,
        prompt_id=req.prompt_id,
        user_id=user_id,
    )
    result = await state.pipeline.submit(generation)
    return result.to_dict()


@router.get("/images/{image_id}")
async def get_image(image_id: str, request: Request) -> dict:
    """Return a stored image record.

    Raises:
        HTTPException: 404 if the image is not found.
    """
    image = await request.app.state.repository.get(image_id)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return image.to_dict()


@router.get("/providers")
async def list_providers(request: Request) -> dict:
    """Return the provider catalog and the registered adapter types."""
    catalog = request.app.state.catalog
    return {
        "providers": [catalog[name].to_dict() for name in sorted(catalog)],
        "types": provider_registry.list_available(),
        "adapters": provider_registry.describe(),
    }


@router.get("/queue/stats")
async def queue_stats(request: Request) -> dict:
    return request.app.state.queue.stats()


@router.get("/health")
async def health(request: Request) -> dict:
    queue = request.app.state.queue
    return {
        "status": "ok" if queue.is_running else "degraded",
        "version": __version__,
        "queue": queue.stats(),
        "taggingPending": request.app.state.tagging.pending,
    }


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~imageharvest.core.config.config` (which
    loads from ``HARVEST_SERVER_HOST`` and ``HARVEST_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:8080``.

    This function is registered as the ``image-harvest`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    uvicorn.run(
        "imageharvest.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
