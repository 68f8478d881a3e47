"""Dreampix FastAPI application.

This module is the single entry point for the web application.  It defines
the application factory, all REST API routes, and the ``main()`` CLI function
that launches the uvicorn server.

Architecture
------------
- **Persistence** lives in one SQLite file managed by
  :class:`~dreampix.core.store.ImageStore`, opened at startup.
- **Generation** is delegated to
  :class:`~dreampix.core.orchestrator.GenerationOrchestrator`.
- **Sessions** are not kept server-side.  Clients send the signed-in
  account's email in the ``X-Dreampix-Account`` header; each request resolves
  it and passes the account explicitly into the core.

Endpoints
---------
========  ================================  ====================================
Method    Path                              Purpose
========  ================================  ====================================
GET       ``/api/config``                   Version, aspect ratios, counts
POST      ``/api/auth/register``            Create an account
POST      ``/api/auth/login``               Check credentials
POST      ``/api/generate``                 Generate an image batch
GET       ``/api/gallery``                  Signed-in account's gallery
POST      ``/api/gallery/{id}``             Save a history image to the gallery
DELETE    ``/api/gallery/{id}``             Delete one gallery image
GET       ``/api/history``                  Every image generated on this device
DELETE    ``/api/history``                  Clear history
GET       ``/api/images/{collection}/{id}`` Raw image bytes
GET       ``/api/stats``                    Collection sizes
========  ================================  ====================================

Usage
-----
CLI (installed entry point)::

    dreampix

Direct invocation::

    python -m dreampix.api.main
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dreampix import __version__
from dreampix.api.models import (
    AccountResponse,
    GenerateRequest,
    GenerateResponse,
    ImageResponse,
    LoginRequest,
    RegisterRequest,
)
from dreampix.core.accounts import AccountRegistry
from dreampix.core.config import DreampixConfig, config
from dreampix.core.errors import (
    AuthError,
    AuthErrorKind,
    CompositionError,
    GenerationError,
    StoreError,
    StoreErrorKind,
)
from dreampix.core.models import ASPECT_RATIOS, IMAGE_COUNTS, Account
from dreampix.core.orchestrator import GenerationOrchestrator
from dreampix.core.providers import ImageProvider, build_provider
from dreampix.core.store import Collection, ImageStore

logger = logging.getLogger(__name__)

ACCOUNT_HEADER = "X-Dreampix-Account"

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Request-scoped dependencies.
# ---------------------------------------------------------------------------


def get_store(request: Request) -> ImageStore:
    return request.app.state.store


def get_registry(request: Request) -> AccountRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def current_account(
    registry: AccountRegistry = Depends(get_registry),
    account_email: str | None = Header(default=None, alias=ACCOUNT_HEADER),
) -> Account | None:
    """Resolve the account named by the session header.

    A missing header means a guest session.  A header naming an unknown
    account is rejected rather than silently treated as a guest.
    """
    if not account_email:
        return None
    account = registry.lookup(account_email)
    if account is None:
        raise HTTPException(status_code=401, detail="Unknown account")
    return account


def require_account(account: Account | None = Depends(current_account)) -> Account:
    if account is None:
        raise HTTPException(status_code=401, detail="Login required")
    return account


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@router.get("/config")
async def get_config(request: Request) -> dict:
    """Return the options the frontend needs to build the generation form."""
    cfg: DreampixConfig = request.app.state.config
    return {
        "version": __version__,
        "provider": request.app.state.orchestrator.provider.name,
        "aspect_ratios": list(ASPECT_RATIOS),
        "image_counts": [c for c in IMAGE_COUNTS if c <= cfg.max_image_count],
    }


@router.post("/auth/register", response_model=AccountResponse)
def register(
    req: RegisterRequest,
    registry: AccountRegistry = Depends(get_registry),
) -> AccountResponse:
    """Register a new account.

    Raises:
        HTTPException: 409 if the email is already registered.
    """
    try:
        account = registry.register(req.email, req.password, req.name)
    except AuthError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return AccountResponse.from_account(account)


@router.post("/auth/login", response_model=AccountResponse)
def login(
    req: LoginRequest,
    registry: AccountRegistry = Depends(get_registry),
) -> AccountResponse:
    """Check credentials and return the account.

    Raises:
        HTTPException: 401 on unknown email or wrong password.
    """
    try:
        account = registry.authenticate(req.email, req.password)
    except AuthError as e:
        status = 401 if e.kind is AuthErrorKind.INVALID_CREDENTIALS else 400
        raise HTTPException(status_code=status, detail=str(e)) from e
    return AccountResponse.from_account(account)


@router.post("/generate", response_model=GenerateResponse)
def generate_images(
    req: GenerateRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    account: Account | None = Depends(current_account),
) -> GenerateResponse:
    """Generate a batch of images.

    Images are saved to history for everyone and to the gallery when signed
    in.  An empty ``original`` list means the model produced no image.

    Raises:
        HTTPException: 400 for invalid input, 502 when the provider failed
            outright, 500 when the collage could not be built.
    """
    reference_image = None
    if req.reference_image:
        try:
            reference_image = base64.b64decode(req.reference_image, validate=True)
        except (binascii.Error, ValueError) as e:
            raise HTTPException(status_code=400, detail="reference_image is not valid base64") from e

    try:
        result = orchestrator.generate(
            req.prompt,
            enhance=req.enhance,
            aspect_ratio=req.aspect_ratio,
            count=req.count,
            reference_image=reference_image,
            current_account=account,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except CompositionError as e:
        logger.error(f"Collage composition failed: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

    return GenerateResponse.from_result(result)


@router.get("/gallery")
def get_gallery(
    account: Account = Depends(require_account),
    store: ImageStore = Depends(get_store),
) -> list[ImageResponse]:
    """Return the signed-in account's gallery, newest first."""
    images = store.list_by_owner(Collection.GALLERY, account.id)
    return [ImageResponse.from_image(img) for img in images]


@router.post("/gallery/{image_id}")
def save_to_gallery(
    image_id: str,
    account: Account = Depends(require_account),
    store: ImageStore = Depends(get_store),
) -> dict:
    """Copy one of the caller's history images back into their gallery.

    Only images created while this account was signed in qualify; guest
    images are never attributed after the fact.

    Raises:
        HTTPException: 404 if the image is not in history or belongs to
            someone else.
    """
    image = store.get_image(Collection.HISTORY, image_id)
    if image is None or image.owner_id != account.id:
        raise HTTPException(status_code=404, detail="Image not found")
    store.put_image(Collection.GALLERY, image)
    return {"success": True, "saved": image_id}


@router.delete("/gallery/{image_id}")
def delete_from_gallery(
    image_id: str,
    account: Account = Depends(require_account),
    store: ImageStore = Depends(get_store),
) -> dict:
    """Delete an image from the caller's gallery.

    Raises:
        HTTPException: 404 if the caller has no such gallery image.
    """
    if not store.delete_image(Collection.GALLERY, image_id, owner_id=account.id):
        raise HTTPException(status_code=404, detail="Image not found")
    return {"success": True, "deleted": image_id}


@router.get("/history")
def get_history(store: ImageStore = Depends(get_store)) -> list[ImageResponse]:
    """Return every generated image on this device, newest first."""
    return [ImageResponse.from_image(img) for img in store.list_all(Collection.HISTORY)]


@router.delete("/history")
def clear_history(store: ImageStore = Depends(get_store)) -> dict:
    """Remove every image from history.  Gallery copies are unaffected."""
    store.clear_collection(Collection.HISTORY)
    return {"success": True}


@router.get("/images/{collection}/{image_id}")
def get_image_bytes(
    collection: Collection,
    image_id: str,
    account: Account | None = Depends(current_account),
    store: ImageStore = Depends(get_store),
) -> Response:
    """Serve the raw bytes of a stored image.

    Gallery images are only visible to their owner.
    """
    image = store.get_image(collection, image_id)
    if image is None or (
        collection is Collection.GALLERY
        and (account is None or image.owner_id != account.id)
    ):
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=image.image_bytes, media_type=_sniff_media_type(image.image_bytes))


@router.get("/stats")
def get_stats(store: ImageStore = Depends(get_store)) -> dict:
    """Return collection sizes and the on-disk schema version."""
    return {
        "gallery_images": store.count(Collection.GALLERY),
        "history_images": store.count(Collection.HISTORY),
        "schema_version": store.schema_version,
    }


def _sniff_media_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    app_config: DreampixConfig | None = None,
    provider: ImageProvider | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_config: Configuration to use; defaults to the global ``config``.
        provider: Generation provider; defaults to the one selected by
            configuration.

    Returns:
        A configured application.  The store is opened on startup.
    """
    cfg = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the store and wire the core services onto ``app.state``.

        A store that cannot be opened or migrated aborts startup.
        """
        store = ImageStore(cfg.db_path).open()
        app.state.config = cfg
        app.state.store = store
        app.state.registry = AccountRegistry(store)
        app.state.orchestrator = GenerationOrchestrator(
            provider or build_provider(cfg),
            store,
            max_workers=cfg.max_workers,
            max_image_count=cfg.max_image_count,
            call_timeout=cfg.call_timeout,
            collage_background=cfg.collage_background,
        )
        logger.info(
            f"Dreampix ready (store schema v{store.schema_version}, "
            f"provider={app.state.orchestrator.provider.name})."
        )

        yield  # Application runs here.

        logger.info("Dreampix shutting down.")

    app = FastAPI(
        title="Dreampix",
        description="Prompt-to-image generation with a local gallery and history.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so the frontend can be served from a
    # different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.add_exception_handler(StoreError, _store_error_handler)
    return app


async def _store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Report store failures that reach a route as 503 (unavailable) or 500."""
    logger.error(f"Store error on {request.url.path}: {exc}")
    status = 503 if exc.kind is StoreErrorKind.UNAVAILABLE else 500
    return JSONResponse(status_code=status, content={"detail": str(exc)})


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~dreampix.core.config.config` (which
    loads from ``DREAMPIX_SERVER_HOST`` and ``DREAMPIX_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``dreampix`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "dreampix.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
