"""Pydantic request and response models for the Dreampix API.

These models define the JSON schema for every API endpoint.  FastAPI uses
them for automatic request validation, serialisation, and OpenAPI
documentation generation.

Image payloads travel as base64 strings.

Models
------
RegisterRequest / LoginRequest
    Payloads for ``POST /api/auth/register`` and ``POST /api/auth/login``.
AccountResponse
    Public view of an account (never includes the credential).
GenerateRequest
    Payload for ``POST /api/generate``.
ImageResponse / GenerateResponse
    Serialised images and orchestration results.
"""

from __future__ import annotations

import base64

from pydantic import BaseModel, Field

from dreampix.core.models import Account, GeneratedImage, GenerationResult


class RegisterRequest(BaseModel):
    """Request body for ``POST /api/auth/register``.

    Attributes:
        email: Account email; the unique login key.
        password: Credential, stored as supplied.
        name: Optional display name.
    """

    email: str = Field(..., min_length=1, description="Account email (unique).")
    password: str = Field(..., min_length=1, description="Account credential.")
    name: str | None = Field(default=None, description="Optional display name.")


class LoginRequest(BaseModel):
    """Request body for ``POST /api/auth/login``."""

    email: str = Field(..., description="Account email.")
    password: str = Field(..., description="Account credential.")


class AccountResponse(BaseModel):
    """Public account fields returned after register/login."""

    id: str
    email: str
    name: str | None = None

    @classmethod
    def from_account(cls, account: Account) -> AccountResponse:
        return cls(id=account.id, email=account.email, name=account.display_name)


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        prompt: Free-form text prompt.
        enhance: Also generate from an AI-enhanced version of the prompt.
        aspect_ratio: One of ``1:1``, ``16:9``, ``9:16``, ``3:4``, ``4:3``.
        count: Images per batch (1, 2 or 4 in the product; up to the
            configured maximum).
        reference_image: Optional base64-encoded reference image.
    """

    prompt: str = Field(..., description="Free-form text prompt.")
    enhance: bool = Field(default=False, description="Generate an enhanced variant too.")
    aspect_ratio: str = Field(default="1:1", description="Aspect ratio, e.g. '16:9'.")
    count: int = Field(default=1, description="Number of images per batch.")
    reference_image: str | None = Field(
        default=None,
        description="Base64-encoded reference image sent with every call.",
    )


class ImageResponse(BaseModel):
    """Serialised :class:`~dreampix.core.models.GeneratedImage`."""

    id: str
    owner_id: str | None = None
    prompt: str
    enhanced_prompt: str | None = None
    image_data: str = Field(..., description="Base64-encoded image bytes.")
    created_at: int
    aspect_ratio: str
    is_enhanced_variant: bool = False
    is_collage: bool = False

    @classmethod
    def from_image(cls, image: GeneratedImage) -> ImageResponse:
        return cls(
            id=image.id,
            owner_id=image.owner_id,
            prompt=image.prompt,
            enhanced_prompt=image.enhanced_prompt,
            image_data=base64.b64encode(image.image_bytes).decode("ascii"),
            created_at=image.created_at,
            aspect_ratio=image.aspect_ratio,
            is_enhanced_variant=image.is_enhanced_variant,
            is_collage=image.is_collage,
        )


class GenerateResponse(BaseModel):
    """Response body for ``POST /api/generate``.

    ``warnings`` lists persistence failures; the images are still returned.
    """

    original: list[ImageResponse]
    enhanced: list[ImageResponse] | None = None
    collage: ImageResponse | None = None
    enhanced_collage: ImageResponse | None = None
    explanation: str | None = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: GenerationResult) -> GenerateResponse:
        return cls(
            original=[ImageResponse.from_image(img) for img in result.original],
            enhanced=(
                [ImageResponse.from_image(img) for img in result.enhanced]
                if result.enhanced is not None
                else None
            ),
            collage=ImageResponse.from_image(result.collage) if result.collage else None,
            enhanced_collage=(
                ImageResponse.from_image(result.enhanced_collage)
                if result.enhanced_collage
                else None
            ),
            explanation=result.explanation,
            warnings=[str(e) for e in result.persist_errors],
        )
