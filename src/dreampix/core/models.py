"""Domain data models for accounts and generated images."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, get_args

from dreampix.core.errors import StoreError

AspectRatio = Literal["1:1", "16:9", "9:16", "3:4", "4:3"]

ASPECT_RATIOS: tuple[str, ...] = get_args(AspectRatio)

# Image counts offered by the product.  The engine accepts any count up to
# DreampixConfig.max_image_count; these are the values surfaced to clients.
IMAGE_COUNTS: tuple[int, ...] = (1, 2, 4)


@dataclass(frozen=True)
class Account:
    """A registered user.

    ``email`` is the natural key in the accounts collection.  The credential
    is held exactly as supplied at registration.
    """

    id: str
    email: str
    credential: str
    display_name: str | None = None


@dataclass(frozen=True)
class GeneratedImage:
    """One generated or composited image.

    ``owner_id`` is set only when an authenticated account was active when the
    image was created and is never filled in afterwards.
    """

    id: str
    prompt: str
    image_bytes: bytes = field(repr=False)
    created_at: int
    aspect_ratio: str = "1:1"
    owner_id: str | None = None
    enhanced_prompt: str | None = None
    is_enhanced_variant: bool = False
    is_collage: bool = False


@dataclass
class GenerationResult:
    """Everything produced by one orchestration call.

    ``collage`` composites the original batch and ``enhanced_collage`` the
    enhanced batch; each exists only when its batch kept two or more images.
    ``enhanced`` and ``explanation`` stay ``None`` when enhancement was not
    requested.  ``persist_errors`` collects store failures from the
    persistence step; they never prevent the result from being returned.
    """

    original: list[GeneratedImage] = field(default_factory=list)
    enhanced: list[GeneratedImage] | None = None
    collage: GeneratedImage | None = None
    enhanced_collage: GeneratedImage | None = None
    explanation: str | None = None
    persist_errors: list[StoreError] = field(default_factory=list)

    def artifacts(self) -> list[GeneratedImage]:
        """All images in persistence order: originals, enhanced, then collages."""
        images = list(self.original)
        if self.enhanced:
            images.extend(self.enhanced)
        for collage in (self.collage, self.enhanced_collage):
            if collage is not None:
                images.append(collage)
        return images

    @property
    def is_empty(self) -> bool:
        return not self.artifacts()
