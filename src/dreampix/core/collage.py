"""Grid collage composition for multi-image batches.

Layout rules:

- 1 image   -> returned unchanged
- 2 images  -> 2 columns x 1 row
- 3+ images -> 2 columns x 2 rows; empty cells keep the background fill and
  anything past the fourth image is ignored

Every cell takes the size of the first image.  Inputs are not resized, so
mismatched sizes produce a ragged but valid collage.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Sequence

from PIL import Image, UnidentifiedImageError

from dreampix.core.errors import CompositionError

logger = logging.getLogger(__name__)

MAX_CELLS = 4
DEFAULT_BACKGROUND = "#0f172a"


def grid_shape(count: int) -> tuple[int, int]:
    """Return ``(cols, rows)`` for ``count`` images."""
    if count <= 1:
        return 1, 1
    if count == 2:
        return 2, 1
    return 2, 2


def compose(images: Sequence[bytes], *, background: str = DEFAULT_BACKGROUND) -> bytes:
    """Combine encoded images into one PNG grid.

    Args:
        images: Encoded image payloads (PNG, JPEG, ...).
        background: Fill colour for cells without an image.

    Returns:
        PNG-encoded collage, or the single input unchanged.

    Raises:
        CompositionError: If ``images`` is empty or any payload cannot be
            decoded.
    """
    if not images:
        raise CompositionError("Cannot compose a collage from zero images")
    if len(images) == 1:
        return images[0]

    if len(images) > MAX_CELLS:
        logger.debug(f"Collage truncated from {len(images)} to {MAX_CELLS} images")
    payloads = list(images[:MAX_CELLS])
    decoded = [_decode(data, index) for index, data in enumerate(payloads)]

    cols, rows = grid_shape(len(decoded))
    width, height = decoded[0].size
    try:
        canvas = Image.new("RGB", (width * cols, height * rows), background)
    except ValueError as e:
        raise CompositionError(f"Invalid collage background {background!r}: {e}") from e

    for index, tile in enumerate(decoded):
        x = (index % cols) * width
        y = (index // cols) * height
        canvas.paste(tile.convert("RGB"), (x, y))

    buffer = io.BytesIO()
    canvas.save(buffer, format="PNG")
    logger.debug(f"Composed {len(decoded)} images into {cols}x{rows} collage")
    return buffer.getvalue()


def _decode(data: bytes, index: int) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise CompositionError(f"Collage input {index} is not a decodable image: {e}") from e
    return image
