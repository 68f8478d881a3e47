"""Generation providers: the external capability behind the orchestrator.

A provider supplies three operations:

- ``generate_image(prompt, aspect_ratio, reference_image)`` returns encoded
  image bytes, or ``None`` when the model answered without an image.  Transport
  failures raise.
- ``enhance_prompt(prompt)`` never raises; on failure it returns ``prompt``.
- ``explain(original, enhanced)`` never raises; on failure it returns a fixed
  message.

Two implementations ship with the package:

- :class:`GeminiProvider` talks to Google's Gemini models via ``google-genai``.
- :class:`DryRunProvider` renders solid-colour placeholders offline, for local
  development and tests.
"""

from __future__ import annotations

import hashlib
import io
import logging
from typing import Any, Protocol

from PIL import Image

from dreampix.core.config import DreampixConfig

logger = logging.getLogger(__name__)

ENHANCE_INSTRUCTIONS = """You are an expert AI prompt engineer. Your task is to refine the user's idea into a professional image generation prompt while strictly adhering to their original intent.

Guidelines:
1. UNDERSTAND THE CORE IDEA: accurate subject, action, and setting from the original prompt are mandatory. Do not remove or alter key elements.
2. ENHANCE QUALITY: Add specific details about lighting (e.g., volumetric, cinematic), composition (e.g., wide angle, rule of thirds), art style (e.g., photorealistic, 3D render, oil painting), and texture/detail (e.g., 8k, highly detailed).
3. CLARITY: Ensure the prompt is structured clearly for an image generation model.

ONLY return the enhanced prompt text, nothing else.

Original Prompt: "{prompt}"
"""

EXPLAIN_INSTRUCTIONS = """Compare these two image prompts and explain briefly (in 2-3 sentences) why the enhanced version is likely to produce a better, more professional image while preserving the user's original idea.

Original: "{original}"
Enhanced: "{enhanced}"
"""

DEFAULT_EXPLANATION = (
    "Enhanced prompts usually include more specific details about lighting and style."
)
EXPLANATION_UNAVAILABLE = "Optimization details unavailable."


class ImageProvider(Protocol):
    name: str

    def generate_image(
        self,
        prompt: str,
        aspect_ratio: str,
        reference_image: bytes | None = None,
    ) -> bytes | None: ...

    def enhance_prompt(self, prompt: str) -> str: ...

    def explain(self, original: str, enhanced: str) -> str: ...


class GeminiProvider:
    """Provider backed by the Gemini API.

    The ``google-genai`` client is created on construction unless one is
    injected, which keeps tests free of network access.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        text_model: str = "gemini-2.5-flash",
        image_model: str = "gemini-2.5-flash-image",
        client: Any = None,
    ) -> None:
        from google.genai import types

        self._types = types
        if client is None:
            if not api_key:
                raise RuntimeError("DREAMPIX_GEMINI_API_KEY not set.")
            from google import genai

            client = genai.Client(api_key=api_key)
        self._client = client
        self.text_model = text_model
        self.image_model = image_model

    def generate_image(
        self,
        prompt: str,
        aspect_ratio: str,
        reference_image: bytes | None = None,
    ) -> bytes | None:
        types = self._types
        parts = []
        # The reference image goes first so the text reads as an instruction
        # about it.
        if reference_image is not None:
            parts.append(
                types.Part(inline_data=types.Blob(data=reference_image, mime_type="image/png"))
            )
        parts.append(types.Part(text=prompt))

        response = self._client.models.generate_content(
            model=self.image_model,
            contents=types.Content(role="user", parts=parts),
            config=types.GenerateContentConfig(
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        return _first_inline_image(response)

    def enhance_prompt(self, prompt: str) -> str:
        try:
            response = self._client.models.generate_content(
                model=self.text_model,
                contents=ENHANCE_INSTRUCTIONS.format(prompt=prompt),
            )
        except Exception as e:
            logger.warning(f"Error enhancing prompt, using original: {e}")
            return prompt
        text = (getattr(response, "text", None) or "").strip()
        return text or prompt

    def explain(self, original: str, enhanced: str) -> str:
        try:
            response = self._client.models.generate_content(
                model=self.text_model,
                contents=EXPLAIN_INSTRUCTIONS.format(original=original, enhanced=enhanced),
            )
        except Exception as e:
            logger.warning(f"Error generating explanation: {e}")
            return EXPLANATION_UNAVAILABLE
        text = (getattr(response, "text", None) or "").strip()
        return text or DEFAULT_EXPLANATION


def _first_inline_image(response: Any) -> bytes | None:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            return inline.data
    return None


# Placeholder dimensions per aspect ratio for the dry-run provider.
DRYRUN_SIZES: dict[str, tuple[int, int]] = {
    "1:1": (256, 256),
    "16:9": (384, 216),
    "9:16": (216, 384),
    "3:4": (192, 256),
    "4:3": (256, 192),
}


class DryRunProvider:
    """Offline provider that renders a deterministic solid-colour PNG.

    The colour is derived from the prompt so different prompts are visually
    distinguishable.
    """

    name = "dryrun"

    def generate_image(
        self,
        prompt: str,
        aspect_ratio: str,
        reference_image: bytes | None = None,
    ) -> bytes | None:
        size = DRYRUN_SIZES.get(aspect_ratio, DRYRUN_SIZES["1:1"])
        digest = hashlib.sha256(prompt.encode("utf-8")).digest()
        image = Image.new("RGB", size, (digest[0], digest[1], digest[2]))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    def enhance_prompt(self, prompt: str) -> str:
        return f"{prompt}, highly detailed, cinematic lighting"

    def explain(self, original: str, enhanced: str) -> str:
        return DEFAULT_EXPLANATION


def build_provider(config: DreampixConfig) -> ImageProvider:
    """Instantiate the provider selected by configuration.

    Falls back to :class:`DryRunProvider` when Gemini is selected but no API
    key is configured.
    """
    if config.provider == "gemini":
        if config.gemini_api_key:
            return GeminiProvider(
                config.gemini_api_key,
                text_model=config.text_model,
                image_model=config.image_model,
            )
        logger.warning("No Gemini API key configured; using dry-run provider.")
    return DryRunProvider()
