"""Dreampix - prompt-to-image generation with a local gallery and history."""

__version__ = "0.3.0"

from dreampix.core.config import DreampixConfig, config
from dreampix.core.orchestrator import GenerationOrchestrator
from dreampix.core.store import Collection, ImageStore

__all__ = [
    "Collection",
    "DreampixConfig",
    "GenerationOrchestrator",
    "ImageStore",
    "config",
]
