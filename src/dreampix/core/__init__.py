"""Core functionality for Dreampix.

Architecture Overview
---------------------
The core is layered leaf-first:

1. **Collage Compositor** (collage.py):
   - Pure function turning 2-4 images into one PNG grid

2. **Persistent Store** (store.py):
   - SQLite file with ``accounts``, ``gallery`` and ``history`` tables
   - ``gallery_by_owner`` secondary index
   - Additive, versioned migrations run on open

3. **Account Registry** (accounts.py):
   - Register/authenticate on top of the store

4. **Orchestration Engine** (orchestrator.py):
   - Parallel fan-out of generation calls with partial-failure tolerance
   - Collage policy, prompt enhancement, explanation
   - Gallery/history persistence policy

Supporting modules:

- config.py: Pydantic Settings configuration (DREAMPIX_ prefix)
- models.py: Account, GeneratedImage and GenerationResult dataclasses
- errors.py: StoreError, AuthError, GenerationError, CompositionError
- providers.py: Gemini and dry-run generation providers

Usage Example
-------------
    from dreampix.core import GenerationOrchestrator, ImageStore, build_provider, config

    store = ImageStore(config.db_path).open()
    orchestrator = GenerationOrchestrator(build_provider(config), store)
    result = orchestrator.generate("a lighthouse at dusk", count=2)
"""

from dreampix.core.accounts import AccountRegistry
from dreampix.core.collage import compose
from dreampix.core.config import DreampixConfig, config
from dreampix.core.errors import (
    AuthError,
    AuthErrorKind,
    CompositionError,
    DreampixError,
    GenerationError,
    StoreError,
    StoreErrorKind,
)
from dreampix.core.models import Account, GeneratedImage, GenerationResult
from dreampix.core.orchestrator import GenerationOrchestrator
from dreampix.core.providers import DryRunProvider, GeminiProvider, ImageProvider, build_provider
from dreampix.core.store import Collection, ImageStore

__all__ = [
    "Account",
    "AccountRegistry",
    "AuthError",
    "AuthErrorKind",
    "Collection",
    "CompositionError",
    "DreampixConfig",
    "DreampixError",
    "DryRunProvider",
    "GeminiProvider",
    "GeneratedImage",
    "GenerationError",
    "GenerationOrchestrator",
    "GenerationResult",
    "ImageProvider",
    "ImageStore",
    "StoreError",
    "StoreErrorKind",
    "build_provider",
    "compose",
    "config",
]
