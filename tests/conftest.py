"""Shared pytest fixtures for Dreampix tests."""

import io
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator

import pytest
from PIL import Image

from dreampix.core.config import DreampixConfig
from dreampix.core.store import ImageStore


def make_png(color: str = "red", size: tuple[int, int] = (32, 32)) -> bytes:
    """Encode a solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeProvider:
    """Scripted generation provider.

    ``outcomes`` maps a prompt to the results handed out, in call order, to
    calls with that prompt.  Each result is bytes, ``None`` or an exception
    instance to raise.  Prompts without a script get a PNG.
    """

    name = "fake"

    def __init__(self) -> None:
        self.outcomes: dict[str, list] = {}
        self.calls: list[tuple[str, str, bytes | None]] = []
        self.enhance_error: Exception | None = None
        self.explain_calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def generate_image(self, prompt, aspect_ratio, reference_image=None):
        with self._lock:
            self.calls.append((prompt, aspect_ratio, reference_image))
            script = self.outcomes.get(prompt)
            outcome = script.pop(0) if script else make_png()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def enhance_prompt(self, prompt):
        if self.enhance_error is not None:
            raise self.enhance_error
        return f"{prompt}, enhanced"

    def explain(self, original, enhanced):
        self.explain_calls.append((original, enhanced))
        return f"'{enhanced}' adds detail to '{original}'."


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> DreampixConfig:
    """Create a test configuration rooted in a temporary directory.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        DreampixConfig instance for testing
    """
    return DreampixConfig(
        data_dir=str(temp_dir / "data"),
        provider="dryrun",
        gemini_api_key=None,
        _env_file=None,
    )


@pytest.fixture
def store(temp_dir: Path) -> ImageStore:
    """An opened store in a fresh database file."""
    return ImageStore(temp_dir / "store.sqlite").open()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    """Factory producing solid-colour PNG payloads."""
    return make_png


@pytest.fixture
def test_client(test_config: DreampixConfig, fake_provider: FakeProvider):
    """FastAPI TestClient wired to a temporary store and the fake provider."""
    from fastapi.testclient import TestClient

    from dreampix.api.main import create_app

    app = create_app(test_config, provider=fake_provider)
    with TestClient(app) as client:
        yield client
