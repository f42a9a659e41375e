"""
Embedding backends and the lazily initialized Embedder adapter.

A backend turns one text into one vector, synchronously. The Embedder
wraps a backend factory: the first call builds the backend exactly once
(concurrent first callers share the outcome), and blocking backend work
runs on a dedicated thread pool so the event loop is never stalled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Protocol

from google import genai
from google.api_core.exceptions import ResourceExhausted
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from codeseek.config import Settings
from codeseek.errors import EmbedError, EmbeddingUnavailable

logger = logging.getLogger("codeseek.embeddings")

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

TASK_DOCUMENT = "RETRIEVAL_DOCUMENT"
TASK_QUERY = "RETRIEVAL_QUERY"
MAX_RETRIES = 3  # Max retry attempts on rate limiting

# Dedicated thread pool for embedding and file I/O (avoids starving the default executor)
EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="codeseek")

# Default key file locations (checked in order)
DEFAULT_KEY_FILES = [
    Path.home() / ".config" / "codeseek" / "api_key",
    Path.home() / ".gemini-api-key",
]


class EmbeddingBackend(Protocol):
    def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> Sequence[float]: ...


# ─────────────────────────────────────────────────────────────────────────────
# Backends
# ─────────────────────────────────────────────────────────────────────────────


def load_api_key(key_file: Path | None = None) -> str | None:
    """Load API key from an explicit file, the environment, or a key file."""
    # 1. Explicit key file (--api-key-file)
    if key_file is not None:
        try:
            api_key = key_file.read_text().strip()
            if api_key:
                logger.info("Loaded API key from %s (--api-key-file)", key_file)
                return api_key
        except OSError as e:
            logger.warning("Could not read --api-key-file %s: %s", key_file, e)

    # 2. Environment variables
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if api_key:
        return api_key

    # 3. Default key files
    for path in DEFAULT_KEY_FILES:
        if path.exists():
            try:
                api_key = path.read_text().strip()
                if api_key:
                    logger.info("Loaded API key from %s", path)
                    return api_key
            except OSError as e:
                logger.warning("Could not read %s: %s", path, e)

    return None


def get_client(key_file: Path | None = None) -> genai.Client:
    """Create a Gemini API client from environment or key file."""
    api_key = load_api_key(key_file)
    if not api_key:
        raise ValueError(
            "Gemini API key not found. Set GEMINI_API_KEY environment variable "
            f"or create {DEFAULT_KEY_FILES[0]}"
        )
    return genai.Client(api_key=api_key)


class GeminiBackend:
    """Embeddings from the Gemini embedding API."""

    def __init__(self, client: genai.Client, model: str):
        self.client = client
        self.model = model

    @retry(
        stop=stop_after_attempt(MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(ResourceExhausted),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        response = self.client.models.embed_content(
            model=self.model,
            contents=[text],
            config={"task_type": task_type},
        )
        return list(response.embeddings[0].values)


class SentenceTransformerBackend:
    """Local embeddings via sentence-transformers (``codeseek[local]``)."""

    def __init__(self, model_name: str):
        from sentence_transformers import SentenceTransformer  # heavy, import on demand

        self.model = SentenceTransformer(model_name)

    def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        # Symmetric model: task_type does not apply
        vector = self.model.encode([text], normalize_embeddings=True, show_progress_bar=False)[0]
        return vector.tolist()


def backend_factory(
    settings: Settings, key_file: Path | None = None
) -> Callable[[], EmbeddingBackend]:
    """Return a zero-argument callable that builds the configured backend."""
    if settings.embedding_backend == "sentence_transformers":
        return partial(SentenceTransformerBackend, settings.embedding_model)

    def build() -> EmbeddingBackend:
        return GeminiBackend(get_client(key_file), settings.embedding_model)

    return build


# ─────────────────────────────────────────────────────────────────────────────
# Embedder
# ─────────────────────────────────────────────────────────────────────────────


class Embedder:
    """
    Lazily initialized adapter around an embedding backend.

    Initialization happens at most once: concurrent first callers block on
    the same lock and observe the same result. A failed initialization is
    remembered and re-raised as EmbeddingUnavailable on every later call
    until reset() is called.
    """

    def __init__(
        self,
        factory: Callable[[], EmbeddingBackend],
        executor: ThreadPoolExecutor | None = None,
    ):
        self._factory = factory
        self._executor = executor or EXECUTOR
        self._backend: EmbeddingBackend | None = None
        self._init_error: EmbeddingUnavailable | None = None
        self._init_lock = threading.Lock()
        self._dim_lock = threading.Lock()
        self.dimensions: int | None = None

    @property
    def initialized(self) -> bool:
        return self._backend is not None

    def _ensure_backend(self) -> EmbeddingBackend:
        backend = self._backend
        if backend is not None:
            return backend
        with self._init_lock:
            if self._backend is not None:
                return self._backend
            if self._init_error is not None:
                raise self._init_error
            logger.info("Initializing embedding backend")
            try:
                self._backend = self._factory()
            except Exception as e:
                self._init_error = EmbeddingUnavailable(
                    f"Failed to initialize embedding backend: {e}"
                )
                logger.error("%s", self._init_error)
                raise self._init_error from e
            return self._backend

    def reset(self) -> None:
        """Forget the backend (or its failure) so the next call reinitializes."""
        with self._init_lock:
            self._backend = None
            self._init_error = None
        with self._dim_lock:
            self.dimensions = None

    def embed_sync(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        backend = self._ensure_backend()
        try:
            vector = [float(v) for v in backend.embed(text, task_type)]
        except Exception as e:
            raise EmbedError(f"Embedding failed: {e}") from e

        if not vector:
            raise EmbedError("Embedding backend returned an empty vector")
        with self._dim_lock:
            if self.dimensions is None:
                self.dimensions = len(vector)
            elif len(vector) != self.dimensions:
                raise EmbedError(
                    f"Embedding has {len(vector)} dimensions, expected {self.dimensions}"
                )
        return vector

    async def ensure_ready(self) -> None:
        """Initialize the backend if needed, raising EmbeddingUnavailable on failure."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._ensure_backend)

    async def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, partial(self.embed_sync, text, task_type)
        )
