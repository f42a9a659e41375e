"""Shared fixtures: deterministic embedding backends and a codebase on disk."""

import re
import threading
import time

import pytest

from codeseek.codebases import CodebaseRegistry
from codeseek.config import CodebaseConfig
from codeseek.embeddings import TASK_DOCUMENT, Embedder
from codeseek.index import CodeSearch


class KeywordBackend:
    """Embeds text as a 0/1 vector over a fixed vocabulary of words."""

    def __init__(self, vocabulary, delay: float = 0.0, fail_on: str | None = None):
        self.vocabulary = list(vocabulary)
        self.delay = delay
        self.fail_on = fail_on
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def embed(self, text: str, task_type: str = TASK_DOCUMENT) -> list[float]:
        with self._lock:
            self.calls.append((text, task_type))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_on and self.fail_on in text:
                raise RuntimeError(f"cannot embed text containing {self.fail_on!r}")
            words = set(re.findall(r"\w+", text))
            return [1.0 if w in words else 0.0 for w in self.vocabulary]
        finally:
            with self._lock:
                self.in_flight -= 1


TOKENS = [f"tok{i}" for i in range(1, 13)]


@pytest.fixture
def backend():
    return KeywordBackend(TOKENS + ["alpha", "beta", "gamma"])


@pytest.fixture
def embedder(backend):
    return Embedder(lambda: backend)


@pytest.fixture
def demo_root(tmp_path):
    """A codebase with one 12-line file whose lines are tok1..tok12."""
    root = tmp_path / "demo"
    root.mkdir()
    (root / "main.py").write_text("".join(f"{t}\n" for t in TOKENS))
    return root


@pytest.fixture
def registry(demo_root, tmp_path):
    other = tmp_path / "other"
    other.mkdir()
    return CodebaseRegistry(
        [
            CodebaseConfig("demo", str(demo_root)),
            CodebaseConfig("registered-but-unindexed", str(other)),
        ],
        state_file=tmp_path / "state" / "codebases.json",
    )


@pytest.fixture
def service(registry, embedder):
    return CodeSearch(registry, embedder, chunk_size=5, chunk_overlap=2, batch_size=2)
