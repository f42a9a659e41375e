"""
codeseek semantic search index.

Splits source files into overlapping line windows, embeds each window,
keeps the vectors in memory per codebase, and ranks them against a query
by cosine similarity. The index is volatile: rebuild it after a restart.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import logging
import math
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from functools import partial
from operator import itemgetter
from pathlib import Path
from typing import Union

from opentelemetry import trace

from codeseek.codebases import (
    MAX_FILE_SIZE,
    CodebaseRegistry,
    list_source_files,
    read_source,
    split_lines,
)
from codeseek.config import BATCH_SIZE, CHUNK_OVERLAP, CHUNK_SIZE
from codeseek.embeddings import EXECUTOR, TASK_QUERY, Embedder
from codeseek.errors import (
    ConfigurationError,
    EmbedError,
    EmbeddingUnavailable,
    ReadError,
)

logger = logging.getLogger("codeseek.index")
tracer = trace.get_tracer("codeseek")

DEFAULT_SEARCH_LIMIT = 10

# Type alias for progress callbacks (sync or async)
ProgressCallback = Union[
    Callable[[str, int, int], Awaitable[None]],  # async with (message, current, total)
    Callable[[str], None],  # sync with just message
]


# ─────────────────────────────────────────────────────────────────────────────
# Data model
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Chunk:
    """A line range of one file. Lines are 1-indexed and inclusive."""

    collection: str
    file_path: str
    start_line: int
    end_line: int
    text: str


@dataclass(frozen=True)
class IndexedEntry:
    chunk: Chunk
    vector: tuple[float, ...]


@dataclass(frozen=True)
class ScoredChunk:
    text: str
    file_path: str
    collection: str
    start_line: int
    end_line: int
    score: float

    @classmethod
    def from_entry(cls, entry: IndexedEntry, score: float) -> ScoredChunk:
        c = entry.chunk
        return cls(c.text, c.file_path, c.collection, c.start_line, c.end_line, score)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IndexOptions:
    max_files: int | None = None
    batch_size: int = BATCH_SIZE
    skip_large_files: bool = True
    dry_run: bool = False

    def validate(self) -> None:
        if self.max_files is not None and self.max_files < 0:
            raise ConfigurationError(f"max_files must be >= 0, got {self.max_files}")
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")


@dataclass
class IndexReport:
    """Counts from one index run. indexed + skipped == total always holds."""

    indexed_file_count: int
    total_file_count: int
    skipped_file_count: int
    chunk_count: int
    discovered_file_count: int = 0
    failed_chunk_count: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _FileOutcome:
    entries: list[IndexedEntry] = field(default_factory=list)
    chunk_count: int = 0
    failed_chunks: int = 0
    skipped: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# Chunking & scoring
# ─────────────────────────────────────────────────────────────────────────────


def validate_chunking(window_size: int, overlap: int) -> None:
    """Reject window parameters that would never advance the cursor."""
    if window_size < 1:
        raise ConfigurationError(f"chunk size must be >= 1, got {window_size}")
    if overlap < 0:
        raise ConfigurationError(f"chunk overlap must be >= 0, got {overlap}")
    if overlap >= window_size:
        raise ConfigurationError(
            f"chunk overlap ({overlap}) must be smaller than chunk size ({window_size})"
        )


def chunk_text(text: str, window_size: int, overlap: int) -> list[tuple[str, int, int]]:
    """
    Split text into overlapping windows of at most window_size lines.

    Each window after the first starts ``overlap`` lines before the end of
    the previous one. The last window ends on the last line.

    Returns:
        List of (text, start_line, end_line), 1-indexed and inclusive.
    """
    validate_chunking(window_size, overlap)
    lines = split_lines(text)
    chunks = []
    start = 0
    while lines:
        end = min(start + window_size, len(lines))
        chunks.append(("".join(lines[start:end]), start + 1, end))
        if end >= len(lines):
            break
        start = end - overlap
    return chunks


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for zero-norm or mismatched vectors."""
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    denominator = norm_a * norm_b
    return 0.0 if denominator == 0 else dot / denominator


def rank(
    query_vector: Sequence[float],
    candidates: Sequence[IndexedEntry],
    limit: int,
) -> list[tuple[float, IndexedEntry]]:
    """
    Score every candidate and keep the top ``limit``.

    Equal scores keep candidate order (heapq.nlargest is stable).
    """
    scored = ((cosine_similarity(query_vector, e.vector), e) for e in candidates)
    return heapq.nlargest(limit, scored, key=itemgetter(0))


# ─────────────────────────────────────────────────────────────────────────────
# VectorIndex
# ─────────────────────────────────────────────────────────────────────────────


class VectorIndex:
    """
    In-memory collections of embedded chunks.

    A collection is only ever swapped whole. Readers get the tuple that was
    current when they asked, so a concurrent replace is seen fully or not
    at all.
    """

    def __init__(self):
        self._collections: dict[str, tuple[IndexedEntry, ...]] = {}
        self._lock = threading.Lock()

    def replace(self, name: str, entries: Sequence[IndexedEntry]) -> None:
        snapshot = tuple(entries)
        with self._lock:
            self._collections[name] = snapshot

    def entries_for(
        self, names: Sequence[str] | None = None
    ) -> list[tuple[str, tuple[IndexedEntry, ...]]]:
        """
        Snapshot (name, entries) pairs.

        With names=None every collection is returned in first-indexed order;
        otherwise the given order is kept and unknown names are left out.
        """
        with self._lock:
            if names is None:
                return list(self._collections.items())
            result = []
            for name in dict.fromkeys(names):
                entries = self._collections.get(name)
                if entries is not None:
                    result.append((name, entries))
            return result

    def clear(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._collections.clear()
            else:
                self._collections.pop(name, None)

    def list_collections(self) -> list[str]:
        with self._lock:
            return list(self._collections)

    def count(self, name: str) -> int:
        with self._lock:
            return len(self._collections.get(name, ()))


# ─────────────────────────────────────────────────────────────────────────────
# IndexingPipeline
# ─────────────────────────────────────────────────────────────────────────────


async def _notify_progress(
    callback: ProgressCallback | None,
    message: str,
    current: int = 0,
    total: int = 0,
) -> None:
    """
    Call progress callback, handling both sync and async variants.

    Introspects the callback signature to determine how many arguments it accepts.
    """
    if callback is None:
        return

    params_count = len(inspect.signature(callback).parameters)

    if inspect.iscoroutinefunction(callback):
        if params_count >= 3:
            await callback(message, current, total)
        else:
            await callback(message)  # type: ignore[call-arg]
    else:
        if params_count >= 3:
            callback(message, current, total)  # type: ignore[call-arg]
        else:
            callback(message)


class IndexingPipeline:
    """
    Enumerate, read, chunk and embed a codebase, then swap it into the index.

    Files are processed in sequential batches of ``batch_size``; files within
    a batch run concurrently, chunks within a file run in order. Per-file
    and per-chunk failures are counted, never raised. Re-indexing the same
    name concurrently is not supported: the last run to finish wins.
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_index: VectorIndex,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        list_files: Callable[[Path], list[Path]] = list_source_files,
        max_file_size: int = MAX_FILE_SIZE,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.embedder = embedder
        self.vector_index = vector_index
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.list_files = list_files
        self.max_file_size = max_file_size
        self._executor = executor or EXECUTOR

    async def _index_file(
        self, collection: str, root: Path, path: Path, options: IndexOptions
    ) -> _FileOutcome:
        loop = asyncio.get_running_loop()
        try:
            rel_path = path.relative_to(root).as_posix()
        except ValueError:
            rel_path = path.as_posix()

        try:
            if options.skip_large_files:
                size = await loop.run_in_executor(self._executor, lambda: path.stat().st_size)
                if size > self.max_file_size:
                    logger.warning(
                        "Skipping large file: %s (%.2fMB)", rel_path, size / 1024 / 1024
                    )
                    return _FileOutcome(skipped=True)
            content = await loop.run_in_executor(self._executor, read_source, path)
        except (OSError, ReadError) as e:
            logger.warning("Failed to index file %s: %s", rel_path, e)
            return _FileOutcome(skipped=True)

        windows = chunk_text(content, self.chunk_size, self.chunk_overlap)
        if options.dry_run:
            return _FileOutcome(chunk_count=len(windows))

        outcome = _FileOutcome()
        for text, start, end in windows:
            try:
                vector = await self.embedder.embed(text)
            except EmbedError as e:
                outcome.failed_chunks += 1
                logger.warning(
                    "Failed to generate embedding for chunk %s:%d-%d: %s", rel_path, start, end, e
                )
                continue
            chunk = Chunk(collection, rel_path, start, end, text)
            outcome.entries.append(IndexedEntry(chunk, tuple(vector)))

        outcome.chunk_count = len(outcome.entries)
        if windows and not outcome.entries:
            logger.warning("Skipping %s: no chunk could be embedded", rel_path)
            outcome.skipped = True
        return outcome

    async def index(
        self,
        collection: str,
        root: Path,
        options: IndexOptions | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IndexReport:
        """
        Index every eligible file under root into ``collection``.

        Raises:
            ConfigurationError: invalid chunking or batching parameters.
            EmbeddingUnavailable: the embedding backend cannot be initialized.
            OSError: the file enumeration failed.
        """
        options = options or IndexOptions()
        validate_chunking(self.chunk_size, self.chunk_overlap)
        options.validate()

        with tracer.start_as_current_span("index_codebase") as span:
            span.set_attribute("codeseek.codebase", collection)
            span.set_attribute("codeseek.dry_run", options.dry_run)
            t0 = time.monotonic()

            if not options.dry_run:
                await self.embedder.ensure_ready()

            loop = asyncio.get_running_loop()
            files = await loop.run_in_executor(self._executor, self.list_files, root)
            files_to_index = files if options.max_files is None else files[: options.max_files]
            total = len(files_to_index)

            await _notify_progress(
                progress_callback,
                f'Indexing {total} files in codebase "{collection}"...',
                0,
                total,
            )

            entries: list[IndexedEntry] = []
            indexed = skipped = chunk_count = failed_chunks = 0

            for i in range(0, total, options.batch_size):
                batch = files_to_index[i : i + options.batch_size]
                tasks = [self._index_file(collection, root, p, options) for p in batch]
                results = await asyncio.gather(*tasks, return_exceptions=True)

                for path, result in zip(batch, results):
                    if isinstance(result, EmbeddingUnavailable):
                        raise result
                    if isinstance(result, BaseException) and not isinstance(result, Exception):
                        raise result  # cancellation
                    if isinstance(result, Exception):
                        logger.warning("Failed to index file %s: %s", path, result)
                        skipped += 1
                        continue
                    failed_chunks += result.failed_chunks
                    if result.skipped:
                        skipped += 1
                        continue
                    indexed += 1
                    chunk_count += result.chunk_count
                    entries.extend(result.entries)

                done = min(i + options.batch_size, total)
                await _notify_progress(
                    progress_callback, f"Progress: {done}/{total} files", done, total
                )

            if not options.dry_run:
                self.vector_index.replace(collection, entries)

            report = IndexReport(
                indexed_file_count=indexed,
                total_file_count=total,
                skipped_file_count=skipped,
                chunk_count=chunk_count,
                discovered_file_count=len(files),
                failed_chunk_count=failed_chunks,
                dry_run=options.dry_run,
            )
            span.set_attribute("codeseek.files_indexed", indexed)
            span.set_attribute("codeseek.chunks", chunk_count)

            summary = (
                f'{"Dry run: " if options.dry_run else ""}{chunk_count} chunks from '
                f'{indexed} files in codebase "{collection}" ({skipped} skipped)'
            )
            logger.info("%s in %.1fs", summary, time.monotonic() - t0)
            await _notify_progress(progress_callback, f"Done: {summary}", total, total)
            return report


# ─────────────────────────────────────────────────────────────────────────────
# SearchEngine
# ─────────────────────────────────────────────────────────────────────────────


class SearchEngine:
    """Ranks indexed chunks against a query. Never mutates the index."""

    def __init__(
        self,
        embedder: Embedder,
        vector_index: VectorIndex,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.embedder = embedder
        self.vector_index = vector_index
        self._executor = executor or EXECUTOR

    async def search(
        self,
        query: str,
        collection_names: Sequence[str] | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[ScoredChunk]:
        """
        Return up to ``limit`` chunks by descending cosine similarity.

        Ties keep enumeration order (collection order, then entry order).
        Collections that were never indexed contribute nothing.
        """
        if limit < 1:
            raise ConfigurationError(f"limit must be >= 1, got {limit}")

        with tracer.start_as_current_span("codebase_search") as span:
            span.set_attribute("codeseek.limit", limit)
            snapshot = self.vector_index.entries_for(collection_names)
            candidates = [entry for _, entries in snapshot for entry in entries]
            span.set_attribute("codeseek.candidates", len(candidates))
            if not candidates:
                return []

            query_vector = await self.embedder.embed(query, TASK_QUERY)
            loop = asyncio.get_running_loop()
            top = await loop.run_in_executor(
                self._executor, partial(rank, query_vector, candidates, limit)
            )
            return [ScoredChunk.from_entry(entry, score) for score, entry in top]


# ─────────────────────────────────────────────────────────────────────────────
# CodeSearch
# ─────────────────────────────────────────────────────────────────────────────


class CodeSearch:
    """
    Indexing and semantic search over registered codebases.

    Owns one VectorIndex for its lifetime and shares it between the
    pipeline (the only writer) and the search engine.
    """

    def __init__(
        self,
        registry: CodebaseRegistry,
        embedder: Embedder,
        vector_index: VectorIndex | None = None,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
        batch_size: int = BATCH_SIZE,
        list_files: Callable[[Path], list[Path]] = list_source_files,
    ):
        self.registry = registry
        self.embedder = embedder
        self.vector_index = vector_index if vector_index is not None else VectorIndex()
        self.batch_size = batch_size
        self.pipeline = IndexingPipeline(
            embedder,
            self.vector_index,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            list_files=list_files,
        )
        self.search_engine = SearchEngine(embedder, self.vector_index)

    async def index_codebase(
        self,
        name: str,
        options: IndexOptions | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IndexReport:
        root = self.registry.require(name)
        options = options or IndexOptions(batch_size=self.batch_size)
        return await self.pipeline.index(name, root, options, progress_callback)

    async def search(
        self,
        query: str,
        codebase_names: Sequence[str] | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[ScoredChunk]:
        if codebase_names is not None:
            for name in codebase_names:
                self.registry.require(name)
        return await self.search_engine.search(query, codebase_names, limit)

    def list_indexed_collections(self) -> list[str]:
        return self.vector_index.list_collections()

    def clear_index(self, name: str | None = None) -> None:
        """Drop one collection, or all of them. Unknown names are ignored."""
        self.vector_index.clear(name)
