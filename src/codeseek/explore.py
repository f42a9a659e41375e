"""
Text-level exploration of registered codebases.

Regex line search, file-name search and confined file reads. Line numbers
use the same splitting as the semantic index, so results from either can
be passed straight to read_file.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path

from codeseek.codebases import (
    MAX_FILE_SIZE,
    CodebaseRegistry,
    list_source_files,
    read_source,
    split_lines,
)
from codeseek.errors import ConfigurationError, ReadError

logger = logging.getLogger("codeseek.explore")

MAX_GREP_RESULTS = 100
MAX_FIND_RESULTS = 50
GREP_CONTEXT_LINES = 2


@dataclass
class GrepMatch:
    codebase: str
    file_path: str
    line_number: int
    line: str
    context_before: list[str] = field(default_factory=list)
    context_after: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FileMatch:
    codebase: str
    file_path: str
    file_name: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FileContent:
    codebase: str
    file_path: str
    content: str
    total_lines: int
    start_line: int | None = None
    end_line: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _select_codebases(
    registry: CodebaseRegistry, names: Sequence[str] | None
) -> list[tuple[str, Path]]:
    if names is None:
        return registry.all()
    return [(name, registry.require(name)) for name in names]


def grep(
    registry: CodebaseRegistry,
    pattern: str,
    codebase_names: Sequence[str] | None = None,
    case_sensitive: bool = False,
    context_lines: int = GREP_CONTEXT_LINES,
    max_results: int = MAX_GREP_RESULTS,
) -> list[GrepMatch]:
    """
    Search files line by line for a regular expression.

    Files that cannot be read or exceed MAX_FILE_SIZE are skipped.

    Raises:
        ConfigurationError: the pattern is not a valid regex.
        CollectionNotFound: an explicitly named codebase is unknown.
    """
    try:
        regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"Invalid regex pattern: {pattern} ({e})") from e

    context_lines = max(0, context_lines)
    results: list[GrepMatch] = []

    for name, root in _select_codebases(registry, codebase_names):
        for path in list_source_files(root):
            if len(results) >= max_results:
                return results
            try:
                if path.stat().st_size > MAX_FILE_SIZE:
                    continue
                lines = [line.rstrip("\r\n") for line in split_lines(read_source(path))]
            except (OSError, ReadError) as e:
                logger.warning("Failed to search in file %s: %s", path, e)
                continue

            rel_path = path.relative_to(root).as_posix()
            for i, line in enumerate(lines):
                if not regex.search(line):
                    continue
                results.append(
                    GrepMatch(
                        codebase=name,
                        file_path=rel_path,
                        line_number=i + 1,
                        line=line,
                        context_before=lines[max(0, i - context_lines) : i],
                        context_after=lines[i + 1 : i + 1 + context_lines],
                    )
                )
                if len(results) >= max_results:
                    return results

    return results


def _matches(pattern: str, rel_path: str, file_name: str) -> bool:
    pattern = pattern.lower()
    rel_path = rel_path.lower()
    file_name = file_name.lower()
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(file_name, pattern) or fnmatch.fnmatchcase(rel_path, pattern)
    return pattern in file_name or pattern in rel_path


def find_files(
    registry: CodebaseRegistry,
    pattern: str,
    codebase_names: Sequence[str] | None = None,
    max_results: int = MAX_FIND_RESULTS,
) -> list[FileMatch]:
    """
    Find files by name or path.

    Plain patterns match as case-insensitive substrings; patterns with
    ``*`` or ``?`` are shell wildcards. Exact file-name matches rank first,
    then names starting with the pattern, then shorter paths.
    """
    results: list[FileMatch] = []
    for name, root in _select_codebases(registry, codebase_names):
        if len(results) >= max_results:
            break
        for path in list_source_files(root):
            rel_path = path.relative_to(root).as_posix()
            if _matches(pattern, rel_path, path.name):
                results.append(FileMatch(codebase=name, file_path=rel_path, file_name=path.name))
                if len(results) >= max_results:
                    break

    needle = pattern.lower()

    def relevance(match: FileMatch) -> tuple[bool, bool, int]:
        lowered = match.file_name.lower()
        return (lowered != needle, not lowered.startswith(needle), len(match.file_path))

    results.sort(key=relevance)
    return results


def read_file(
    registry: CodebaseRegistry,
    codebase: str,
    file_path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> FileContent:
    """
    Read a file inside a codebase, optionally a 1-indexed inclusive line range.

    Out-of-range bounds are clamped to the file. An empty file reports no
    range (start_line and end_line stay None).

    Raises:
        CollectionNotFound: codebase is unknown.
        FileNotFoundError: the path escapes the codebase or does not exist.
        ReadError: the file is too large or unreadable.
    """
    resolved = registry.resolve_file(codebase, file_path)
    if resolved is None or not resolved.is_file():
        raise FileNotFoundError(f'File not found: {file_path} in codebase "{codebase}"')

    try:
        size = resolved.stat().st_size
    except OSError as e:
        raise ReadError(f"Failed to read file {file_path}: {e}") from e
    if size > MAX_FILE_SIZE:
        raise ReadError(f"File too large: {size} bytes (max {MAX_FILE_SIZE} bytes)")

    content = read_source(resolved)
    lines = split_lines(content)
    total = len(lines)
    root = registry.require(codebase)
    result = FileContent(
        codebase=codebase,
        file_path=resolved.relative_to(root).as_posix(),
        content=content,
        total_lines=total,
    )

    # An empty file has no line range to report
    if total and (start_line is not None or end_line is not None):
        start = max(1, min(start_line if start_line is not None else 1, total))
        end = max(start, min(end_line if end_line is not None else total, total))
        result.content = "".join(lines[start - 1 : end])
        result.start_line = start
        result.end_line = end

    return result
