"""
Codebase registry and file collaborators.

Maps codebase names to root directories, enumerates the source files
under a root (allow-listed extensions, ignore names, .gitignore), and
reads files with path confinement.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from pathlib import Path

import pathspec

from codeseek.config import CodebaseConfig, data_home
from codeseek.errors import CollectionNotFound, ConfigurationError, ReadError

logger = logging.getLogger("codeseek.codebases")

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Source, config and documentation files worth indexing
CODE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".py", ".java", ".cpp", ".c", ".h", ".hpp",
    ".cs", ".go", ".rs", ".rb", ".php", ".swift", ".kt", ".scala", ".vue",
    ".dart", ".r", ".m", ".mm", ".sh", ".bash", ".zsh", ".yaml", ".yml",
    ".json", ".xml", ".html", ".css", ".scss", ".sass", ".less", ".sql",
    ".md", ".markdown", ".txt", ".toml",
}

# Build artifacts, dependency dirs, VCS metadata and lock files
IGNORE_NAMES = {
    "node_modules", ".git", ".hg", ".svn", ".next", ".nuxt", "dist", "build",
    ".cache", "coverage", "__pycache__", ".venv", ".env", ".DS_Store",
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock",
    "Cargo.lock", "uv.lock",
}

MINIFIED_SUFFIXES = (".min.js", ".min.css")


# ─────────────────────────────────────────────────────────────────────────────
# File helpers
# ─────────────────────────────────────────────────────────────────────────────


def split_lines(text: str) -> list[str]:
    """
    Split text into lines on ``\\n``, keeping each line's newline.

    ``"".join(split_lines(text)) == text`` always holds. A trailing newline
    does not start an extra empty line.
    """
    if not text:
        return []
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


def read_source(path: Path) -> str:
    """Read a file as UTF-8, replacing undecodable bytes."""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ReadError(f"Failed to read {path}: {e}") from e


def is_source_file(name: str) -> bool:
    lowered = name.lower()
    if lowered.endswith(MINIFIED_SUFFIXES):
        return False
    return os.path.splitext(lowered)[1] in CODE_EXTENSIONS


def load_gitignore(root: Path) -> pathspec.PathSpec | None:
    """Load .gitignore patterns for filtering files."""
    gitignore = root / ".gitignore"
    if not gitignore.is_file():
        return None
    try:
        patterns = gitignore.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s: %s", gitignore, e)
        return None
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def list_source_files(root: Path) -> list[Path]:
    """
    Enumerate indexable files under root in a deterministic order.

    Walks iteratively with an explicit stack. Symlinks are not followed, so
    every file returned lies under root; directories are still identified by
    (device, inode) and visited once. Within a directory, files come first in
    name order, then each subdirectory in name order.

    Raises:
        FileNotFoundError: root does not exist.
        NotADirectoryError: root is not a directory.
    """
    root = Path(root)
    if not root.exists():
        raise FileNotFoundError(f"Codebase path does not exist: {root}")
    if not root.is_dir():
        raise NotADirectoryError(f"Codebase path is not a directory: {root}")

    ignore_spec = load_gitignore(root)
    files: list[Path] = []
    visited: set[tuple[int, int]] = set()
    stack = [root]

    while stack:
        directory = stack.pop()
        try:
            st = directory.stat()
        except OSError:
            continue
        key = (st.st_dev, st.st_ino)
        if key in visited:
            continue
        visited.add(key)

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.warning("Failed to read directory %s: %s", directory, e)
            continue

        subdirs: list[Path] = []
        for entry in entries:
            if entry.name in IGNORE_NAMES:
                continue
            path = Path(entry.path)
            rel = path.relative_to(root).as_posix()
            try:
                if entry.is_dir(follow_symlinks=False):
                    if ignore_spec and ignore_spec.match_file(rel + "/"):
                        continue
                    subdirs.append(path)
                elif entry.is_file(follow_symlinks=False) and is_source_file(entry.name):
                    if ignore_spec and ignore_spec.match_file(rel):
                        continue
                    files.append(path)
            except OSError:
                continue

        # Reversed so the stack pops subdirectories in name order
        stack.extend(reversed(subdirs))

    return files


# ─────────────────────────────────────────────────────────────────────────────
# CodebaseRegistry
# ─────────────────────────────────────────────────────────────────────────────


def default_state_file() -> Path:
    return data_home() / "codebases.json"


class CodebaseRegistry:
    """
    Named codebases and their root directories.

    Configured codebases are registered at construction (those whose path
    is missing are logged and skipped). Codebases added at runtime are
    persisted to a JSON state file and reloaded on the next start.
    """

    def __init__(
        self,
        codebases: Iterable[CodebaseConfig] = (),
        state_file: Path | None = None,
    ):
        self.state_file = state_file
        self._codebases: dict[str, Path] = {}
        self._added: dict[str, str] = {}
        self._lock = threading.Lock()

        for cb in codebases:
            self._register_existing(cb.name, cb.path, "config")
        for cb in self._load_state():
            if cb.name in self._codebases:
                continue
            if self._register_existing(cb.name, cb.path, "state"):
                self._added[cb.name] = cb.path

    def _register_existing(self, name: str, path: str, origin: str) -> bool:
        root = Path(os.path.expanduser(path))
        if not root.is_dir():
            logger.warning("Codebase path does not exist: %s (%s, from %s)", path, name, origin)
            return False
        self._codebases[name] = root.resolve()
        return True

    def _load_state(self) -> list[CodebaseConfig]:
        if self.state_file is None or not self.state_file.is_file():
            return []
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            return [CodebaseConfig(name=c["name"], path=c["path"]) for c in data["codebases"]]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable codebase state %s: %s", self.state_file, e)
            return []

    def _save_state(self) -> None:
        if self.state_file is None:
            return
        payload = {
            "codebases": [{"name": n, "path": p} for n, p in self._added.items()]
        }
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            # Registration still holds for this process
            logger.warning("Failed to save codebase state %s: %s", self.state_file, e)

    def resolve(self, name: str) -> Path | None:
        with self._lock:
            return self._codebases.get(name)

    def require(self, name: str) -> Path:
        root = self.resolve(name)
        if root is None:
            raise CollectionNotFound(name)
        return root

    def all(self) -> list[tuple[str, Path]]:
        with self._lock:
            return list(self._codebases.items())

    def add(self, name: str, path: str) -> Path:
        """Register a new codebase and persist it."""
        if not name or not name.strip():
            raise ConfigurationError("Codebase name must not be empty")
        root = Path(os.path.expanduser(path))
        if not root.exists():
            raise ConfigurationError(f"Path does not exist: {path}")
        if not root.is_dir():
            raise ConfigurationError(f"Path is not a directory: {path}")

        with self._lock:
            if name in self._codebases:
                raise ConfigurationError(f'Codebase with name "{name}" already exists')
            self._codebases[name] = root.resolve()
            self._added[name] = str(root.resolve())
            self._save_state()
        logger.info("Added codebase %s -> %s", name, root)
        return root.resolve()

    def remove(self, name: str) -> None:
        with self._lock:
            if name not in self._codebases:
                raise CollectionNotFound(name)
            del self._codebases[name]
            if self._added.pop(name, None) is not None:
                self._save_state()
            else:
                logger.info("Codebase %s comes from configuration; it returns on restart", name)

    def resolve_file(self, name: str, file_path: str) -> Path | None:
        """
        Resolve a path relative to a codebase root.

        Returns None when the path escapes the root or does not exist.

        Raises:
            CollectionNotFound: name is not registered.
        """
        root = self.require(name)
        try:
            resolved = (root / os.path.normpath(file_path)).resolve()
        except (OSError, RuntimeError):
            return None
        if not resolved.is_relative_to(root):
            return None
        if not resolved.exists():
            return None
        return resolved
