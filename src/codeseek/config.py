"""
Configuration loading for codeseek.

Settings come from a TOML file ($CODESEEK_CONFIG_FILE, or
$XDG_CONFIG_HOME/codeseek/config.toml) with the codebase list optionally
overridden by the $CODESEEK_CODEBASES environment variable (JSON).
Problems with either source are logged and fall back to defaults.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("codeseek.config")

# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_BACKEND = "gemini"
DEFAULT_MODELS = {
    "gemini": "gemini-embedding-001",
    "sentence_transformers": "all-MiniLM-L6-v2",
}
CHUNK_SIZE = 50  # lines per chunk
CHUNK_OVERLAP = 10  # overlapping lines between chunks
BATCH_SIZE = 50  # files embedded concurrently per batch


@dataclass(frozen=True)
class CodebaseConfig:
    name: str
    path: str


@dataclass
class Settings:
    """Resolved server settings."""

    embedding_backend: str = DEFAULT_BACKEND
    embedding_model: str = DEFAULT_MODELS[DEFAULT_BACKEND]
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    batch_size: int = BATCH_SIZE
    codebases: list[CodebaseConfig] = field(default_factory=list)
    source: str = "defaults"


def config_home() -> Path:
    """Get the XDG config directory for codeseek."""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return Path(base) / "codeseek"


def data_home() -> Path:
    """Get the XDG data directory for codeseek."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / "codeseek"


def config_path() -> Path:
    override = os.environ.get("CODESEEK_CONFIG_FILE")
    if override:
        return Path(os.path.expanduser(override))
    return config_home() / "config.toml"


def load_config(path: Path | None = None) -> dict:
    """Load the TOML config file.

    Returns parsed dict, or empty dict if the file doesn't exist.
    Logs a warning on parse errors (non-fatal).
    """
    path = path or config_path()

    if not path.is_file():
        logger.debug("No config file at %s", path)
        return {}

    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
        logger.info("Loaded config from %s", path)
        return config
    except tomllib.TOMLDecodeError as e:
        logger.warning("Invalid TOML in %s: %s", path, e)
        return {}
    except OSError as e:
        logger.warning("Could not read config %s: %s", path, e)
        return {}


def _parse_codebases(raw: object, origin: str) -> list[CodebaseConfig]:
    if not isinstance(raw, list):
        logger.warning("%s: codebases must be a list, got %s", origin, type(raw).__name__)
        return []
    codebases = []
    for item in raw:
        if (
            isinstance(item, dict)
            and isinstance(item.get("name"), str)
            and isinstance(item.get("path"), str)
        ):
            codebases.append(CodebaseConfig(name=item["name"], path=item["path"]))
        else:
            logger.warning("%s: ignoring malformed codebase entry %r", origin, item)
    return codebases


def _int_setting(config: dict, key: str, default: int) -> int:
    value = config.get(key, default)
    # bool is an int subclass; reject it explicitly
    if not isinstance(value, int) or isinstance(value, bool):
        logger.warning("Config '%s' must be an integer, got %r; using %d", key, value, default)
        return default
    return value


def build_settings(config: dict, env: dict[str, str] | None = None) -> Settings:
    """Turn a parsed config dict (plus environment) into Settings."""
    env = os.environ if env is None else env

    backend = config.get("embedding_backend", DEFAULT_BACKEND)
    if not isinstance(backend, str) or backend not in DEFAULT_MODELS:
        logger.warning("Unknown embedding_backend %r; using %s", backend, DEFAULT_BACKEND)
        backend = DEFAULT_BACKEND

    model = config.get("embedding_model") or DEFAULT_MODELS[backend]
    if not isinstance(model, str):
        logger.warning("Config 'embedding_model' must be a string, got %r", model)
        model = DEFAULT_MODELS[backend]

    settings = Settings(
        embedding_backend=backend,
        embedding_model=model,
        chunk_size=_int_setting(config, "chunk_size", CHUNK_SIZE),
        chunk_overlap=_int_setting(config, "chunk_overlap", CHUNK_OVERLAP),
        batch_size=_int_setting(config, "batch_size", BATCH_SIZE),
        source="config.toml" if config else "defaults",
    )

    if "codebases" in config:
        settings.codebases = _parse_codebases(config["codebases"], "config.toml")

    env_codebases = env.get("CODESEEK_CODEBASES")
    if env_codebases:
        try:
            parsed = json.loads(env_codebases)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse CODESEEK_CODEBASES: %s", e)
        else:
            settings.codebases = _parse_codebases(parsed, "CODESEEK_CODEBASES")
            settings.source = "environment"
            logger.info(
                "Loaded %d codebases from environment variables", len(settings.codebases)
            )

    return settings


def load_settings(path: Path | None = None) -> Settings:
    return build_settings(load_config(path))
