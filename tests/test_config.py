"""Tests for configuration loading."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from codeseek.config import (
    BATCH_SIZE,
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    CodebaseConfig,
    Settings,
    build_settings,
    config_path,
    data_home,
    load_config,
    load_settings,
)


# ─────────────────────────────────────────────────────────────────────────────
# XDG Path Tests
# ─────────────────────────────────────────────────────────────────────────────


def test_data_home_default():
    with patch.dict(os.environ, {}, clear=True):
        assert data_home() == Path.home() / ".local" / "share" / "codeseek"


def test_data_home_custom():
    with patch.dict(os.environ, {"XDG_DATA_HOME": "/custom/data"}):
        assert data_home() == Path("/custom/data/codeseek")


def test_config_path_xdg():
    with patch.dict(os.environ, {"XDG_CONFIG_HOME": "/custom/config"}, clear=True):
        assert config_path() == Path("/custom/config/codeseek/config.toml")


def test_config_path_override():
    with patch.dict(os.environ, {"CODESEEK_CONFIG_FILE": "/etc/codeseek.toml"}):
        assert config_path() == Path("/etc/codeseek.toml")


# ─────────────────────────────────────────────────────────────────────────────
# load_config
# ─────────────────────────────────────────────────────────────────────────────


def test_load_config_missing_file(tmp_path):
    assert load_config(tmp_path / "nope.toml") == {}


def test_load_config_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("this is = = not toml")
    assert load_config(path) == {}


def test_load_settings_from_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        'embedding_backend = "sentence_transformers"\n'
        "chunk_size = 40\n"
        "chunk_overlap = 5\n"
        "\n"
        "[[codebases]]\n"
        'name = "app"\n'
        'path = "/src/app"\n'
    )
    with patch.dict(os.environ, {}, clear=True):
        settings = load_settings(path)

    assert settings.embedding_backend == "sentence_transformers"
    assert settings.embedding_model == "all-MiniLM-L6-v2"
    assert settings.chunk_size == 40
    assert settings.chunk_overlap == 5
    assert settings.batch_size == BATCH_SIZE
    assert settings.codebases == [CodebaseConfig("app", "/src/app")]
    assert settings.source == "config.toml"


# ─────────────────────────────────────────────────────────────────────────────
# build_settings
# ─────────────────────────────────────────────────────────────────────────────


def test_build_settings_defaults():
    settings = build_settings({}, env={})
    assert settings == Settings()
    assert settings.chunk_size == CHUNK_SIZE
    assert settings.chunk_overlap == CHUNK_OVERLAP
    assert settings.embedding_model == "gemini-embedding-001"
    assert settings.source == "defaults"


def test_build_settings_unknown_backend_falls_back():
    settings = build_settings({"embedding_backend": "word2vec"}, env={})
    assert settings.embedding_backend == "gemini"


def test_build_settings_explicit_model():
    settings = build_settings({"embedding_model": "text-embedding-004"}, env={})
    assert settings.embedding_model == "text-embedding-004"


@pytest.mark.parametrize("value", ["fifty", 2.5, True, None])
def test_build_settings_rejects_non_integer(value):
    settings = build_settings({"chunk_size": value}, env={})
    assert settings.chunk_size == CHUNK_SIZE


def test_build_settings_skips_malformed_codebases():
    config = {"codebases": [{"name": "ok", "path": "/ok"}, {"name": "no-path"}, "bare"]}
    settings = build_settings(config, env={})
    assert settings.codebases == [CodebaseConfig("ok", "/ok")]


def test_environment_codebases_override_config():
    env = {"CODESEEK_CODEBASES": json.dumps([{"name": "env", "path": "/env"}])}
    settings = build_settings({"codebases": [{"name": "toml", "path": "/toml"}]}, env=env)
    assert settings.codebases == [CodebaseConfig("env", "/env")]
    assert settings.source == "environment"


def test_invalid_environment_codebases_keep_config():
    env = {"CODESEEK_CODEBASES": "[not json"}
    settings = build_settings({"codebases": [{"name": "toml", "path": "/toml"}]}, env=env)
    assert settings.codebases == [CodebaseConfig("toml", "/toml")]
    assert settings.source == "config.toml"


def test_environment_codebases_must_be_list():
    env = {"CODESEEK_CODEBASES": json.dumps({"name": "x", "path": "/x"})}
    settings = build_settings({}, env=env)
    assert settings.codebases == []
