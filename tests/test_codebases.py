"""Tests for the codebase registry and file enumeration."""

import json
import os

import pytest

from codeseek.codebases import (
    CodebaseRegistry,
    is_source_file,
    list_source_files,
    read_source,
    split_lines,
)
from codeseek.config import CodebaseConfig
from codeseek.errors import CollectionNotFound, ConfigurationError, ReadError


# ─────────────────────────────────────────────────────────────────────────────
# Line splitting & reading
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("text,expected", [
    ("", []),
    ("a", ["a"]),
    ("a\n", ["a\n"]),
    ("a\nb", ["a\n", "b"]),
    ("a\n\nb\n", ["a\n", "\n", "b\n"]),
    ("a\r\nb\r\n", ["a\r\n", "b\r\n"]),
    ("\n", ["\n"]),
])
def test_split_lines(text, expected):
    lines = split_lines(text)
    assert lines == expected
    assert "".join(lines) == text


def test_read_source_replaces_invalid_utf8(tmp_path):
    path = tmp_path / "latin1.py"
    path.write_bytes(b"name = '\xe9t\xe9'\n")
    assert read_source(path) == "name = '�t�'\n"


def test_read_source_missing_file(tmp_path):
    with pytest.raises(ReadError):
        read_source(tmp_path / "missing.py")


# ─────────────────────────────────────────────────────────────────────────────
# File enumeration
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("name,expected", [
    ("main.py", True),
    ("App.TSX", True),
    ("README.md", True),
    ("bundle.min.js", False),
    ("style.min.css", False),
    ("image.png", False),
    ("Makefile", False),
])
def test_is_source_file(name, expected):
    assert is_source_file(name) is expected


def test_list_source_files_order_and_filters(tmp_path):
    (tmp_path / "b.py").write_text("")
    (tmp_path / "a.py").write_text("")
    (tmp_path / "logo.png").write_bytes(b"\x89PNG")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "z.py").write_text("")
    (tmp_path / "pkg" / "sub").mkdir()
    (tmp_path / "pkg" / "sub" / "y.py").write_text("")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("")
    (tmp_path / "package-lock.json").write_text("{}")

    rel = [p.relative_to(tmp_path).as_posix() for p in list_source_files(tmp_path)]
    assert rel == ["a.py", "b.py", "pkg/z.py", "pkg/sub/y.py"]


def test_list_source_files_respects_gitignore(tmp_path):
    (tmp_path / ".gitignore").write_text("generated/\n*.log.txt\nsecret.py\n")
    (tmp_path / "keep.py").write_text("")
    (tmp_path / "secret.py").write_text("")
    (tmp_path / "debug.log.txt").write_text("")
    (tmp_path / "generated").mkdir()
    (tmp_path / "generated" / "out.py").write_text("")

    rel = [p.relative_to(tmp_path).as_posix() for p in list_source_files(tmp_path)]
    assert rel == ["keep.py"]


def test_list_source_files_is_deterministic(tmp_path):
    for name in ["c.py", "a.py", "b.py"]:
        (tmp_path / name).write_text("")
    assert list_source_files(tmp_path) == list_source_files(tmp_path)


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_list_source_files_survives_symlink_cycle(tmp_path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("")
    os.symlink(tmp_path, tmp_path / "pkg" / "loop")

    rel = [p.relative_to(tmp_path).as_posix() for p in list_source_files(tmp_path)]
    assert rel == ["pkg/mod.py"]


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_list_source_files_does_not_follow_links_out_of_root(tmp_path):
    """Linked files and directories outside the root are never enumerated."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "main.py").write_text("alpha\n")
    secret = tmp_path / "secret"
    secret.mkdir()
    (secret / "keys.py").write_text("alpha\n")
    os.symlink(secret, root / "linked")
    os.symlink(secret / "keys.py", root / "keys_link.py")

    rel = [p.relative_to(root).as_posix() for p in list_source_files(root)]
    assert rel == ["main.py"]


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_walk_agrees_with_read_confinement(registry, demo_root, tmp_path):
    """Every enumerated file can also be resolved by resolve_file."""
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "keys.py").write_text("alpha\n")
    os.symlink(outside, demo_root / "linked")

    for path in list_source_files(registry.require("demo")):
        rel = path.relative_to(registry.require("demo")).as_posix()
        assert registry.resolve_file("demo", rel) is not None


def test_list_source_files_missing_root(tmp_path):
    with pytest.raises(FileNotFoundError):
        list_source_files(tmp_path / "nope")


def test_list_source_files_root_is_file(tmp_path):
    f = tmp_path / "file.py"
    f.write_text("")
    with pytest.raises(NotADirectoryError):
        list_source_files(f)


# ─────────────────────────────────────────────────────────────────────────────
# CodebaseRegistry
# ─────────────────────────────────────────────────────────────────────────────


def test_registry_skips_missing_configured_paths(tmp_path):
    registry = CodebaseRegistry(
        [
            CodebaseConfig("real", str(tmp_path)),
            CodebaseConfig("ghost", str(tmp_path / "ghost")),
        ]
    )
    assert [name for name, _ in registry.all()] == ["real"]
    assert registry.resolve("ghost") is None


def test_registry_require_unknown(registry):
    with pytest.raises(CollectionNotFound) as exc_info:
        registry.require("unregistered")
    assert exc_info.value.name == "unregistered"
    assert 'Codebase "unregistered" not found' in str(exc_info.value)


def test_registry_add_persists_and_reloads(registry, tmp_path):
    new_root = tmp_path / "new"
    new_root.mkdir()

    root = registry.add("new", str(new_root))
    assert root == new_root.resolve()
    assert registry.resolve("new") == new_root.resolve()

    state = json.loads(registry.state_file.read_text())
    assert state == {"codebases": [{"name": "new", "path": str(new_root.resolve())}]}

    reloaded = CodebaseRegistry(state_file=registry.state_file)
    assert reloaded.resolve("new") == new_root.resolve()


@pytest.mark.parametrize("name,sub,error", [
    ("", "demo", "must not be empty"),
    ("x", "missing", "does not exist"),
    ("x", "demo/main.py", "not a directory"),
    ("demo", "demo", "already exists"),
])
def test_registry_add_rejects(registry, tmp_path, name, sub, error):
    with pytest.raises(ConfigurationError, match=error):
        registry.add(name, str(tmp_path / sub))


def test_registry_remove_runtime_codebase(registry, tmp_path):
    extra = tmp_path / "extra"
    extra.mkdir()
    registry.add("extra", str(extra))

    registry.remove("extra")

    assert registry.resolve("extra") is None
    assert json.loads(registry.state_file.read_text()) == {"codebases": []}


def test_registry_remove_configured_codebase(registry):
    registry.remove("demo")
    assert registry.resolve("demo") is None
    assert not registry.state_file.exists()


def test_registry_remove_unknown(registry):
    with pytest.raises(CollectionNotFound):
        registry.remove("nope")


def test_registry_config_wins_over_state(tmp_path):
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.mkdir()
    b.mkdir()
    state = tmp_path / "codebases.json"
    state.write_text(json.dumps({"codebases": [{"name": "x", "path": str(b)}]}))

    registry = CodebaseRegistry([CodebaseConfig("x", str(a))], state_file=state)
    assert registry.resolve("x") == a.resolve()


def test_registry_ignores_corrupt_state(tmp_path):
    state = tmp_path / "codebases.json"
    state.write_text("{not json")
    registry = CodebaseRegistry(state_file=state)
    assert registry.all() == []


# ─────────────────────────────────────────────────────────────────────────────
# Path confinement
# ─────────────────────────────────────────────────────────────────────────────


def test_resolve_file_inside_root(registry, demo_root):
    assert registry.resolve_file("demo", "main.py") == (demo_root / "main.py").resolve()
    assert registry.resolve_file("demo", "./sub/../main.py") == (demo_root / "main.py").resolve()


@pytest.mark.parametrize("file_path", ["../other", "../../etc/passwd", "/etc/passwd", "missing.py"])
def test_resolve_file_rejects_escapes_and_missing(registry, file_path):
    assert registry.resolve_file("demo", file_path) is None


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_resolve_file_rejects_symlink_escape(registry, demo_root, tmp_path):
    outside = tmp_path / "outside.py"
    outside.write_text("secret")
    os.symlink(outside, demo_root / "link.py")
    assert registry.resolve_file("demo", "link.py") is None


def test_resolve_file_unknown_codebase(registry):
    with pytest.raises(CollectionNotFound):
        registry.resolve_file("nope", "main.py")
