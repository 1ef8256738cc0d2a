"""Test vault path helpers."""

import pytest

from planrunner.errors import PathSafetyError
from planrunner.paths import ensure_extension, is_safe_path, join_path, parent_path, resolve_in_root, validate_vault_path


def test_is_safe_path():
    assert is_safe_path("Daily/2024-01-01.md")
    assert is_safe_path("notes..md")
    assert not is_safe_path("/etc/passwd")
    assert not is_safe_path("a/../b")
    assert not is_safe_path("..\\b")
    assert not is_safe_path("D:/x")


def test_validate_normalizes_separators():
    assert validate_vault_path("a\\b.md") == "a/b.md"
    with pytest.raises(PathSafetyError, match="Absolute"):
        validate_vault_path("/x")
    with pytest.raises(PathSafetyError, match="traversal"):
        validate_vault_path("../x")


def test_join_and_parent():
    assert join_path("Daily", "", "note.md") == "Daily/note.md"
    assert join_path("a/", "/b") == "a/b"
    assert parent_path("a/b/c.md") == "a/b"
    assert parent_path("c.md") == ""


def test_ensure_extension():
    assert ensure_extension("note", "md") == "note.md"
    assert ensure_extension("note.md", ".md") == "note.md"


def test_resolve_in_root(tmp_path):
    assert resolve_in_root(tmp_path, "a/b.md") == (tmp_path / "a" / "b.md").resolve()


def test_resolve_refuses_symlink_escape(tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    root = tmp_path / "vault"
    root.mkdir()
    (root / "link").symlink_to(outside)
    with pytest.raises(PathSafetyError):
        resolve_in_root(root, "link/secret.md")
