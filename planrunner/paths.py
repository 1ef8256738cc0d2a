"""Vault-relative path helpers. Paths never leave the vault root."""

from __future__ import annotations

import re
from pathlib import Path

from planrunner.errors import PathSafetyError

_DRIVE = re.compile(r"^[A-Za-z]:")


def is_safe_path(path: str) -> bool:
    """False for absolute paths and for any `..` segment."""
    if path.startswith(("/", "\\")) or _DRIVE.match(path):
        return False
    segments = re.split(r"[\\/]", path)
    return ".." not in segments


def validate_vault_path(path: str) -> str:
    """Return the path with forward slashes, or raise PathSafetyError."""
    if path.startswith(("/", "\\")) or _DRIVE.match(path):
        raise PathSafetyError(f"Absolute paths are not allowed: {path}")
    if not is_safe_path(path):
        raise PathSafetyError(f"Path traversal not allowed: {path}")
    return path.replace("\\", "/")


def join_path(*segments: str) -> str:
    joined = "/".join(s for s in segments if s)
    return validate_vault_path(re.sub(r"/+", "/", joined))


def parent_path(path: str) -> str:
    normalized = validate_vault_path(path)
    if "/" not in normalized:
        return ""
    return normalized.rsplit("/", 1)[0]


def ensure_extension(path: str, extension: str) -> str:
    ext = extension if extension.startswith(".") else f".{extension}"
    return path if path.endswith(ext) else f"{path}{ext}"


def resolve_in_root(root: Path, path: str) -> Path:
    """Resolve a vault path against a directory, refusing escapes (symlinks included)."""
    relative = validate_vault_path(path)
    root = root.resolve()
    resolved = (root / relative).resolve()
    if resolved != root and root not in resolved.parents:
        raise PathSafetyError(f"Path escapes vault root: {path}")
    return resolved
