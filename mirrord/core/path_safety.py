from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_item_key(raw_key: str) -> PurePosixPath:
    if not raw_key or not raw_key.strip():
        raise PathSafetyError("Item key cannot be blank")
    if raw_key.startswith("/") or "\\" in raw_key:
        raise PathSafetyError("Item key must be a relative POSIX path")
    parts = PurePosixPath(raw_key).parts
    if ".." in parts:
        raise PathSafetyError("Path traversal is not allowed")
    if any(part in {"", "."} for part in raw_key.split("/")):
        raise PathSafetyError("Item key must be normalized")
    return PurePosixPath(raw_key)


def resolve_under_root(root: Path, raw_key: str) -> Path:
    rel = validate_item_key(raw_key)
    base = root.resolve(strict=False)
    candidate = (base / Path(*rel.parts)).resolve(strict=False)

    if candidate != base and base in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes endpoint root")
