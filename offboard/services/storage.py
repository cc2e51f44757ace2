from __future__ import annotations

from dataclasses import dataclass
import gzip
import hashlib
import json
from pathlib import Path
import shutil
from typing import Any, Protocol

from offboard.core.config import Settings


class ObjectStorage(Protocol):
    async def delete_prefix(self, prefix: str) -> int:
        ...


@dataclass(frozen=True)
class LocalObjectStorage:
    # Filesystem-backed object store; prefixes map to directories under base_dir.
    base_dir: Path

    async def delete_prefix(self, prefix: str) -> int:
        target = (self.base_dir / prefix).resolve()
        if self.base_dir.resolve() not in target.parents:
            raise ValueError(f"Prefix escapes object storage root: {prefix}")
        return remove_tree(target)


def tenant_upload_dir(settings: Settings, tenant_id: str) -> Path:
    return Path(settings.upload_root_dir) / tenant_id


def tenant_temp_dir(settings: Settings, tenant_id: str) -> Path:
    return Path(settings.temp_root_dir) / tenant_id


def tenant_object_prefix(tenant_id: str) -> str:
    return f"tenants/{tenant_id}"


def remove_file(path: Path) -> bool:
    # A missing file counts as already removed.
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def remove_tree(path: Path) -> int:
    # Returns the number of files removed; a missing directory removes nothing.
    if not path.exists():
        return 0
    if path.is_file():
        return 1 if remove_file(path) else 0
    removed = sum(1 for item in path.rglob("*") if item.is_file())
    shutil.rmtree(path, ignore_errors=False)
    return removed


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _json_default(value: Any) -> Any:
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return isoformat()
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def write_json_gzip(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt", encoding="utf-8") as handle:
        json.dump(payload, handle, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def read_json_gzip(path: Path) -> dict[str, Any]:
    with gzip.open(path, "rt", encoding="utf-8") as handle:
        return json.load(handle)
