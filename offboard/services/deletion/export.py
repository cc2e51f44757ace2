from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import timedelta
import hashlib
import hmac
import json
import os
from pathlib import Path
import shutil
import tempfile
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy import column, literal_column, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from offboard.domain.models import Tenant, TenantDataExport, TenantDeletionBackup
from offboard.persistence.guards import tenant_predicate
from offboard.services.deletion.context import DeletionContext
from offboard.services.deletion.verification import list_tenant_scoped_tables
from offboard.services.storage import read_json_gzip, sha256_file, tenant_temp_dir, write_json_gzip


MANIFEST_VERSION = "1.0"
SIGNATURE_FILENAME = "signature.sig"


async def snapshot_tenant_rows(session: AsyncSession, tenant_id: str) -> dict[str, list[dict[str, Any]]]:
    """Collect every non-compliance row owned by the tenant, keyed by table name.

    The tenant row itself is included under ``tenants``.
    """
    snapshot: dict[str, list[dict[str, Any]]] = {}
    tenant_row = (
        await session.execute(
            select(literal_column("*")).select_from(table(Tenant.__tablename__)).where(column("id") == tenant_id)
        )
    ).mappings().all()
    snapshot[Tenant.__tablename__] = [dict(row) for row in tenant_row]
    for name in await list_tenant_scoped_tables(session):
        scoped = table(name, column("tenant_id"))
        rows = (
            await session.execute(
                select(literal_column("*")).select_from(scoped).where(tenant_predicate(scoped, tenant_id))
            )
        ).mappings().all()
        snapshot[name] = [dict(row) for row in rows]
    return snapshot


def _row_count(snapshot: dict[str, list[dict[str, Any]]]) -> int:
    return sum(len(rows) for rows in snapshot.values())


async def create_data_export(
    ctx: DeletionContext,
    session: AsyncSession,
    *,
    tenant_id: str,
    queue_id: int,
) -> TenantDataExport:
    # One export per queue item; a retried run reuses the archive if it is still on disk.
    existing = (
        await session.execute(
            select(TenantDataExport)
            .where(tenant_predicate(TenantDataExport, tenant_id), TenantDataExport.queue_id == queue_id)
            .order_by(TenantDataExport.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None and Path(existing.file_path).exists():
        return existing

    now = ctx.now()
    snapshot = await snapshot_tenant_rows(session, tenant_id)
    stamp = now.strftime("%Y%m%dT%H%M%SZ")
    filename = f"tenant_{tenant_id}_export_{stamp}.json.gz"
    working = tenant_temp_dir(ctx.settings, tenant_id) / "export" / filename
    write_json_gzip(
        working,
        {
            "tenant_id": tenant_id,
            "queue_id": queue_id,
            "exported_at": now.isoformat(),
            "tables": snapshot,
        },
    )
    target_dir = Path(ctx.settings.deletion_export_dir) / tenant_id
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / filename
    shutil.move(str(working), str(target))

    export = TenantDataExport(
        tenant_id=tenant_id,
        queue_id=queue_id,
        file_path=str(target),
        checksum=sha256_file(target),
        size_bytes=target.stat().st_size,
        row_count=_row_count(snapshot),
        created_at=now,
        expires_at=now + timedelta(days=ctx.settings.deletion_export_retention_days),
    )
    session.add(export)
    await session.flush()
    return export


def load_encryption_key(raw: str) -> bytes | None:
    if not raw:
        return None
    key = base64.b64decode(raw)
    if len(key) != 32:
        raise ValueError("deletion_backup_encryption_key must decode to 32 bytes")
    return key


def encrypt_file(source: Path, destination: Path, key: bytes) -> None:
    # Layout: 12-byte nonce, ciphertext, 16-byte GCM tag.
    nonce = os.urandom(12)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    with source.open("rb") as input_handle, destination.open("wb") as output_handle:
        output_handle.write(nonce)
        for chunk in iter(lambda: input_handle.read(1024 * 1024), b""):
            output_handle.write(encryptor.update(chunk))
        output_handle.write(encryptor.finalize())
        output_handle.write(encryptor.tag)


def decrypt_file(source: Path, destination: Path, key: bytes) -> None:
    total_size = source.stat().st_size
    if total_size < 28:
        raise ValueError("Encrypted artifact is too small to contain nonce + tag")
    with source.open("rb") as input_handle:
        nonce = input_handle.read(12)
        input_handle.seek(total_size - 16)
        tag = input_handle.read(16)
        input_handle.seek(12)
        decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
        remaining = total_size - 28
        with destination.open("wb") as output_handle:
            while remaining > 0:
                chunk = input_handle.read(min(1024 * 1024, remaining))
                remaining -= len(chunk)
                output_handle.write(decryptor.update(chunk))
            output_handle.write(decryptor.finalize())


def sign_manifest(manifest_bytes: bytes, signing_key: str) -> str:
    return hmac.new(signing_key.encode("utf-8"), manifest_bytes, hashlib.sha256).hexdigest()


async def create_final_backup(
    ctx: DeletionContext,
    session: AsyncSession,
    *,
    tenant_id: str,
    queue_id: int,
) -> TenantDeletionBackup:
    """Write the rollback archive taken right before destructive steps run.

    The archive is a gzip JSON snapshot, AES-GCM encrypted when a key is
    configured, next to a manifest carrying its checksum (and an HMAC
    signature when a signing key is configured).
    """
    existing = (
        await session.execute(
            select(TenantDeletionBackup)
            .where(tenant_predicate(TenantDeletionBackup, tenant_id), TenantDeletionBackup.queue_id == queue_id)
            .order_by(TenantDeletionBackup.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None and Path(existing.file_path).exists():
        return existing

    settings = ctx.settings
    now = ctx.now()
    key = load_encryption_key(settings.deletion_backup_encryption_key)
    backup_dir = Path(settings.deletion_backup_dir) / f"tenant_{tenant_id}_queue_{queue_id}"
    backup_dir.mkdir(parents=True, exist_ok=True)

    snapshot = await snapshot_tenant_rows(session, tenant_id)
    artifact = backup_dir / "tenant_snapshot.json.gz"
    write_json_gzip(
        artifact,
        {"tenant_id": tenant_id, "queue_id": queue_id, "created_at": now.isoformat(), "tables": snapshot},
    )
    if key is not None:
        encrypted = artifact.with_name(artifact.name + ".enc")
        encrypt_file(artifact, encrypted, key)
        artifact.unlink()
        artifact = encrypted

    checksum = sha256_file(artifact)
    size_bytes = artifact.stat().st_size
    manifest = {
        "manifest_version": MANIFEST_VERSION,
        "tenant_id": tenant_id,
        "queue_id": queue_id,
        "created_at": now.isoformat(),
        "artifact": artifact.name,
        "sha256": checksum,
        "size_bytes": size_bytes,
        "row_count": _row_count(snapshot),
        "encrypted": key is not None,
    }
    manifest_bytes = json.dumps(manifest, sort_keys=True, separators=(",", ":")).encode("utf-8")
    manifest_path = backup_dir / "manifest.json"
    manifest_path.write_bytes(manifest_bytes)
    if settings.deletion_backup_signing_key:
        (backup_dir / SIGNATURE_FILENAME).write_text(
            sign_manifest(manifest_bytes, settings.deletion_backup_signing_key), encoding="utf-8"
        )

    backup = TenantDeletionBackup(
        tenant_id=tenant_id,
        queue_id=queue_id,
        file_path=str(artifact),
        manifest_path=str(manifest_path),
        checksum=checksum,
        size_bytes=size_bytes,
        encrypted=key is not None,
        created_at=now,
    )
    session.add(backup)
    await session.flush()
    return backup


@dataclass(frozen=True)
class BackupVerification:
    ok: bool
    errors: list[str]
    row_count: int | None


def _load_backup_payload(artifact: Path, *, encrypted: bool, encryption_key: str) -> dict[str, Any]:
    if not encrypted:
        return read_json_gzip(artifact)
    key = load_encryption_key(encryption_key)
    if key is None:
        raise ValueError("Backup is encrypted but no encryption key is configured")
    with tempfile.TemporaryDirectory() as scratch:
        plain = Path(scratch) / "tenant_snapshot.json.gz"
        decrypt_file(artifact, plain, key)
        return read_json_gzip(plain)


def verify_backup(backup_dir: Path, *, encryption_key: str = "", signing_key: str = "") -> BackupVerification:
    # Checks signature, checksum and decryptability; used before trusting a rollback archive.
    manifest_path = backup_dir / "manifest.json"
    if not manifest_path.exists():
        return BackupVerification(ok=False, errors=["manifest missing"], row_count=None)
    manifest_bytes = manifest_path.read_bytes()
    manifest = json.loads(manifest_bytes)
    errors: list[str] = []
    if signing_key:
        signature_path = backup_dir / SIGNATURE_FILENAME
        if not signature_path.exists():
            errors.append("signature missing")
        elif not hmac.compare_digest(
            signature_path.read_text(encoding="utf-8").strip(), sign_manifest(manifest_bytes, signing_key)
        ):
            errors.append("signature mismatch")
    artifact = backup_dir / str(manifest.get("artifact", ""))
    if not artifact.is_file():
        errors.append("artifact missing")
        return BackupVerification(ok=False, errors=errors, row_count=None)
    if sha256_file(artifact) != manifest.get("sha256"):
        errors.append("checksum mismatch")
    if errors:
        return BackupVerification(ok=False, errors=errors, row_count=None)
    try:
        payload = _load_backup_payload(
            artifact, encrypted=bool(manifest.get("encrypted")), encryption_key=encryption_key
        )
    except (InvalidTag, ValueError) as exc:
        return BackupVerification(ok=False, errors=[f"unreadable artifact: {exc}"], row_count=None)
    row_count = sum(len(rows) for rows in payload.get("tables", {}).values())
    if row_count != manifest.get("row_count"):
        errors.append("row count mismatch")
    return BackupVerification(ok=not errors, errors=errors, row_count=row_count)
