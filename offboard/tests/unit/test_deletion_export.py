from __future__ import annotations

import base64
from dataclasses import replace
from datetime import timedelta
import json
from pathlib import Path

import pytest

from offboard.services.deletion.export import (
    create_data_export,
    create_final_backup,
    load_encryption_key,
    verify_backup,
)
from offboard.services.storage import read_json_gzip
from offboard.tests.utils.seed import seed_tenant


_KEY = base64.b64encode(b"k" * 32).decode("ascii")
_OTHER_KEY = base64.b64encode(b"z" * 32).decode("ascii")
_SIGNING_KEY = "manifest-signing-key"


@pytest.fixture
def secure_ctx(ctx):
    settings = ctx.settings.model_copy(
        update={"deletion_backup_encryption_key": _KEY, "deletion_backup_signing_key": _SIGNING_KEY}
    )
    return replace(ctx, settings=settings)


async def _backup(ctx, tenant_id: str, queue_id: int = 7):
    async with ctx.session_factory() as session:
        backup = await create_final_backup(ctx, session, tenant_id=tenant_id, queue_id=queue_id)
        await session.commit()
    return backup


@pytest.mark.asyncio
async def test_export_contains_tenant_tables(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-export", settings=ctx.settings)

    async with ctx.session_factory() as session:
        export = await create_data_export(ctx, session, tenant_id="t-export", queue_id=3)
        await session.commit()

    path = Path(export.file_path)
    assert path.parent == Path(ctx.settings.deletion_export_dir) / "t-export"
    assert path.name.startswith("tenant_t-export_export_") and path.name.endswith(".json.gz")
    payload = read_json_gzip(path)
    assert payload["tenant_id"] == "t-export"
    assert len(payload["tables"]["users"]) == 4
    assert payload["tables"]["tenants"][0]["company_name"] == "t-export GmbH"
    assert "audit_events" not in payload["tables"]
    assert export.row_count == sum(len(rows) for rows in payload["tables"].values())
    assert export.expires_at - export.created_at == timedelta(days=90)


@pytest.mark.asyncio
async def test_export_is_reused_while_file_exists(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-reuse", with_data=False)

    async with ctx.session_factory() as session:
        first = await create_data_export(ctx, session, tenant_id="t-reuse", queue_id=5)
        await session.commit()
    async with ctx.session_factory() as session:
        second = await create_data_export(ctx, session, tenant_id="t-reuse", queue_id=5)
        await session.commit()
    assert second.id == first.id

    Path(first.file_path).unlink()
    async with ctx.session_factory() as session:
        third = await create_data_export(ctx, session, tenant_id="t-reuse", queue_id=5)
        await session.commit()
    assert third.id != first.id
    assert Path(third.file_path).exists()


@pytest.mark.asyncio
async def test_plain_backup_verifies(ctx) -> None:
    await seed_tenant(ctx.session_factory, "t-plain", settings=ctx.settings)

    backup = await _backup(ctx, "t-plain")

    assert backup.encrypted is False
    assert Path(backup.file_path).name == "tenant_snapshot.json.gz"
    result = verify_backup(Path(backup.manifest_path).parent)
    assert result.ok
    assert result.errors == []
    assert result.row_count == json.loads(Path(backup.manifest_path).read_text())["row_count"]


@pytest.mark.asyncio
async def test_encrypted_signed_backup_verifies(secure_ctx) -> None:
    await seed_tenant(secure_ctx.session_factory, "t-secure", settings=secure_ctx.settings)

    backup = await _backup(secure_ctx, "t-secure")

    backup_dir = Path(backup.manifest_path).parent
    assert backup_dir.name == "tenant_t-secure_queue_7"
    assert backup.encrypted is True
    assert Path(backup.file_path).name == "tenant_snapshot.json.gz.enc"
    assert (backup_dir / "signature.sig").exists()
    result = verify_backup(backup_dir, encryption_key=_KEY, signing_key=_SIGNING_KEY)
    assert result.ok, result.errors
    assert result.row_count and result.row_count > 20


@pytest.mark.asyncio
async def test_tampered_manifest_fails_signature(secure_ctx) -> None:
    await seed_tenant(secure_ctx.session_factory, "t-tamper", with_data=False)
    backup = await _backup(secure_ctx, "t-tamper")
    manifest_path = Path(backup.manifest_path)
    manifest = json.loads(manifest_path.read_text())
    manifest["row_count"] = 1
    manifest_path.write_text(json.dumps(manifest, sort_keys=True, separators=(",", ":")))

    result = verify_backup(manifest_path.parent, encryption_key=_KEY, signing_key=_SIGNING_KEY)

    assert not result.ok
    assert result.errors == ["signature mismatch"]


@pytest.mark.asyncio
async def test_tampered_artifact_fails_checksum(secure_ctx) -> None:
    await seed_tenant(secure_ctx.session_factory, "t-flip", with_data=False)
    backup = await _backup(secure_ctx, "t-flip")
    with Path(backup.file_path).open("ab") as handle:
        handle.write(b"\x00")

    result = verify_backup(Path(backup.manifest_path).parent, encryption_key=_KEY, signing_key=_SIGNING_KEY)

    assert result.errors == ["checksum mismatch"]


@pytest.mark.asyncio
async def test_wrong_key_cannot_read_backup(secure_ctx) -> None:
    await seed_tenant(secure_ctx.session_factory, "t-wrongkey", with_data=False)
    backup = await _backup(secure_ctx, "t-wrongkey")
    backup_dir = Path(backup.manifest_path).parent

    wrong = verify_backup(backup_dir, encryption_key=_OTHER_KEY, signing_key=_SIGNING_KEY)
    missing = verify_backup(backup_dir, signing_key=_SIGNING_KEY)

    assert not wrong.ok
    assert wrong.errors[0].startswith("unreadable artifact")
    assert not missing.ok
    assert missing.errors[0].startswith("unreadable artifact")


@pytest.mark.asyncio
async def test_missing_signature_and_manifest(secure_ctx, tmp_path) -> None:
    await seed_tenant(secure_ctx.session_factory, "t-nosig", with_data=False)
    backup = await _backup(secure_ctx, "t-nosig")
    backup_dir = Path(backup.manifest_path).parent
    (backup_dir / "signature.sig").unlink()

    assert verify_backup(backup_dir, encryption_key=_KEY, signing_key=_SIGNING_KEY).errors == ["signature missing"]
    assert verify_backup(tmp_path / "nowhere").errors == ["manifest missing"]


def test_encryption_key_must_be_32_bytes() -> None:
    assert load_encryption_key("") is None
    assert load_encryption_key(_KEY) == b"k" * 32
    with pytest.raises(ValueError):
        load_encryption_key(base64.b64encode(b"short").decode("ascii"))
