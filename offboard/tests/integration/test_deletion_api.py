from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from offboard.apps.api.main import create_app
from offboard.tests.utils.flows import approved_request
from offboard.tests.utils.seed import seed_tenant


def _as(user_id: str) -> dict[str, str]:
    return {"X-Actor-Id": user_id}


@pytest.fixture
async def client(ctx):
    app = create_app(context=ctx)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.mark.asyncio
async def test_request_then_approve_after_cooling_off(client, ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-api")

    created = await client.post(
        "/v1/deletion-requests",
        json={"tenant_id": "t-api", "reason": "Contract ended"},
        headers={**_as(seeded.requester_id), "X-Request-Id": "req-123"},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert body["data"]["status"] == "pending_approval"
    assert body["data"]["created_by"] == seeded.requester_id
    queue_id = body["data"]["queue_id"]
    assert created.headers["X-Request-Id"] == "req-123"

    early = await client.post(f"/v1/deletion-requests/{queue_id}/approve", headers=_as(seeded.approver_id))
    assert early.status_code == 409
    assert early.json()["error"]["code"] == "COOLING_OFF_NOT_ELAPSED"
    assert early.json()["error"]["details"]["remaining_hours"] == 24.0

    clock.advance(hours=25)
    own = await client.post(f"/v1/deletion-requests/{queue_id}/approve", headers=_as(seeded.requester_id))
    assert own.status_code == 403
    assert own.json()["error"]["code"] == "SELF_APPROVAL"

    approved = await client.post(
        f"/v1/deletion-requests/{queue_id}/approve",
        json={"comment": "Verified with finance"},
        headers=_as(seeded.approver_id),
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "queued"
    assert approved.json()["data"]["approval_status"] == "approved"
    assert approved.json()["data"]["approver_id"] == seeded.approver_id


@pytest.mark.asyncio
async def test_pending_list_and_reject(client, ctx) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-rejapi", with_data=False)
    created = await client.post(
        "/v1/deletion-requests", json={"tenant_id": "t-rejapi"}, headers=_as(seeded.requester_id)
    )
    queue_id = created.json()["data"]["queue_id"]

    mine = await client.get("/v1/deletion-requests/pending", headers=_as(seeded.requester_id))
    theirs = await client.get("/v1/deletion-requests/pending", headers=_as(seeded.approver_id))
    assert mine.json()["data"]["items"] == []
    assert [item["queue_id"] for item in theirs.json()["data"]["items"]] == [queue_id]

    missing_reason = await client.post(
        f"/v1/deletion-requests/{queue_id}/reject", json={"reason": ""}, headers=_as(seeded.approver_id)
    )
    assert missing_reason.status_code == 422
    assert missing_reason.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    rejected = await client.post(
        f"/v1/deletion-requests/{queue_id}/reject",
        json={"reason": "Customer renewed"},
        headers=_as(seeded.approver_id),
    )
    assert rejected.status_code == 200
    assert rejected.json()["data"]["status"] == "rejected"

    status = await client.get("/v1/tenants/t-rejapi/deletion-status", headers=_as(seeded.approver_id))
    assert status.json()["data"]["deletion_status"] == "active"
    assert status.json()["data"]["status"] == "rejected"


@pytest.mark.asyncio
async def test_operator_must_be_known_root(client, ctx) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-auth", with_data=False)

    anonymous = await client.post("/v1/deletion-requests", json={"tenant_id": "t-auth"})
    unknown = await client.post("/v1/deletion-requests", json={"tenant_id": "t-auth"}, headers=_as("u-nobody"))
    admin = await client.post("/v1/deletion-requests", json={"tenant_id": "t-auth"}, headers=_as(seeded.admin_id))

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert unknown.status_code == 401
    assert admin.status_code == 403
    assert admin.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_domain_errors_map_to_status_codes(client, ctx) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-errs", with_data=False)
    root = _as(seeded.requester_id)

    invalid = await client.post("/v1/deletion-requests", json={"tenant_id": "bad id"}, headers=root)
    ghost = await client.post("/v1/deletion-requests", json={"tenant_id": "t-ghost"}, headers=root)
    missing = await client.post("/v1/deletion-requests/999/cancel", headers=root)
    first = await client.post("/v1/deletion-requests", json={"tenant_id": "t-errs"}, headers=root)
    duplicate = await client.post("/v1/deletion-requests", json={"tenant_id": "t-errs"}, headers=root)
    retry = await client.post(f"/v1/deletion-queue/{first.json()['data']['queue_id']}/retry", headers=root)

    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_TENANT_ID"
    assert ghost.status_code == 404
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "INVALID_STATE"
    assert retry.status_code == 409


@pytest.mark.asyncio
async def test_cancel_and_emergency_stop_endpoints(client, ctx, clock) -> None:
    first = await seed_tenant(ctx.session_factory, "t-cancelapi", with_data=False)
    second = await seed_tenant(ctx.session_factory, "t-stopapi", with_data=False)
    pending = await client.post(
        "/v1/deletion-requests", json={"tenant_id": "t-cancelapi"}, headers=_as(first.requester_id)
    )
    queued = await approved_request(ctx, clock, second)

    cancelled = await client.post(
        f"/v1/deletion-requests/{pending.json()['data']['queue_id']}/cancel", headers=_as(first.requester_id)
    )
    stopped = await client.post(
        f"/v1/deletion-requests/{queued.id}/emergency-stop", headers=_as(second.approver_id)
    )

    assert cancelled.json()["data"]["status"] == "cancelled"
    assert stopped.status_code == 200
    assert stopped.json()["data"]["status"] == "emergency_stopped"
    assert stopped.json()["data"]["emergency_stop"] is True


@pytest.mark.asyncio
async def test_tenant_gate_and_dry_run(client, ctx, clock) -> None:
    seeded = await seed_tenant(ctx.session_factory, "t-gate", settings=ctx.settings)
    root = _as(seeded.requester_id)

    active = await client.post("/v1/tenants/t-gate/deletion-dry-run", headers=root)
    assert active.status_code == 200
    assert active.json()["data"]["would_delete"] is True
    assert active.json()["data"]["table_counts"]["users"] == 4
    assert "X-Tenant-Status" not in active.headers

    await client.post("/v1/deletion-requests", json={"tenant_id": "t-gate"}, headers=root)
    marked = await client.post("/v1/tenants/t-gate/deletion-dry-run", headers=root)
    assert marked.status_code == 200
    assert marked.headers["X-Tenant-Status"] == "marked_for_deletion"
    assert marked.headers["X-Tenant-Deletion-Date"].startswith("2026-02-04")

    pending = await client.get("/v1/deletion-requests/pending", headers=_as(seeded.approver_id))
    clock.advance(hours=25)
    await client.post(
        f"/v1/deletion-requests/{pending.json()['data']['items'][0]['queue_id']}/approve",
        headers=_as(seeded.approver_id),
    )
    suspended = await client.post("/v1/tenants/t-gate/deletion-dry-run", headers=root)
    assert suspended.status_code == 403
    assert suspended.json()["error"]["code"] == "TENANT_SUSPENDED"

    # Status stays reachable while the tenant is suspended.
    status = await client.get("/v1/tenants/t-gate/deletion-status", headers=root)
    assert status.status_code == 200
    assert status.json()["data"]["deletion_status"] == "suspended"
    assert status.json()["data"]["days_remaining"] == 29

    unknown = await client.post("/v1/tenants/t-void/deletion-dry-run", headers=root)
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "TENANT_NOT_FOUND"


@pytest.mark.asyncio
async def test_health_versioned_and_legacy(client) -> None:
    versioned = await client.get("/v1/health")
    legacy = await client.get("/health")

    assert versioned.status_code == 200
    assert versioned.json()["data"] == {"status": "ok", "database": "ok"}
    assert legacy.json() == {"status": "ok", "database": "ok"}


@pytest.mark.asyncio
async def test_root_of_another_tenant_is_refused(client, ctx, clock) -> None:
    victim = await seed_tenant(ctx.session_factory, "t-victim", with_data=False)
    attacker = await seed_tenant(ctx.session_factory, "t-attacker", with_data=False)

    hijack = await client.post(
        "/v1/deletion-requests", json={"tenant_id": "t-victim"}, headers=_as(attacker.requester_id)
    )
    assert hijack.status_code == 403
    assert hijack.json()["error"]["code"] == "FOREIGN_TENANT"

    created = await client.post(
        "/v1/deletion-requests", json={"tenant_id": "t-victim"}, headers=_as(victim.requester_id)
    )
    queue_id = created.json()["data"]["queue_id"]
    clock.advance(hours=25)
    approve = await client.post(f"/v1/deletion-requests/{queue_id}/approve", headers=_as(attacker.approver_id))
    pending = await client.get("/v1/deletion-requests/pending", headers=_as(attacker.approver_id))
    status = await client.get("/v1/tenants/t-victim/deletion-status", headers=_as(attacker.requester_id))
    dry_run = await client.post("/v1/tenants/t-victim/deletion-dry-run", headers=_as(attacker.requester_id))

    assert approve.status_code == 403
    assert approve.json()["error"]["code"] == "FOREIGN_TENANT"
    assert pending.json()["data"]["items"] == []
    assert status.status_code == 403
    assert status.json()["error"]["code"] == "FOREIGN_TENANT"
    assert dry_run.status_code == 403
    assert dry_run.json()["error"]["code"] == "FOREIGN_TENANT"

    own_status = await client.get("/v1/tenants/t-victim/deletion-status", headers=_as(victim.approver_id))
    assert own_status.json()["data"]["status"] == "pending_approval"
    assert own_status.json()["data"]["deletion_status"] == "marked_for_deletion"
