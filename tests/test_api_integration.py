# ruff: noqa: INP001
"""HTTP integration tests for the incident, audit, and administration routes."""

from __future__ import annotations

import csv
import io
from collections.abc import AsyncIterator
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi_pagination import add_pagination
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from factories import make_incident, make_organization, make_user
from incidentdesk.api.audit import router as audit_router
from incidentdesk.api.auth import router as auth_router
from incidentdesk.api.incidents import router as incidents_router
from incidentdesk.api.organizations import router as organizations_router
from incidentdesk.api.permissions import router as permissions_router
from incidentdesk.api.users import router as users_router
from incidentdesk.core import auth as auth_module
from incidentdesk.core.config import settings
from incidentdesk.core.error_handling import REQUEST_ID_HEADER, install_error_handling
from incidentdesk.db.session import get_session
from incidentdesk.models.users import User

ACT_AS_HEADER = "X-Act-As"


def _build_test_app(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    act_as: bool = True,
) -> FastAPI:
    app = FastAPI()
    install_error_handling(app)
    api_v1 = APIRouter(prefix="/api/v1")
    for router in (
        auth_router,
        incidents_router,
        audit_router,
        users_router,
        organizations_router,
        permissions_router,
    ):
        api_v1.include_router(router)
    app.include_router(api_v1)
    add_pagination(app)

    async def _override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_maker() as session:
            yield session

    async def _override_get_auth_context(
        request: Request,
        session: AsyncSession = Depends(get_session),
    ) -> auth_module.AuthContext:
        raw = request.headers.get(ACT_AS_HEADER)
        user = await session.get(User, UUID(raw)) if raw else None
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return auth_module._require_active(user)

    app.dependency_overrides[get_session] = _override_get_session
    app.dependency_overrides[auth_module.get_session] = _override_get_session
    if act_as:
        app.dependency_overrides[auth_module.get_auth_context] = _override_get_auth_context
    return app


@pytest_asyncio.fixture
async def client(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncClient]:
    app = _build_test_app(session_maker)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


def _as(user: User) -> dict[str, str]:
    return {ACT_AS_HEADER: str(user.id)}


@pytest.mark.asyncio
async def test_local_token_resolves_super_admin(
    session_maker: async_sessionmaker[AsyncSession],
) -> None:
    app = _build_test_app(session_maker, act_as=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as c:
        missing = await c.get("/api/v1/auth/me")
        assert missing.status_code == 401
        assert missing.json()["request_id"] == missing.headers[REQUEST_ID_HEADER]

        wrong = await c.get("/api/v1/auth/me", headers={"Authorization": "Bearer wrong-token"})
        assert wrong.status_code == 401

        me = await c.get(
            "/api/v1/auth/me",
            headers={"Authorization": f"Bearer {settings.local_auth_token}"},
        )
        assert me.status_code == 200
        body = me.json()
        assert body["role"] == "SuperAdmin"
        assert body["email"] == settings.local_auth_user_email
        assert "manageOrganizations" in body["capabilities"]
        assert body["organization"] is None
        assert body["permissions"]["inheritedFromOrg"] is True


@pytest.mark.asyncio
async def test_deactivated_principal_is_rejected(session: AsyncSession, client: AsyncClient) -> None:
    org = await make_organization(session)
    former = await make_user(session, organization=org, is_active=False)

    resp = await client.get("/api/v1/auth/me", headers=_as(former))

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Account is deactivated"


@pytest.mark.asyncio
async def test_incident_review_workflow_over_http(
    session: AsyncSession,
    client: AsyncClient,
    sent_notifications: list[object],
) -> None:
    tenant = await make_organization(session, name="Tenant")
    core = await make_organization(session, name="Core", org_type="core")
    reporter = await make_user(session, organization=tenant)
    editor = await make_user(session, organization=core, role="Editor", name="Desk Editor")

    created = await client.post(
        "/api/v1/incidents",
        json={"title": "Flooded underpass", "impact_status": "high"},
        headers=_as(reporter),
    )
    assert created.status_code == 201
    incident = created.json()
    assert incident["status"] == "Draft"
    assert incident["visibility"] == "private"
    assert incident["organization_id"] == str(tenant.id)
    incident_url = f"/api/v1/incidents/{incident['id']}"

    skipped = await client.post(
        f"{incident_url}/status", json={"status": "Approved"}, headers=_as(reporter)
    )
    assert skipped.status_code == 403
    assert skipped.json()["code"] == "forbidden"
    assert skipped.json()["retryable"] is False

    submitted = await client.post(
        f"{incident_url}/status", json={"status": "Review"}, headers=_as(reporter)
    )
    assert submitted.status_code == 200
    body = submitted.json()
    assert body["changed"] is True
    assert body["audit_entry_id"] is not None
    assert body["incident"]["status"] == "Review"
    assert body["incident"]["version"] == 2
    assert body["incident"]["status_history"][0]["new_status"] == "Review"

    repeated = await client.post(
        f"{incident_url}/status", json={"status": "Review"}, headers=_as(reporter)
    )
    assert repeated.status_code == 200
    assert repeated.json()["changed"] is False
    assert repeated.json()["audit_entry_id"] is None

    unknown = await client.post(
        f"{incident_url}/status", json={"status": "Archived"}, headers=_as(editor)
    )
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "validation_failed"

    approved = await client.post(
        f"{incident_url}/status",
        json={"status": "Approved", "changed_by_name": "Someone Else"},
        headers=_as(editor),
    )
    assert approved.status_code == 200
    assert approved.json()["incident"]["approved_by"] == str(editor.id)
    assert approved.json()["incident"]["status_history"][-1]["changed_by_name"] == "Desk Editor"

    audit = await client.get(
        "/api/v1/audit", params={"target_id": incident["id"]}, headers=_as(editor)
    )
    assert audit.status_code == 200
    items = audit.json()["items"]
    assert [item["changes"][0]["to"] for item in items] == ["Approved", "Review"]
    assert audit.json()["next_cursor"] is None

    forbidden_audit = await client.get("/api/v1/audit", headers=_as(reporter))
    assert forbidden_audit.status_code == 403

    export = await client.get(
        "/api/v1/audit/export.csv", params={"target_id": incident["id"]}, headers=_as(editor)
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert export.headers["content-disposition"].startswith("attachment;")
    rows = list(csv.reader(io.StringIO(export.text)))
    assert rows[0][0] == "entry_id"
    assert len(rows) == 3

    assert [n.event_type for n in sent_notifications] == [  # type: ignore[attr-defined]
        "incident.status_changed",
        "incident.status_changed",
    ]


@pytest.mark.asyncio
async def test_closed_incident_rejects_changes_with_conflict_status(
    session: AsyncSession, client: AsyncClient
) -> None:
    tenant = await make_organization(session)
    core = await make_organization(session, name="Core", org_type="core")
    reporter = await make_user(session, organization=tenant)
    editor = await make_user(session, organization=core, role="Editor")
    incident = await make_incident(session, creator=reporter, status="Closed")
    incident_url = f"/api/v1/incidents/{incident.id}"

    status_resp = await client.post(
        f"{incident_url}/status", json={"status": "Live"}, headers=_as(editor)
    )
    visibility_resp = await client.post(
        f"{incident_url}/visibility", json={"visibility": "public"}, headers=_as(editor)
    )
    impact_resp = await client.post(
        f"{incident_url}/impact", json={"impact_status": "critical"}, headers=_as(editor)
    )

    assert status_resp.status_code == 409
    assert status_resp.json()["code"] == "terminal_state"
    assert visibility_resp.status_code == 409
    assert impact_resp.status_code == 200
    assert impact_resp.json()["incident"]["impact_status"] == "critical"


@pytest.mark.asyncio
async def test_tenant_admin_cannot_change_visibility(
    session: AsyncSession, client: AsyncClient
) -> None:
    org = await make_organization(session)
    admin = await make_user(session, organization=org, role="Admin")
    incident = await make_incident(session, creator=admin, status="Published")

    resp = await client.post(
        f"/api/v1/incidents/{incident.id}/visibility",
        json={"visibility": "public"},
        headers=_as(admin),
    )

    assert resp.status_code == 403
    assert resp.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_editorial_notes_are_reviewer_only(
    session: AsyncSession, client: AsyncClient
) -> None:
    tenant = await make_organization(session)
    core = await make_organization(session, name="Core", org_type="core")
    reporter = await make_user(session, organization=tenant)
    editor = await make_user(session, organization=core, role="Editor")
    incident = await make_incident(session, creator=reporter, status="Review")
    notes_url = f"/api/v1/incidents/{incident.id}/notes"

    denied = await client.post(
        notes_url, json={"editorial_notes": "Looks fine"}, headers=_as(reporter)
    )
    written = await client.post(
        notes_url, json={"editorial_notes": " Verify casualty count. "}, headers=_as(editor)
    )

    assert denied.status_code == 403
    assert written.status_code == 200
    assert written.json()["changed"] is True
    assert written.json()["incident"]["editorial_notes"] == "Verify casualty count."


@pytest.mark.asyncio
async def test_incident_reads_respect_visibility(
    session: AsyncSession, client: AsyncClient
) -> None:
    home = await make_organization(session, name="Home")
    other = await make_organization(session, name="Other")
    reader = await make_user(session, organization=home)
    outsider = await make_user(session, organization=other)
    hidden = await make_incident(session, creator=outsider)
    published = await make_incident(session, creator=outsider, status="Live", visibility="public")
    own = await make_incident(session, creator=reader)

    missing = await client.get(f"/api/v1/incidents/{hidden.id}", headers=_as(reader))
    assert missing.status_code == 404

    visible = await client.get(f"/api/v1/incidents/{published.id}", headers=_as(reader))
    assert visible.status_code == 200

    listing = await client.get("/api/v1/incidents", headers=_as(reader))
    assert listing.status_code == 200
    assert {item["id"] for item in listing.json()["items"]} == {str(published.id), str(own.id)}
    assert listing.json()["total"] == 2

    filtered = await client.get(
        "/api/v1/incidents", params={"status": "Live"}, headers=_as(reader)
    )
    assert [item["id"] for item in filtered.json()["items"]] == [str(published.id)]


@pytest.mark.asyncio
async def test_reporting_for_another_organization_requires_view_all(
    session: AsyncSession, client: AsyncClient
) -> None:
    home = await make_organization(session, name="Home")
    other = await make_organization(session, name="Other")
    reporter = await make_user(session, organization=home)
    homeless = await make_user(session, organization=None)

    foreign = await client.post(
        "/api/v1/incidents",
        json={"title": "Outage", "organization_id": str(other.id)},
        headers=_as(reporter),
    )
    orphan = await client.post("/api/v1/incidents", json={"title": "Outage"}, headers=_as(homeless))

    assert foreign.status_code == 403
    assert orphan.status_code == 422


@pytest.mark.asyncio
async def test_principal_and_permission_administration(
    session: AsyncSession, client: AsyncClient
) -> None:
    org = await make_organization(session)
    root = await make_user(session, organization=None, role="SuperAdmin")
    org_admin = await make_user(session, organization=org, role="OrgAdmin")
    member = await make_user(session, organization=org)

    role = await client.put(
        f"/api/v1/users/{member.id}/role", json={"role": "Editor"}, headers=_as(root)
    )
    assert role.status_code == 200
    assert role.json()["user"]["role"] == "Editor"
    assert role.json()["changed"] is True

    escalate = await client.put(
        f"/api/v1/users/{member.id}/role", json={"role": "SuperAdmin"}, headers=_as(org_admin)
    )
    assert escalate.status_code == 403

    self_off = await client.put(
        f"/api/v1/users/{org_admin.id}/active", json={"is_active": False}, headers=_as(org_admin)
    )
    assert self_off.status_code == 422

    org_perms = await client.put(
        f"/api/v1/organizations/{org.id}/permissions",
        json={"permissions": {"viewReports": False}, "note": "trial ended"},
        headers=_as(root),
    )
    assert org_perms.status_code == 200
    assert org_perms.json()["permissions"]["viewReports"] is False
    assert org_perms.json()["changed"] is True

    user_perms = await client.put(
        f"/api/v1/users/{member.id}/permissions",
        json={"permissions": {"viewReports": True}},
        headers=_as(org_admin),
    )
    assert user_perms.status_code == 200
    assert user_perms.json()["permissions"]["viewReports"] is True
    assert user_perms.json()["permissions"]["inheritedFromOrg"] is False

    bad_key = await client.put(
        f"/api/v1/users/{member.id}/permissions",
        json={"permissions": {"launchMissiles": True}},
        headers=_as(org_admin),
    )
    assert bad_key.status_code == 422

    logged = await client.post(
        "/api/v1/permissions/log",
        json={
            "organization_id": str(org.id),
            "scope": "organization",
            "action": "update",
            "changes": [{"key": "viewQuotes", "from": True, "to": False}],
        },
        headers=_as(root),
    )
    assert logged.status_code == 201
    assert logged.json()["changes"] == [{"key": "viewQuotes", "from": True, "to": False}]

    scoped_audit = await client.get("/api/v1/audit", headers=_as(org_admin))
    assert scoped_audit.status_code == 200
    assert all(item["organization_id"] == str(org.id) for item in scoped_audit.json()["items"])

    other_org = await client.get(
        "/api/v1/audit", params={"organization_id": str(root.id)}, headers=_as(org_admin)
    )
    assert other_org.status_code == 403
