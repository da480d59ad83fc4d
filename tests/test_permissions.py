# ruff: noqa

from __future__ import annotations

from typing import Any
from uuid import uuid4

import pytest

from factories import make_organization, make_user
from incidentdesk.models.audit_entries import AuditEntry
from incidentdesk.models.organizations import Organization
from incidentdesk.models.users import User
from incidentdesk.services.capabilities import (
    ALL_CAPABILITIES,
    EMPTY_CAPABILITIES,
    resolve_capabilities,
)
from incidentdesk.services.permissions import (
    DEFAULT_PERMISSIONS,
    INHERITED_FLAG,
    get_effective_permissions,
    log_permission_change,
    update_organization_permissions,
    update_user_permissions,
    validate_permission_updates,
)
from incidentdesk.services.results import ErrorKind


def test_effective_permissions_default_to_inheriting() -> None:
    org = Organization(name="Acme", permissions=None)
    user = User(clerk_user_id="u1", permissions=None)

    effective = get_effective_permissions(user, org)

    assert effective[INHERITED_FLAG] is True
    assert {key: effective[key] for key in DEFAULT_PERMISSIONS} == DEFAULT_PERMISSIONS


def test_effective_permissions_follow_org_unless_overridden() -> None:
    org = Organization(name="Acme", permissions={"viewReports": False, "exportData": True})
    inheriting = User(clerk_user_id="u1", permissions={"viewReports": True})
    overriding = User(
        clerk_user_id="u2",
        permissions={"viewReports": True, "manageUsers": True, INHERITED_FLAG: False},
    )

    assert get_effective_permissions(inheriting, org)["viewReports"] is False
    assert "exportData" not in get_effective_permissions(inheriting, org)

    effective = get_effective_permissions(overriding, org)
    assert effective["viewReports"] is True
    assert effective["manageUsers"] is True
    assert effective[INHERITED_FLAG] is False


def test_validate_permission_updates() -> None:
    assert validate_permission_updates({"viewReports": False})
    assert not validate_permission_updates({})
    assert not validate_permission_updates({"launchMissiles": True})
    assert not validate_permission_updates({"viewReports": "yes"})


async def _audit_rows(session: Any) -> list[AuditEntry]:
    return await AuditEntry.objects.all().all(session)


@pytest.mark.asyncio
async def test_first_org_update_is_a_set_then_update(session: Any) -> None:
    admin = await make_user(session, organization=None, role="SuperAdmin")
    org = await make_organization(session)

    first = await update_organization_permissions(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        organization=org,
        updates={"viewReports": False},
        note="contract downgrade",
    )
    assert first.changed
    assert first.audit_entry is not None
    assert first.audit_entry.action == "set"
    assert first.audit_entry.scope == "organization"
    assert first.audit_entry.changes == [{"key": "viewReports", "from": True, "to": False}]
    assert first.audit_entry.note == "contract downgrade"
    assert org.permissions is not None and org.permissions["viewReports"] is False
    assert "lastUpdated" in org.permissions

    second = await update_organization_permissions(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        organization=org,
        updates={"viewReports": True, "createIncidents": True},
    )
    assert second.audit_entry is not None
    assert second.audit_entry.action == "update"
    assert second.audit_entry.keys == ["createIncidents", "viewReports"]

    assert len(await _audit_rows(session)) == 2


@pytest.mark.asyncio
async def test_org_update_without_difference_is_noop(session: Any) -> None:
    admin = await make_user(session, organization=None, role="SuperAdmin")
    org = await make_organization(session)

    result = await update_organization_permissions(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        organization=org,
        updates={"viewIncidents": True},
    )

    assert result.error == ErrorKind.NOOP
    assert org.permissions is None
    assert await _audit_rows(session) == []


@pytest.mark.asyncio
async def test_org_update_requires_manage_organizations(session: Any) -> None:
    core = await make_organization(session, name="Core", org_type="core")
    core_admin = await make_user(session, organization=core, role="Admin")
    org = await make_organization(session)

    result = await update_organization_permissions(
        session,
        principal=core_admin,
        capabilities=resolve_capabilities(core_admin, core),
        organization=org,
        updates={"viewReports": False},
    )
    assert result.error == ErrorKind.FORBIDDEN

    invalid = await update_organization_permissions(
        session,
        principal=core_admin,
        capabilities=ALL_CAPABILITIES,
        organization=org,
        updates={"bogus": True},
    )
    assert invalid.error == ErrorKind.VALIDATION_FAILED
    assert await _audit_rows(session) == []


@pytest.mark.asyncio
async def test_user_override_then_reset(session: Any) -> None:
    org = await make_organization(session, permissions={"viewReports": False})
    org_admin = await make_user(session, organization=org, role="OrgAdmin")
    target = await make_user(session, organization=org)
    caps = resolve_capabilities(org_admin, org)

    override = await update_user_permissions(
        session,
        principal=org_admin,
        capabilities=caps,
        target=target,
        organization=org,
        updates={"viewReports": True},
    )
    assert override.changed
    assert override.audit_entry is not None
    assert override.audit_entry.action == "set"
    assert override.audit_entry.changes == [
        {"key": "viewReports", "from": False, "to": True},
        {"key": INHERITED_FLAG, "from": True, "to": False},
    ]
    assert get_effective_permissions(target, org)["viewReports"] is True

    tweak = await update_user_permissions(
        session,
        principal=org_admin,
        capabilities=caps,
        target=target,
        organization=org,
        updates={"viewQuotes": False},
    )
    assert tweak.audit_entry is not None
    assert tweak.audit_entry.action == "update"
    assert tweak.audit_entry.changes == [{"key": "viewQuotes", "from": True, "to": False}]

    reset = await update_user_permissions(
        session,
        principal=org_admin,
        capabilities=caps,
        target=target,
        organization=org,
        reset=True,
    )
    assert reset.audit_entry is not None
    assert reset.audit_entry.action == "reset"
    assert {"key": INHERITED_FLAG, "from": False, "to": True} in reset.audit_entry.changes
    effective = get_effective_permissions(target, org)
    assert effective["viewReports"] is False
    assert effective[INHERITED_FLAG] is True

    again = await update_user_permissions(
        session,
        principal=org_admin,
        capabilities=caps,
        target=target,
        organization=org,
        reset=True,
    )
    assert again.error == ErrorKind.NOOP
    assert len(await _audit_rows(session)) == 3


@pytest.mark.asyncio
async def test_org_admin_cannot_touch_other_organizations(session: Any) -> None:
    home = await make_organization(session, name="Home")
    other = await make_organization(session, name="Other")
    org_admin = await make_user(session, organization=home, role="OrgAdmin")
    stranger = await make_user(session, organization=other)

    result = await update_user_permissions(
        session,
        principal=org_admin,
        capabilities=resolve_capabilities(org_admin, home),
        target=stranger,
        organization=other,
        updates={"viewReports": False},
    )

    assert result.error == ErrorKind.FORBIDDEN
    assert stranger.permissions is None


@pytest.mark.asyncio
async def test_log_permission_change_requires_privilege(session: Any) -> None:
    org = await make_organization(session)
    org_admin = await make_user(session, organization=org, role="OrgAdmin")

    result = await log_permission_change(
        session,
        principal=org_admin,
        capabilities=resolve_capabilities(org_admin, org),
        scope="organization",
        organization_id=org.id,
        action="update",
        changes=[{"key": "viewReports", "from": True, "to": False}],
    )

    assert result.error == ErrorKind.FORBIDDEN
    assert await _audit_rows(session) == []


@pytest.mark.asyncio
async def test_log_permission_change_validates_and_records(session: Any) -> None:
    admin = await make_user(session, organization=None, role="SuperAdmin", email="Root@Example.com")
    org_id = uuid4()
    user_id = uuid4()

    missing_user = await log_permission_change(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        scope="user",
        organization_id=org_id,
        action="update",
        changes=[{"key": "viewReports", "from": True, "to": False}],
    )
    assert missing_user.error == ErrorKind.VALIDATION_FAILED

    empty = await log_permission_change(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        scope="organization",
        organization_id=org_id,
        action="update",
        changes=[],
    )
    assert empty.error == ErrorKind.VALIDATION_FAILED

    recorded = await log_permission_change(
        session,
        principal=admin,
        capabilities=ALL_CAPABILITIES,
        scope="user",
        organization_id=org_id,
        user_id=user_id,
        action="update",
        changes=[{"key": "viewReports", "from": True, "to": False}],
        note="bulk edit",
    )
    assert recorded.changed
    entry = recorded.subject
    assert entry is not None
    assert entry.target_id == str(user_id)
    assert entry.organization_id == org_id
    assert entry.actor_email == "root@example.com"
    assert entry.keys == ["viewReports"]
    assert len(await _audit_rows(session)) == 1


@pytest.mark.asyncio
async def test_log_permission_change_checks_capability_before_payload() -> None:
    result = await log_permission_change(
        None,  # type: ignore[arg-type]
        principal=User(clerk_user_id="u"),
        capabilities=EMPTY_CAPABILITIES,
        scope="organization",
        organization_id=uuid4(),
        action="update",
        changes=[{"key": "viewReports"}],
    )
    assert result.error == ErrorKind.FORBIDDEN
