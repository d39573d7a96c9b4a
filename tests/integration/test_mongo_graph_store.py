from __future__ import annotations

import pytest

from notesguard.services.access_runtime import build_access_control
from notesguard.services.audit_service import AuditContext, MongoAuditRepository
from notesguard.services.errors import AlreadyExistsError, CircularDependencyError, PermissionInUseError
from notesguard.services.mongo_graph_store import MongoRoleGraphStore
from notesguard.services.role_service import ensure_default_roles


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mongo_store_resolves_default_catalogue(initialized_db: str) -> None:
    store = MongoRoleGraphStore()
    access_control = build_access_control(store, MongoAuditRepository())
    await ensure_default_roles(access_control.roles)
    await ensure_default_roles(access_control.roles)
    await access_control.roles.ensure_user("bob", ["EDITOR"])

    assert len(await store.list_roles()) == 6
    assert await access_control.decisions.check("bob", "NOTES", "MODIFY") is True
    assert await access_control.decisions.check("bob", "NOTES", "DELETE") is False

    await access_control.audit_sink.stop()
    records = await access_control.audit_repository.list_by_username("bob")
    assert sorted(item.permission for item in records) == ["NOTES:DELETE", "NOTES:MODIFY"]
    assert await access_control.audit_repository.count_recent_failures(records[0].user_id or "", 1) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mongo_store_constraints(initialized_db: str) -> None:
    store = MongoRoleGraphStore()
    access_control = build_access_control(store, MongoAuditRepository())
    roles = access_control.roles
    await roles.create_permission("NOTES", "READ")
    await roles.create_role("A", permissions=["NOTES:READ"])
    await roles.create_role("B")
    await roles.add_child_role("A", "B")

    with pytest.raises(AlreadyExistsError):
        await roles.create_role("A")
    with pytest.raises(CircularDependencyError):
        await roles.add_child_role("B", "A")
    with pytest.raises(PermissionInUseError):
        await roles.delete_permission("NOTES:READ")

    await roles.ensure_user("carol", ["B"])
    await roles.delete_role("B")

    role_a = await roles.require_role("A")
    carol = await roles.require_user("carol")
    assert role_a.child_role_ids == frozenset()
    assert carol.role_ids == frozenset()
    assert await store.get_role("not-an-object-id") is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mongo_audit_keeps_oversized_requests(initialized_db: str) -> None:
    access_control = build_access_control(MongoRoleGraphStore(), MongoAuditRepository())
    await ensure_default_roles(access_control.roles)
    await access_control.roles.ensure_user("bob", ["EDITOR"])
    decisions = access_control.decisions

    assert await decisions.check("bob", "NOTES", "DELETE", context=AuditContext(ip_address="x" * 60)) is False
    assert await decisions.check("bob", "R" * 51, "READ", 7) is False

    await access_control.audit_sink.stop()
    assert (access_control.audit_sink.written, access_control.audit_sink.failed) == (2, 0)
    records = await access_control.audit_repository.list_by_username("bob")
    assert sorted(item.permission for item in records) == ["NOTES:DELETE", f"{'R' * 50}:READ"]
    assert {item.resource_id for item in records} == {None, "7"}
