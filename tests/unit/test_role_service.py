from __future__ import annotations

import asyncio
from typing import Iterable

import pytest

from notesguard.services.errors import (
    AlreadyExistsError,
    CircularDependencyError,
    PermissionInUseError,
    PermissionNotFoundError,
    RoleImmutableError,
    RoleNotFoundError,
    UserNotFoundError,
)
from notesguard.services.permission_cache import PermissionCache
from notesguard.services.permission_resolver import PermissionResolver
from notesguard.services.role_graph_store import InMemoryRoleGraphStore, RoleRecord
from notesguard.services.role_service import (
    DEFAULT_ROLES,
    PermissionSpec,
    RoleGraphService,
    RoleSpec,
    ensure_default_roles,
)


class YieldingStore(InMemoryRoleGraphStore):
    """每次批量读角色都让出事件循环，放大并发交错。"""

    async def get_roles(self, role_ids: Iterable[str]) -> list[RoleRecord]:
        await asyncio.sleep(0)
        return await super().get_roles(role_ids)


def _service(store: InMemoryRoleGraphStore | None = None) -> RoleGraphService:
    store = store or InMemoryRoleGraphStore()
    return RoleGraphService(store, PermissionCache(PermissionResolver(store)))


async def _names(service: RoleGraphService, role: str) -> set[str]:
    return {item.name for item in await service.effective_permissions(role)}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_default_catalogue_is_seeded_idempotently() -> None:
    service = _service()

    await ensure_default_roles(service)
    await ensure_default_roles(service)

    roles = await service.store.list_roles()
    assert sorted(item.name for item in roles) == sorted(spec.name for spec in DEFAULT_ROLES)
    assert await _names(service, "EDITOR") == {"NOTES:READ", "NOTES:MODIFY"}
    assert await _names(service, "SECURITY_OFFICER") == {"AUDIT:READ", "ROLE:MANAGE"}
    assert await _names(service, "ADMIN") == {"*:*"}
    assert (await service.require_role("ADMIN")).is_system is True
    assert (await service.require_role("USER")).is_system is False
    assert await service.store.list_users() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_batch_with_partial_references_warns_and_continues() -> None:
    service = _service()
    await service.apply_permission_batch([PermissionSpec("NOTES:READ", "NOTES", "READ")])

    result = await service.apply_role_batch(
        [
            RoleSpec("BASE", permissions=("NOTES:READ",)),
            RoleSpec("PARTIAL", permissions=("NOTES:READ", "NOTES:PURGE"), inherits=("BASE", "NOPE")),
        ]
    )

    assert result.created == ["BASE", "PARTIAL"]
    assert {item.kind for item in result.warnings} == {"permission", "role"}
    assert {name for item in result.warnings for name in item.missing} == {"NOTES:PURGE", "NOPE"}
    partial = await service.require_role("PARTIAL")
    assert len(partial.permission_ids) == 1
    assert len(partial.child_role_ids) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_batch_skips_existing_names() -> None:
    service = _service()
    specs = [PermissionSpec("NOTES:READ", "NOTES", "READ")]

    first = await service.apply_permission_batch(specs)
    second = await service.apply_permission_batch(specs)

    assert first.created == ["NOTES:READ"]
    assert second.created == []
    assert second.skipped == ["NOTES:READ"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_role_is_strict_about_references() -> None:
    service = _service()
    await service.create_permission("NOTES", "READ")

    with pytest.raises(PermissionNotFoundError):
        await service.create_role("R1", permissions=["NOTES:READ", "NOTES:PURGE"])
    with pytest.raises(RoleNotFoundError):
        await service.create_role("R2", inherits=["MISSING"])
    assert await service.store.list_roles() == []

    await service.create_role("R3", permissions=["NOTES:READ"])
    with pytest.raises(AlreadyExistsError):
        await service.create_role("R3")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reverse_edge_is_circular() -> None:
    service = _service()
    await service.create_role("A")
    await service.create_role("B")

    await service.add_child_role("A", "B")
    with pytest.raises(CircularDependencyError):
        await service.add_child_role("B", "A")
    with pytest.raises(CircularDependencyError):
        await service.add_child_role("A", "A")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transitive_cycle_is_rejected_and_graph_unchanged() -> None:
    service = _service()
    for name in ("A", "B", "C"):
        await service.create_role(name)
    await service.add_child_role("A", "B")
    await service.add_child_role("B", "C")

    with pytest.raises(CircularDependencyError):
        await service.add_child_role("C", "A")
    assert (await service.require_role("C")).child_role_ids == frozenset()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_role_replaces_sets_and_checks_cycles() -> None:
    service = _service()
    await service.create_permission("NOTES", "READ")
    await service.create_permission("NOTES", "MODIFY")
    await service.create_role("BASE", permissions=["NOTES:READ"])
    await service.create_role("TOP", inherits=["BASE"])

    updated = await service.update_role(
        "TOP",
        description="updated",
        permissions=["NOTES:MODIFY"],
        inherits=["BASE", "TOP"],
    )

    assert updated.description == "updated"
    assert await _names(service, "TOP") == {"NOTES:READ", "NOTES:MODIFY"}
    with pytest.raises(CircularDependencyError):
        await service.update_role("BASE", inherits=["TOP"])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_system_roles_are_immutable() -> None:
    service = _service()
    await ensure_default_roles(service)

    with pytest.raises(RoleImmutableError):
        await service.delete_role("ADMIN")
    with pytest.raises(RoleImmutableError):
        await service.add_permission_to_role("VIEWER", "NOTES:DELETE")
    with pytest.raises(RoleImmutableError):
        await service.update_role("VIEWER", description="changed")

    await service.delete_role("USER")
    with pytest.raises(RoleNotFoundError):
        await service.require_role("USER")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_permission_still_referenced_is_rejected() -> None:
    service = _service()
    await service.create_permission("NOTES", "READ")
    await service.create_permission("NOTES", "PURGE")
    await service.create_role("VIEWER", permissions=["NOTES:READ"])

    with pytest.raises(PermissionInUseError):
        await service.delete_permission("NOTES:READ")
    await service.delete_permission("NOTES:PURGE")
    with pytest.raises(PermissionNotFoundError):
        await service.require_permission("NOTES:PURGE")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_role_change_invalidates_every_cached_user() -> None:
    service = _service()
    await ensure_default_roles(service)
    await service.ensure_user("alice", ["USER"])
    await service.ensure_user("bob", ["EDITOR"])
    await service.cache.get("alice")
    await service.cache.get("bob")

    await service.add_permission_to_role("USER", "NOTES:DELETE")

    assert len(service.cache) == 0
    assert "NOTES:DELETE" in {item.name for item in await service.cache.get("alice")}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assignment_invalidates_only_that_user() -> None:
    service = _service()
    await ensure_default_roles(service)
    await service.ensure_user("alice", ["USER"])
    await service.ensure_user("bob", ["EDITOR"])
    await service.cache.get("alice")
    await service.cache.get("bob")

    await service.assign_role_to_user("alice", "AUDITOR")

    assert "alice" not in service.cache
    assert "bob" in service.cache
    assert await service.user_role_names("alice") == ["AUDITOR", "USER"]

    await service.remove_role_from_user("alice", "USER")
    assert await service.user_role_names("alice") == ["AUDITOR"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_assign_to_unknown_user_raises() -> None:
    service = _service()
    await service.create_role("VIEWER")

    with pytest.raises(UserNotFoundError):
        await service.assign_role_to_user("ghost", "VIEWER")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_child_role_shrinks_effective_permissions() -> None:
    service = _service()
    await service.create_permission("NOTES", "READ")
    await service.create_role("BASE", permissions=["NOTES:READ"])
    await service.create_role("TOP", inherits=["BASE"])

    await service.remove_child_role("TOP", "BASE")

    assert await _names(service, "TOP") == set()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_opposite_edges_cannot_both_succeed() -> None:
    service = _service(YieldingStore())
    await service.create_role("A")
    await service.create_role("B")

    results = await asyncio.gather(
        service.add_child_role("A", "B"),
        service.add_child_role("B", "A"),
        return_exceptions=True,
    )

    errors = [item for item in results if isinstance(item, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], CircularDependencyError)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_role_holders_lists_direct_assignments_only() -> None:
    service = _service()
    await service.create_role("VIEWER")
    await service.create_role("EDITOR", inherits=["VIEWER"])
    await service.ensure_user("carol", ["VIEWER"])
    await service.ensure_user("alice", ["VIEWER"])
    await service.ensure_user("bob", ["EDITOR"])

    assert await service.role_holders("VIEWER") == ["alice", "carol"]
    assert await service.role_holders("EDITOR") == ["bob"]
    with pytest.raises(RoleNotFoundError):
        await service.role_holders("GHOST")
