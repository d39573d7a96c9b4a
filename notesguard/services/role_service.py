"""角色图变更服务。

所有结构变更（权限/角色增删、角色直接权限、继承关系）都在同一把图级锁内
完成“检查 -> 写入 -> 缓存失效”，防止两个各自通过环检测的并发变更合起来
形成环。用户角色分配同样串行化，但只失效对应用户的缓存。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging
from typing import Iterable

from notesguard.services.errors import (
    CircularDependencyError,
    PartialReferenceSet,
    PermissionNotFoundError,
    RoleImmutableError,
    RoleNotFoundError,
    UserNotFoundError,
    check_partial,
)
from notesguard.services.permission_cache import GlobalInvalidation, InvalidationEvent, PermissionCache, UserInvalidation
from notesguard.services.permission_resolver import PermissionResolver
from notesguard.services.role_graph_store import (
    PermissionRecord,
    RoleGraphStore,
    RoleRecord,
    UserRecord,
    permission_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PermissionSpec:
    """外部配置中的一条权限定义。"""

    name: str
    resource: str
    action: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class RoleSpec:
    """外部配置中的一条角色定义。"""

    name: str
    description: str = ""
    permissions: tuple[str, ...] = ()
    inherits: tuple[str, ...] = ()
    additional_permissions: tuple[str, ...] = ()
    is_system: bool = False


@dataclass(slots=True)
class BatchResult:
    """批量导入结果。"""

    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[PartialReferenceSet] = field(default_factory=list)


DEFAULT_PERMISSIONS: tuple[PermissionSpec, ...] = (
    PermissionSpec("NOTES:READ", "NOTES", "READ", "查看笔记"),
    PermissionSpec("NOTES:CREATE", "NOTES", "CREATE", "新建笔记"),
    PermissionSpec("NOTES:MODIFY", "NOTES", "MODIFY", "编辑笔记"),
    PermissionSpec("NOTES:DELETE", "NOTES", "DELETE", "删除笔记"),
    PermissionSpec("AUDIT:READ", "AUDIT", "READ", "查看权限审计"),
    PermissionSpec("ROLE:MANAGE", "ROLE", "MANAGE", "管理角色与权限"),
    PermissionSpec("*:*", "*", "*", "全部资源的全部操作"),
)

DEFAULT_ROLES: tuple[RoleSpec, ...] = (
    RoleSpec("VIEWER", "只读", permissions=("NOTES:READ",), is_system=True),
    RoleSpec("USER", "普通用户", inherits=("VIEWER",), additional_permissions=("NOTES:CREATE",)),
    RoleSpec("EDITOR", "编辑", inherits=("VIEWER",), additional_permissions=("NOTES:MODIFY",)),
    RoleSpec("AUDITOR", "审计员", permissions=("AUDIT:READ",)),
    RoleSpec("SECURITY_OFFICER", "安全管理员", inherits=("AUDITOR",), additional_permissions=("ROLE:MANAGE",)),
    RoleSpec("ADMIN", "超级管理员", permissions=("*:*",), is_system=True),
)


class RoleGraphService:
    """角色图变更入口。"""

    def __init__(self, store: RoleGraphStore, cache: PermissionCache) -> None:
        self.store = store
        self.cache = cache
        self.resolver: PermissionResolver = cache.resolver
        self._lock = asyncio.Lock()

    # ---- 查询与校验 ----

    async def require_role(self, name: str) -> RoleRecord:
        role = await self.store.get_role_by_name(name)
        if role is None:
            raise RoleNotFoundError(f"角色不存在: {name}")
        return role

    async def require_permission(self, name: str) -> PermissionRecord:
        permission = await self.store.get_permission_by_name(name)
        if permission is None:
            raise PermissionNotFoundError(f"权限不存在: {name}")
        return permission

    async def require_user(self, username: str) -> UserRecord:
        user = await self.store.get_user_by_username(username)
        if user is None:
            raise UserNotFoundError(f"用户不存在: {username}")
        return user

    @staticmethod
    def _require_mutable(role: RoleRecord) -> None:
        if role.is_system:
            raise RoleImmutableError(f"系统角色不可修改: {role.name}")

    async def effective_permissions(self, role_name: str) -> frozenset[PermissionRecord]:
        return await self.resolver.effective_permissions_for_role(await self.require_role(role_name))

    async def _lookup_permissions(
        self,
        owner: str,
        names: Iterable[str],
    ) -> tuple[list[PermissionRecord], PartialReferenceSet | None]:
        wanted = set(names)
        if not wanted:
            return [], None
        found = await self.store.find_permissions_by_names(wanted)
        return found, check_partial("permission", owner, wanted, (item.name for item in found))

    async def _lookup_roles(
        self,
        owner: str,
        names: Iterable[str],
    ) -> tuple[list[RoleRecord], PartialReferenceSet | None]:
        wanted = set(names)
        if not wanted:
            return [], None
        found = await self.store.find_roles_by_names(wanted)
        return found, check_partial("role", owner, wanted, (item.name for item in found))

    async def _ensure_acyclic(self, parent: RoleRecord, child: RoleRecord) -> None:
        if await self.resolver.would_create_cycle(parent.id, child.id):
            raise CircularDependencyError(f"角色 {parent.name} 继承 {child.name} 会形成循环依赖")

    def _invalidate(self, event: InvalidationEvent) -> None:
        self.cache.apply(event)

    # ---- 权限 ----

    async def create_permission(
        self,
        resource: str,
        action: str,
        description: str = "",
        *,
        name: str | None = None,
    ) -> PermissionRecord:
        resource = resource.strip()
        action = action.strip()
        if not resource or not action:
            raise ValueError("权限的 resource 与 action 不能为空")
        async with self._lock:
            permission = await self.store.create_permission(
                name or permission_name(resource, action),
                resource,
                action,
                description,
            )
        logger.info("创建权限 %s", permission.name)
        return permission

    async def update_permission_description(self, name: str, description: str) -> PermissionRecord:
        async with self._lock:
            permission = await self.require_permission(name)
            updated = await self.store.update_permission_description(permission.id, description)
        if updated is None:
            raise PermissionNotFoundError(f"权限不存在: {name}")
        return updated

    async def delete_permission(self, name: str) -> None:
        async with self._lock:
            permission = await self.require_permission(name)
            await self.store.delete_permission(permission.id)
        logger.info("删除权限 %s", name)

    # ---- 角色 ----

    async def create_role(
        self,
        name: str,
        description: str = "",
        *,
        permissions: Iterable[str] = (),
        inherits: Iterable[str] = (),
        is_system: bool = False,
    ) -> RoleRecord:
        """创建组合角色，引用的权限或角色缺失时整体失败。"""

        name = name.strip()
        if not name:
            raise ValueError("角色名称不能为空")
        async with self._lock:
            found_permissions, partial_permissions = await self._lookup_permissions(name, permissions)
            if partial_permissions is not None:
                raise PermissionNotFoundError(partial_permissions.describe())
            found_roles, partial_roles = await self._lookup_roles(name, inherits)
            if partial_roles is not None:
                raise RoleNotFoundError(partial_roles.describe())

            role = await self.store.create_role(
                name,
                description,
                is_system=is_system,
                permission_ids=(item.id for item in found_permissions),
                child_role_ids=(item.id for item in found_roles),
            )
            self._invalidate(GlobalInvalidation(reason=f"create_role:{name}"))

        logger.info(
            "创建组合角色 %s：直接权限 %d 项，继承角色 %d 个",
            name,
            len(role.permission_ids),
            len(role.child_role_ids),
        )
        return role

    async def update_role(
        self,
        name: str,
        *,
        description: str | None = None,
        permissions: Iterable[str] | None = None,
        inherits: Iterable[str] | None = None,
    ) -> RoleRecord:
        """整体替换角色的描述、直接权限与继承集合（忽略自引用）。"""

        async with self._lock:
            role = await self.require_role(name)
            self._require_mutable(role)
            updated = role
            if description is not None:
                updated = replace(updated, description=description)

            if permissions is not None:
                found, partial = await self._lookup_permissions(name, permissions)
                if partial is not None:
                    raise PermissionNotFoundError(partial.describe())
                updated = replace(updated, permission_ids=frozenset(item.id for item in found))

            if inherits is not None:
                found_roles, partial_roles = await self._lookup_roles(name, (item for item in inherits if item != name))
                if partial_roles is not None:
                    raise RoleNotFoundError(partial_roles.describe())
                for child in found_roles:
                    await self._ensure_acyclic(role, child)
                updated = replace(updated, child_role_ids=frozenset(item.id for item in found_roles))

            saved = await self.store.save_role(updated)
            self._invalidate(GlobalInvalidation(reason=f"update_role:{name}"))

        logger.info("更新角色 %s", name)
        return saved

    async def delete_role(self, name: str) -> None:
        async with self._lock:
            role = await self.require_role(name)
            if role.is_system:
                raise RoleImmutableError(f"系统角色不可删除: {name}")
            await self.store.delete_role(role.id)
            self._invalidate(GlobalInvalidation(reason=f"delete_role:{name}"))
        logger.info("删除角色 %s", name)

    async def add_permission_to_role(self, role_name: str, permission: str) -> RoleRecord:
        async with self._lock:
            role = await self.require_role(role_name)
            self._require_mutable(role)
            record = await self.require_permission(permission)
            saved = await self.store.save_role(replace(role, permission_ids=role.permission_ids | {record.id}))
            self._invalidate(GlobalInvalidation(reason=f"add_permission:{role_name}"))
        logger.info("为角色 %s 添加权限 %s", role_name, permission)
        return saved

    async def remove_permission_from_role(self, role_name: str, permission: str) -> RoleRecord:
        async with self._lock:
            role = await self.require_role(role_name)
            self._require_mutable(role)
            record = await self.require_permission(permission)
            saved = await self.store.save_role(replace(role, permission_ids=role.permission_ids - {record.id}))
            self._invalidate(GlobalInvalidation(reason=f"remove_permission:{role_name}"))
        logger.info("从角色 %s 移除权限 %s", role_name, permission)
        return saved

    async def add_child_role(self, parent_name: str, child_name: str) -> RoleRecord:
        """让 parent 继承 child 的全部权限。"""

        async with self._lock:
            parent = await self.require_role(parent_name)
            child = await self.require_role(child_name)
            self._require_mutable(parent)
            await self._ensure_acyclic(parent, child)
            if child.id in parent.child_role_ids:
                return parent
            saved = await self.store.save_role(replace(parent, child_role_ids=parent.child_role_ids | {child.id}))
            self._invalidate(GlobalInvalidation(reason=f"add_child_role:{parent_name}"))
        logger.info("角色 %s 新增继承角色 %s", parent_name, child_name)
        return saved

    async def remove_child_role(self, parent_name: str, child_name: str) -> RoleRecord:
        async with self._lock:
            parent = await self.require_role(parent_name)
            child = await self.require_role(child_name)
            self._require_mutable(parent)
            saved = await self.store.save_role(replace(parent, child_role_ids=parent.child_role_ids - {child.id}))
            self._invalidate(GlobalInvalidation(reason=f"remove_child_role:{parent_name}"))
        logger.info("角色 %s 移除继承角色 %s", parent_name, child_name)
        return saved

    # ---- 用户角色分配 ----

    async def ensure_user(self, username: str, roles: Iterable[str] = ()) -> UserRecord:
        """用户不存在时创建，并补齐给定角色（供外部初始化流程调用）。"""

        async with self._lock:
            found, partial = await self._lookup_roles(username, roles)
            if partial is not None:
                logger.warning(partial.describe())
            user = await self.store.get_user_by_username(username)
            if user is None:
                user = await self.store.create_user(username, (item.id for item in found))
            elif found:
                user = await self.store.save_user(replace(user, role_ids=user.role_ids | {item.id for item in found}))
            self._invalidate(UserInvalidation(username, reason="ensure_user"))
        return user

    async def assign_role_to_user(self, username: str, role_name: str) -> UserRecord:
        async with self._lock:
            user = await self.require_user(username)
            role = await self.require_role(role_name)
            saved = await self.store.save_user(replace(user, role_ids=user.role_ids | {role.id}))
            self._invalidate(UserInvalidation(username, reason=f"assign:{role_name}"))
        logger.info("为用户 %s 分配角色 %s", username, role_name)
        return saved

    async def remove_role_from_user(self, username: str, role_name: str) -> UserRecord:
        async with self._lock:
            user = await self.require_user(username)
            role = await self.require_role(role_name)
            saved = await self.store.save_user(replace(user, role_ids=user.role_ids - {role.id}))
            self._invalidate(UserInvalidation(username, reason=f"remove:{role_name}"))
        logger.info("移除用户 %s 的角色 %s", username, role_name)
        return saved

    async def user_role_names(self, username: str) -> list[str]:
        user = await self.require_user(username)
        return sorted(role.name for role in await self.store.get_roles(user.role_ids))

    async def role_holders(self, role_name: str) -> list[str]:
        """直接持有该角色的用户名（不含经由继承间接获得的）。"""

        role = await self.require_role(role_name)
        return sorted(user.username for user in await self.store.users_with_role(role.id))

    # ---- 配置加载边界 ----

    async def apply_permission_batch(self, specs: Iterable[PermissionSpec]) -> BatchResult:
        """幂等导入权限：同名已存在则跳过，不覆盖。"""

        result = BatchResult()
        async with self._lock:
            for spec in specs:
                if await self.store.get_permission_by_name(spec.name):
                    result.skipped.append(spec.name)
                    continue
                await self.store.create_permission(spec.name, spec.resource, spec.action, spec.description)
                result.created.append(spec.name)
        logger.info("导入权限：新建 %d 项，跳过 %d 项", len(result.created), len(result.skipped))
        return result

    async def apply_role_batch(self, specs: Iterable[RoleSpec]) -> BatchResult:
        """幂等导入角色。引用缺失只告警，带着已命中的部分继续。"""

        result = BatchResult()
        async with self._lock:
            for spec in specs:
                if await self.store.get_role_by_name(spec.name):
                    result.skipped.append(spec.name)
                    continue

                wanted = (*spec.permissions, *spec.additional_permissions)
                found_permissions, partial_permissions = await self._lookup_permissions(spec.name, wanted)
                found_roles, partial_roles = await self._lookup_roles(spec.name, spec.inherits)
                for partial in (partial_permissions, partial_roles):
                    if partial is not None:
                        logger.warning("角色导入引用不完整 %s", partial.describe())
                        result.warnings.append(partial)

                await self.store.create_role(
                    spec.name,
                    spec.description,
                    is_system=spec.is_system,
                    permission_ids=(item.id for item in found_permissions),
                    child_role_ids=(item.id for item in found_roles),
                )
                result.created.append(spec.name)

            if result.created:
                self._invalidate(GlobalInvalidation(reason="apply_role_batch"))
        logger.info("导入角色：新建 %d 个，跳过 %d 个", len(result.created), len(result.skipped))
        return result


async def ensure_default_roles(service: RoleGraphService) -> None:
    """写入内置权限与角色目录（幂等，只建角色不建账号）。"""

    await service.apply_permission_batch(DEFAULT_PERMISSIONS)
    await service.apply_role_batch(DEFAULT_ROLES)
