"""有效权限解析：沿角色继承图收集权限。"""

from __future__ import annotations

import logging

from notesguard.services.errors import UserNotFoundError
from notesguard.services.role_graph_store import PermissionRecord, RoleGraphStore, RoleRecord, UserRecord

logger = logging.getLogger(__name__)


class PermissionResolver:
    """按调用时刻的存储状态计算有效权限，不做缓存。

    遍历始终携带 visited 集合：菱形继承只访问一次，
    即便存储中已存在环（例如绕过变更接口直接写库）也能终止。
    """

    def __init__(self, store: RoleGraphStore) -> None:
        self.store = store

    async def _walk(self, roots: list[RoleRecord]) -> list[RoleRecord]:
        """按层广度优先遍历，返回所有可达角色（含根）。"""

        visited: dict[str, RoleRecord] = {}
        frontier = list(roots)
        while frontier:
            pending: set[str] = set()
            for role in frontier:
                if role.id in visited:
                    continue
                visited[role.id] = role
                pending.update(child for child in role.child_role_ids if child not in visited)

            if not pending:
                break
            frontier = await self.store.get_roles(pending)
            missing = pending - {role.id for role in frontier}
            if missing:
                logger.warning("继承图中存在悬空的角色引用: %s", ", ".join(sorted(missing)))
        return list(visited.values())

    async def _collect(self, roots: list[RoleRecord]) -> frozenset[PermissionRecord]:
        roles = await self._walk(roots)
        permission_ids: set[str] = set()
        for role in roles:
            permission_ids.update(role.permission_ids)
        if not permission_ids:
            return frozenset()
        return frozenset(await self.store.get_permissions(permission_ids))

    async def effective_permissions_for_role(self, role: RoleRecord) -> frozenset[PermissionRecord]:
        """角色自身权限与全部传递继承角色权限的并集。"""

        return await self._collect([role])

    async def effective_permissions_for_user_record(self, user: UserRecord) -> frozenset[PermissionRecord]:
        """用户全部角色有效权限的并集（多个角色共享同一次遍历的 visited 集合）。"""

        if not user.role_ids:
            return frozenset()
        roles = await self.store.get_roles(user.role_ids)
        return await self._collect(roles)

    async def effective_permissions_for_user(self, username: str) -> frozenset[PermissionRecord]:
        user = await self.store.get_user_by_username(username)
        if user is None:
            raise UserNotFoundError(f"用户不存在: {username}")
        permissions = await self.effective_permissions_for_user_record(user)
        logger.debug("用户 %s 共有 %d 项有效权限", username, len(permissions))
        return permissions

    async def descendant_role_ids(self, role_id: str) -> set[str]:
        """返回 role_id 经继承边可达的全部角色 id（不含自身，除非存在环）。"""

        root = await self.store.get_role(role_id)
        if root is None:
            return set()

        reached: set[str] = set()
        visited: set[str] = {root.id}
        frontier = [root]
        while frontier:
            pending: set[str] = set()
            for role in frontier:
                for child in role.child_role_ids:
                    reached.add(child)
                    if child not in visited:
                        visited.add(child)
                        pending.add(child)
            frontier = await self.store.get_roles(pending) if pending else []
        return reached

    async def would_create_cycle(self, parent_id: str, candidate_child_id: str) -> bool:
        """新增 parent -> candidate_child 继承边是否会成环。

        固定沿候选子角色向下遍历，查找父角色是否已可达。
        """

        if parent_id == candidate_child_id:
            return True
        return parent_id in await self.descendant_role_ids(candidate_child_id)
