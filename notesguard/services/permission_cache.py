"""用户有效权限缓存。

没有 TTL，正确性完全依赖显式失效。失效策略集中在 ``apply`` 中执行：

- ``GlobalInvalidation``：角色的直接权限、继承关系变化，或角色增删。
  存储没有“角色 -> 受影响用户”的反向索引，整体清空。
- ``UserInvalidation(username)``：单个用户的角色分配变化，只清该用户。
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from notesguard.services.errors import UserNotFoundError
from notesguard.services.permission_resolver import PermissionResolver
from notesguard.services.role_graph_store import PermissionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GlobalInvalidation:
    """清空全部缓存。"""

    reason: str = ""


@dataclass(frozen=True, slots=True)
class UserInvalidation:
    """只清除单个用户的缓存。"""

    username: str
    reason: str = ""


InvalidationEvent = GlobalInvalidation | UserInvalidation


@dataclass(frozen=True, slots=True)
class CachedPermissions:
    """缓存条目。"""

    user_id: str
    permissions: frozenset[PermissionRecord]

    @property
    def permission_names(self) -> list[str]:
        return sorted(item.name for item in self.permissions)


class PermissionCache:
    """username -> 有效权限集合。

    整体失效通过替换字典引用完成，读者只会看到完整的旧字典或全新的空字典。
    代数计数保证：失效前开始的解析结果不会在失效后被写回。
    """

    def __init__(self, resolver: PermissionResolver) -> None:
        self.resolver = resolver
        self._entries: dict[str, CachedPermissions] = {}
        self._generation = 0
        self._user_generations: dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, username: object) -> bool:
        return username in self._entries

    async def get_entry(self, username: str) -> CachedPermissions:
        cached = self._entries.get(username)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        generation = self._generation
        user_generation = self._user_generations.get(username, 0)

        user = await self.resolver.store.get_user_by_username(username)
        if user is None:
            raise UserNotFoundError(f"用户不存在: {username}")
        permissions = await self.resolver.effective_permissions_for_user_record(user)
        entry = CachedPermissions(user_id=user.id, permissions=permissions)

        if generation == self._generation and user_generation == self._user_generations.get(username, 0):
            self._entries[username] = entry
        else:
            logger.debug("用户 %s 的权限解析期间发生失效，结果不回写缓存", username)
        return entry

    async def get(self, username: str) -> frozenset[PermissionRecord]:
        return (await self.get_entry(username)).permissions

    def invalidate_all(self) -> None:
        self._generation += 1
        self._user_generations = {}
        self._entries = {}

    def invalidate_user(self, username: str) -> None:
        self._user_generations[username] = self._user_generations.get(username, 0) + 1
        self._entries.pop(username, None)

    def apply(self, event: InvalidationEvent) -> None:
        """执行失效事件。"""

        if isinstance(event, GlobalInvalidation):
            logger.info("权限缓存整体失效 reason=%s", event.reason or "-")
            self.invalidate_all()
        elif isinstance(event, UserInvalidation):
            logger.info("权限缓存失效 user=%s reason=%s", event.username, event.reason or "-")
            self.invalidate_user(event.username)
        else:
            raise TypeError(f"未知的失效事件: {event!r}")
