"""角色图存储：角色、权限、用户及其关系的持久化边界。

存储层只负责数据，不做图约束校验（环检测在 PermissionResolver /
RoleGraphService 中完成）。实体之间只通过 id 互相引用，继承边就是
``(父角色 id, 子角色 id)`` 对，环检测因此是一次基于 id 的可达性查询。

契约：
- ``get_*`` 查不到时返回 ``None``；
- ``find_*_by_names`` / ``get_roles`` / ``get_permissions`` 只返回命中的子集，
  调用方通过比较输入输出数量识别缺失；
- 名称重复创建抛 ``AlreadyExistsError``；
- 删除仍被角色引用的权限抛 ``PermissionInUseError``（不级联）；
- 删除角色级联移除其它角色的继承边与用户的角色分配。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Iterable
from uuid import uuid4

from notesguard.services.errors import AlreadyExistsError, PermissionInUseError, RoleNotFoundError, UserNotFoundError

WILDCARD = "*"


def permission_name(resource: str, action: str) -> str:
    """构造规范权限名 ``RESOURCE:ACTION``。"""

    return f"{resource}:{action}"


@dataclass(frozen=True, slots=True)
class PermissionRecord:
    """原子权限。相等性只取决于 name。"""

    name: str
    resource: str = field(compare=False)
    action: str = field(compare=False)
    description: str = field(default="", compare=False)
    id: str = field(default="", compare=False)

    def matches(self, resource: str, action: str) -> bool:
        """支持 ``*`` 通配的资源/动作匹配。"""

        resource_ok = self.resource == WILDCARD or self.resource == resource
        action_ok = self.action == WILDCARD or self.action == action
        return resource_ok and action_ok


@dataclass(frozen=True, slots=True)
class RoleRecord:
    """角色。child_role_ids 是本角色继承（组合）的角色。"""

    id: str
    name: str
    description: str = ""
    is_system: bool = False
    permission_ids: frozenset[str] = frozenset()
    child_role_ids: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class UserRecord:
    """用户（仅保留鉴权需要的字段）。"""

    id: str
    username: str
    role_ids: frozenset[str] = frozenset()


class RoleGraphStore(ABC):
    """角色图存储接口。"""

    # ---- 权限 ----

    @abstractmethod
    async def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: str = "",
    ) -> PermissionRecord: ...

    @abstractmethod
    async def get_permission(self, permission_id: str) -> PermissionRecord | None: ...

    @abstractmethod
    async def get_permission_by_name(self, name: str) -> PermissionRecord | None: ...

    @abstractmethod
    async def find_permissions_by_names(self, names: Iterable[str]) -> list[PermissionRecord]: ...

    @abstractmethod
    async def get_permissions(self, permission_ids: Iterable[str]) -> list[PermissionRecord]: ...

    @abstractmethod
    async def list_permissions(self) -> list[PermissionRecord]: ...

    @abstractmethod
    async def update_permission_description(
        self,
        permission_id: str,
        description: str,
    ) -> PermissionRecord | None: ...

    @abstractmethod
    async def delete_permission(self, permission_id: str) -> bool: ...

    # ---- 角色 ----

    @abstractmethod
    async def create_role(
        self,
        name: str,
        description: str = "",
        *,
        is_system: bool = False,
        permission_ids: Iterable[str] = (),
        child_role_ids: Iterable[str] = (),
    ) -> RoleRecord: ...

    @abstractmethod
    async def get_role(self, role_id: str) -> RoleRecord | None: ...

    @abstractmethod
    async def get_role_by_name(self, name: str) -> RoleRecord | None: ...

    @abstractmethod
    async def find_roles_by_names(self, names: Iterable[str]) -> list[RoleRecord]: ...

    @abstractmethod
    async def get_roles(self, role_ids: Iterable[str]) -> list[RoleRecord]: ...

    @abstractmethod
    async def list_roles(self) -> list[RoleRecord]: ...

    @abstractmethod
    async def save_role(self, role: RoleRecord) -> RoleRecord: ...

    @abstractmethod
    async def delete_role(self, role_id: str) -> bool: ...

    # ---- 用户 ----

    @abstractmethod
    async def create_user(self, username: str, role_ids: Iterable[str] = ()) -> UserRecord: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> UserRecord | None: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> UserRecord | None: ...

    @abstractmethod
    async def list_users(self) -> list[UserRecord]: ...

    @abstractmethod
    async def save_user(self, user: UserRecord) -> UserRecord: ...

    @abstractmethod
    async def users_with_role(self, role_id: str) -> list[UserRecord]: ...


class InMemoryRoleGraphStore(RoleGraphStore):
    """基于字典索引的内存实现（id -> 记录，name -> id）。"""

    def __init__(self) -> None:
        self._permissions: dict[str, PermissionRecord] = {}
        self._permission_names: dict[str, str] = {}
        self._roles: dict[str, RoleRecord] = {}
        self._role_names: dict[str, str] = {}
        self._users: dict[str, UserRecord] = {}
        self._usernames: dict[str, str] = {}

    @staticmethod
    def _new_id() -> str:
        return uuid4().hex

    async def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: str = "",
    ) -> PermissionRecord:
        if name in self._permission_names:
            raise AlreadyExistsError(f"权限已存在: {name}")
        record = PermissionRecord(
            id=self._new_id(),
            name=name,
            resource=resource,
            action=action,
            description=description,
        )
        self._permissions[record.id] = record
        self._permission_names[name] = record.id
        return record

    async def get_permission(self, permission_id: str) -> PermissionRecord | None:
        return self._permissions.get(permission_id)

    async def get_permission_by_name(self, name: str) -> PermissionRecord | None:
        permission_id = self._permission_names.get(name)
        return self._permissions.get(permission_id) if permission_id else None

    async def find_permissions_by_names(self, names: Iterable[str]) -> list[PermissionRecord]:
        ids = {self._permission_names[name] for name in set(names) if name in self._permission_names}
        return [self._permissions[item] for item in ids]

    async def get_permissions(self, permission_ids: Iterable[str]) -> list[PermissionRecord]:
        return [self._permissions[item] for item in set(permission_ids) if item in self._permissions]

    async def list_permissions(self) -> list[PermissionRecord]:
        return sorted(self._permissions.values(), key=lambda item: item.name)

    async def update_permission_description(
        self,
        permission_id: str,
        description: str,
    ) -> PermissionRecord | None:
        record = self._permissions.get(permission_id)
        if record is None:
            return None
        updated = replace(record, description=description)
        self._permissions[permission_id] = updated
        return updated

    async def delete_permission(self, permission_id: str) -> bool:
        record = self._permissions.get(permission_id)
        if record is None:
            return False
        holders = sorted(role.name for role in self._roles.values() if permission_id in role.permission_ids)
        if holders:
            raise PermissionInUseError(f"权限 {record.name} 仍被角色引用: {', '.join(holders)}")
        del self._permissions[permission_id]
        self._permission_names.pop(record.name, None)
        return True

    async def create_role(
        self,
        name: str,
        description: str = "",
        *,
        is_system: bool = False,
        permission_ids: Iterable[str] = (),
        child_role_ids: Iterable[str] = (),
    ) -> RoleRecord:
        if name in self._role_names:
            raise AlreadyExistsError(f"角色已存在: {name}")
        record = RoleRecord(
            id=self._new_id(),
            name=name,
            description=description,
            is_system=is_system,
            permission_ids=frozenset(permission_ids),
            child_role_ids=frozenset(child_role_ids),
        )
        self._roles[record.id] = record
        self._role_names[name] = record.id
        return record

    async def get_role(self, role_id: str) -> RoleRecord | None:
        return self._roles.get(role_id)

    async def get_role_by_name(self, name: str) -> RoleRecord | None:
        role_id = self._role_names.get(name)
        return self._roles.get(role_id) if role_id else None

    async def find_roles_by_names(self, names: Iterable[str]) -> list[RoleRecord]:
        ids = {self._role_names[name] for name in set(names) if name in self._role_names}
        return [self._roles[item] for item in ids]

    async def get_roles(self, role_ids: Iterable[str]) -> list[RoleRecord]:
        return [self._roles[item] for item in set(role_ids) if item in self._roles]

    async def list_roles(self) -> list[RoleRecord]:
        return sorted(self._roles.values(), key=lambda item: item.name)

    async def save_role(self, role: RoleRecord) -> RoleRecord:
        current = self._roles.get(role.id)
        if current is None:
            raise RoleNotFoundError(f"角色不存在: {role.id}")
        if current.name != role.name:
            self._role_names.pop(current.name, None)
            self._role_names[role.name] = role.id
        self._roles[role.id] = role
        return role

    async def delete_role(self, role_id: str) -> bool:
        record = self._roles.pop(role_id, None)
        if record is None:
            return False
        self._role_names.pop(record.name, None)
        for other in list(self._roles.values()):
            if role_id in other.child_role_ids:
                self._roles[other.id] = replace(other, child_role_ids=other.child_role_ids - {role_id})
        for user in list(self._users.values()):
            if role_id in user.role_ids:
                self._users[user.id] = replace(user, role_ids=user.role_ids - {role_id})
        return True

    async def create_user(self, username: str, role_ids: Iterable[str] = ()) -> UserRecord:
        if username in self._usernames:
            raise AlreadyExistsError(f"用户已存在: {username}")
        record = UserRecord(id=self._new_id(), username=username, role_ids=frozenset(role_ids))
        self._users[record.id] = record
        self._usernames[username] = record.id
        return record

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> UserRecord | None:
        user_id = self._usernames.get(username)
        return self._users.get(user_id) if user_id else None

    async def list_users(self) -> list[UserRecord]:
        return sorted(self._users.values(), key=lambda item: item.username)

    async def save_user(self, user: UserRecord) -> UserRecord:
        if user.id not in self._users:
            raise UserNotFoundError(f"用户不存在: {user.id}")
        self._users[user.id] = user
        return user

    async def users_with_role(self, role_id: str) -> list[UserRecord]:
        return [user for user in self._users.values() if role_id in user.role_ids]
