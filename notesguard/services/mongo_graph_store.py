"""基于 Beanie/MongoDB 的角色图存储。"""

from __future__ import annotations

from typing import Iterable

from beanie import PydanticObjectId
from beanie.operators import In
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from notesguard.models import PermissionDocument, RoleDocument, UserDocument
from notesguard.models.role import utc_now
from notesguard.services.errors import AlreadyExistsError, PermissionInUseError, RoleNotFoundError, UserNotFoundError
from notesguard.services.role_graph_store import PermissionRecord, RoleGraphStore, RoleRecord, UserRecord


def _object_id(value: str) -> PydanticObjectId | None:
    """将字符串 id 转为 ObjectId，非法格式视为未命中。"""

    if not ObjectId.is_valid(str(value)):
        return None
    return PydanticObjectId(str(value))


def _object_ids(values: Iterable[str]) -> list[PydanticObjectId]:
    parsed = (_object_id(item) for item in set(values))
    return [item for item in parsed if item is not None]


def _to_permission(doc: PermissionDocument) -> PermissionRecord:
    return PermissionRecord(
        id=str(doc.id),
        name=doc.name,
        resource=doc.resource,
        action=doc.action,
        description=doc.description,
    )


def _to_role(doc: RoleDocument) -> RoleRecord:
    return RoleRecord(
        id=str(doc.id),
        name=doc.name,
        description=doc.description,
        is_system=doc.is_system,
        permission_ids=frozenset(str(item) for item in doc.permission_ids),
        child_role_ids=frozenset(str(item) for item in doc.child_role_ids),
    )


def _to_user(doc: UserDocument) -> UserRecord:
    return UserRecord(
        id=str(doc.id),
        username=doc.username,
        role_ids=frozenset(str(item) for item in doc.role_ids),
    )


class MongoRoleGraphStore(RoleGraphStore):
    """MongoDB 实现，要求调用前已执行 ``init_db``。"""

    async def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: str = "",
    ) -> PermissionRecord:
        if await PermissionDocument.find_one(PermissionDocument.name == name):
            raise AlreadyExistsError(f"权限已存在: {name}")
        doc = PermissionDocument(name=name, resource=resource, action=action, description=description)
        try:
            await doc.insert()
        except DuplicateKeyError as exc:
            raise AlreadyExistsError(f"权限已存在: {name}") from exc
        return _to_permission(doc)

    async def get_permission(self, permission_id: str) -> PermissionRecord | None:
        object_id = _object_id(permission_id)
        if object_id is None:
            return None
        doc = await PermissionDocument.get(object_id)
        return _to_permission(doc) if doc else None

    async def get_permission_by_name(self, name: str) -> PermissionRecord | None:
        doc = await PermissionDocument.find_one(PermissionDocument.name == name)
        return _to_permission(doc) if doc else None

    async def find_permissions_by_names(self, names: Iterable[str]) -> list[PermissionRecord]:
        wanted = list(set(names))
        if not wanted:
            return []
        docs = await PermissionDocument.find(In(PermissionDocument.name, wanted)).to_list()
        return [_to_permission(doc) for doc in docs]

    async def get_permissions(self, permission_ids: Iterable[str]) -> list[PermissionRecord]:
        object_ids = _object_ids(permission_ids)
        if not object_ids:
            return []
        docs = await PermissionDocument.find(In(PermissionDocument.id, object_ids)).to_list()
        return [_to_permission(doc) for doc in docs]

    async def list_permissions(self) -> list[PermissionRecord]:
        docs = await PermissionDocument.find_all().sort("name").to_list()
        return [_to_permission(doc) for doc in docs]

    async def update_permission_description(
        self,
        permission_id: str,
        description: str,
    ) -> PermissionRecord | None:
        object_id = _object_id(permission_id)
        doc = await PermissionDocument.get(object_id) if object_id else None
        if doc is None:
            return None
        doc.description = description
        await doc.save()
        return _to_permission(doc)

    async def delete_permission(self, permission_id: str) -> bool:
        object_id = _object_id(permission_id)
        doc = await PermissionDocument.get(object_id) if object_id else None
        if doc is None:
            return False
        holders = await RoleDocument.find({"permission_ids": object_id}).to_list()
        if holders:
            names = ", ".join(sorted(item.name for item in holders))
            raise PermissionInUseError(f"权限 {doc.name} 仍被角色引用: {names}")
        await doc.delete()
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
        if await RoleDocument.find_one(RoleDocument.name == name):
            raise AlreadyExistsError(f"角色已存在: {name}")
        doc = RoleDocument(
            name=name,
            description=description,
            is_system=is_system,
            permission_ids=_object_ids(permission_ids),
            child_role_ids=_object_ids(child_role_ids),
        )
        try:
            await doc.insert()
        except DuplicateKeyError as exc:
            raise AlreadyExistsError(f"角色已存在: {name}") from exc
        return _to_role(doc)

    async def get_role(self, role_id: str) -> RoleRecord | None:
        object_id = _object_id(role_id)
        if object_id is None:
            return None
        doc = await RoleDocument.get(object_id)
        return _to_role(doc) if doc else None

    async def get_role_by_name(self, name: str) -> RoleRecord | None:
        doc = await RoleDocument.find_one(RoleDocument.name == name)
        return _to_role(doc) if doc else None

    async def find_roles_by_names(self, names: Iterable[str]) -> list[RoleRecord]:
        wanted = list(set(names))
        if not wanted:
            return []
        docs = await RoleDocument.find(In(RoleDocument.name, wanted)).to_list()
        return [_to_role(doc) for doc in docs]

    async def get_roles(self, role_ids: Iterable[str]) -> list[RoleRecord]:
        object_ids = _object_ids(role_ids)
        if not object_ids:
            return []
        docs = await RoleDocument.find(In(RoleDocument.id, object_ids)).to_list()
        return [_to_role(doc) for doc in docs]

    async def list_roles(self) -> list[RoleRecord]:
        docs = await RoleDocument.find_all().sort("name").to_list()
        return [_to_role(doc) for doc in docs]

    async def save_role(self, role: RoleRecord) -> RoleRecord:
        object_id = _object_id(role.id)
        doc = await RoleDocument.get(object_id) if object_id else None
        if doc is None:
            raise RoleNotFoundError(f"角色不存在: {role.id}")
        doc.name = role.name
        doc.description = role.description
        doc.is_system = role.is_system
        doc.permission_ids = _object_ids(role.permission_ids)
        doc.child_role_ids = _object_ids(role.child_role_ids)
        doc.updated_at = utc_now()
        await doc.save()
        return _to_role(doc)

    async def delete_role(self, role_id: str) -> bool:
        object_id = _object_id(role_id)
        doc = await RoleDocument.get(object_id) if object_id else None
        if doc is None:
            return False
        await RoleDocument.find({"child_role_ids": object_id}).update({"$pull": {"child_role_ids": object_id}})
        await UserDocument.find({"role_ids": object_id}).update({"$pull": {"role_ids": object_id}})
        await doc.delete()
        return True

    async def create_user(self, username: str, role_ids: Iterable[str] = ()) -> UserRecord:
        if await UserDocument.find_one(UserDocument.username == username):
            raise AlreadyExistsError(f"用户已存在: {username}")
        doc = UserDocument(username=username, role_ids=_object_ids(role_ids))
        try:
            await doc.insert()
        except DuplicateKeyError as exc:
            raise AlreadyExistsError(f"用户已存在: {username}") from exc
        return _to_user(doc)

    async def get_user(self, user_id: str) -> UserRecord | None:
        object_id = _object_id(user_id)
        if object_id is None:
            return None
        doc = await UserDocument.get(object_id)
        return _to_user(doc) if doc else None

    async def get_user_by_username(self, username: str) -> UserRecord | None:
        doc = await UserDocument.find_one(UserDocument.username == username)
        return _to_user(doc) if doc else None

    async def list_users(self) -> list[UserRecord]:
        docs = await UserDocument.find_all().sort("username").to_list()
        return [_to_user(doc) for doc in docs]

    async def save_user(self, user: UserRecord) -> UserRecord:
        object_id = _object_id(user.id)
        doc = await UserDocument.get(object_id) if object_id else None
        if doc is None:
            raise UserNotFoundError(f"用户不存在: {user.id}")
        doc.role_ids = _object_ids(user.role_ids)
        doc.updated_at = utc_now()
        await doc.save()
        return _to_user(doc)

    async def users_with_role(self, role_id: str) -> list[UserRecord]:
        object_id = _object_id(role_id)
        if object_id is None:
            return []
        docs = await UserDocument.find({"role_ids": object_id}).to_list()
        return [_to_user(doc) for doc in docs]
