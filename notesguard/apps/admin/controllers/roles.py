"""角色、权限与用户角色分配管理接口。"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from notesguard.apps.admin.dependencies import get_access_control, require_permission
from notesguard.services.access_runtime import AccessControl
from notesguard.services.role_graph_store import PermissionRecord, RoleRecord

router = APIRouter(prefix="/admin", dependencies=[Depends(require_permission("ROLE", "MANAGE"))])


class PermissionCreatePayload(BaseModel):
    resource: str = Field(min_length=1)
    action: str = Field(min_length=1)
    description: str = ""
    name: str | None = None


class PermissionUpdatePayload(BaseModel):
    description: str


class RoleCreatePayload(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    permissions: list[str] = Field(default_factory=list)
    inherits: list[str] = Field(default_factory=list)


class RoleUpdatePayload(BaseModel):
    """字段为 None 表示不修改。"""

    description: str | None = None
    permissions: list[str] | None = None
    inherits: list[str] | None = None


def serialize_permission(permission: PermissionRecord) -> dict[str, Any]:
    return {
        "name": permission.name,
        "resource": permission.resource,
        "action": permission.action,
        "description": permission.description,
    }


async def serialize_role(access_control: AccessControl, role: RoleRecord) -> dict[str, Any]:
    store = access_control.store
    permissions = await store.get_permissions(role.permission_ids)
    children = await store.get_roles(role.child_role_ids)
    effective = await access_control.resolver.effective_permissions_for_role(role)
    return {
        "name": role.name,
        "description": role.description,
        "is_system": role.is_system,
        "permissions": sorted(item.name for item in permissions),
        "inherits": sorted(item.name for item in children),
        "effective_permissions": sorted(item.name for item in effective),
    }


# ---- 权限 ----


@router.get("/permissions")
async def list_permissions(access_control: AccessControl = Depends(get_access_control)) -> list[dict[str, Any]]:
    permissions = await access_control.store.list_permissions()
    return [serialize_permission(item) for item in sorted(permissions, key=lambda item: item.name)]


@router.post("/permissions", status_code=201)
async def create_permission(
    payload: PermissionCreatePayload,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    permission = await access_control.roles.create_permission(
        payload.resource,
        payload.action,
        payload.description,
        name=payload.name,
    )
    return serialize_permission(permission)


@router.patch("/permissions/{name}")
async def update_permission(
    name: str,
    payload: PermissionUpdatePayload,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    permission = await access_control.roles.update_permission_description(name, payload.description)
    return serialize_permission(permission)


@router.delete("/permissions/{name}", status_code=204)
async def delete_permission(name: str, access_control: AccessControl = Depends(get_access_control)) -> Response:
    await access_control.roles.delete_permission(name)
    return Response(status_code=204)


# ---- 角色 ----


@router.get("/roles")
async def list_roles(access_control: AccessControl = Depends(get_access_control)) -> list[dict[str, Any]]:
    roles = sorted(await access_control.store.list_roles(), key=lambda item: item.name)
    return [await serialize_role(access_control, role) for role in roles]


@router.post("/roles", status_code=201)
async def create_role(
    payload: RoleCreatePayload,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.create_role(
        payload.name,
        payload.description,
        permissions=payload.permissions,
        inherits=payload.inherits,
    )
    return await serialize_role(access_control, role)


@router.get("/roles/{name}")
async def get_role(name: str, access_control: AccessControl = Depends(get_access_control)) -> dict[str, Any]:
    role = await access_control.roles.require_role(name)
    return await serialize_role(access_control, role)


@router.put("/roles/{name}")
async def update_role(
    name: str,
    payload: RoleUpdatePayload,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.update_role(
        name,
        description=payload.description,
        permissions=payload.permissions,
        inherits=payload.inherits,
    )
    return await serialize_role(access_control, role)


@router.delete("/roles/{name}", status_code=204)
async def delete_role(name: str, access_control: AccessControl = Depends(get_access_control)) -> Response:
    await access_control.roles.delete_role(name)
    return Response(status_code=204)


@router.post("/roles/{name}/permissions/{permission}")
async def add_role_permission(
    name: str,
    permission: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.add_permission_to_role(name, permission)
    return await serialize_role(access_control, role)


@router.delete("/roles/{name}/permissions/{permission}")
async def remove_role_permission(
    name: str,
    permission: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.remove_permission_from_role(name, permission)
    return await serialize_role(access_control, role)


@router.post("/roles/{name}/inherits/{child}")
async def add_child_role(
    name: str,
    child: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.add_child_role(name, child)
    return await serialize_role(access_control, role)


@router.delete("/roles/{name}/inherits/{child}")
async def remove_child_role(
    name: str,
    child: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    role = await access_control.roles.remove_child_role(name, child)
    return await serialize_role(access_control, role)


@router.get("/roles/{name}/users")
async def list_role_users(name: str, access_control: AccessControl = Depends(get_access_control)) -> dict[str, Any]:
    return {"role": name, "users": await access_control.roles.role_holders(name)}


# ---- 用户角色 ----


async def _user_view(access_control: AccessControl, username: str) -> dict[str, Any]:
    return {
        "username": username,
        "roles": await access_control.roles.user_role_names(username),
        "effective_permissions": sorted(
            item.name for item in await access_control.resolver.effective_permissions_for_user(username)
        ),
    }


@router.get("/users/{username}/roles")
async def get_user_roles(username: str, access_control: AccessControl = Depends(get_access_control)) -> dict[str, Any]:
    return await _user_view(access_control, username)


@router.post("/users/{username}/roles/{role}")
async def assign_user_role(
    username: str,
    role: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    await access_control.roles.assign_role_to_user(username, role)
    return await _user_view(access_control, username)


@router.delete("/users/{username}/roles/{role}")
async def remove_user_role(
    username: str,
    role: str,
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    await access_control.roles.remove_role_from_user(username, role)
    return await _user_view(access_control, username)
