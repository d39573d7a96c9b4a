"""当前登录用户的权限视图。"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from notesguard.apps.admin.dependencies import build_audit_context, get_access_control, get_current_username
from notesguard.services.access_runtime import AccessControl
from notesguard.services.errors import UserNotFoundError

router = APIRouter(prefix="/me")


class CheckPayload(BaseModel):
    resource: str = Field(min_length=1)
    action: str = Field(min_length=1)
    resource_id: str | None = None


@router.get("/permissions")
async def my_permissions(
    username: str = Depends(get_current_username),
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    try:
        entry = await access_control.cache.get_entry(username)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=401, detail="用户不存在") from exc
    return {"username": username, "permissions": entry.permission_names}


@router.post("/check")
async def check_my_permission(
    payload: CheckPayload,
    request: Request,
    username: str = Depends(get_current_username),
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    """判定当前用户能否执行某个操作（同样记入审计）。"""

    try:
        granted = await access_control.decisions.check(
            username,
            payload.resource,
            payload.action,
            payload.resource_id,
            context=build_audit_context(request),
        )
    except UserNotFoundError as exc:
        raise HTTPException(status_code=401, detail="用户不存在") from exc
    return {"resource": payload.resource, "action": payload.action, "granted": granted}
