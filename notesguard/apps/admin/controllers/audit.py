"""权限审计查询接口。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from notesguard.apps.admin.dependencies import get_access_control, require_permission
from notesguard.services.access_runtime import AccessControl
from notesguard.services.audit_service import PermissionAuditRecord

router = APIRouter(prefix="/admin/audit", dependencies=[Depends(require_permission("AUDIT", "READ"))])

DEFAULT_LIMIT = 100


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(records: list[PermissionAuditRecord]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in records]


@router.get("/users/{username}")
async def list_user_audit(
    username: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    access_control: AccessControl = Depends(get_access_control),
) -> list[dict[str, Any]]:
    return _dump(await access_control.audit_repository.list_by_username(username, limit=limit))


@router.get("/users/{username}/recent")
async def list_user_recent_audit(
    username: str,
    hours: int = Query(24, ge=1),
    access_control: AccessControl = Depends(get_access_control),
) -> dict[str, Any]:
    """最近 hours 小时内该用户的判定记录与拒绝次数。"""

    user = await access_control.roles.require_user(username)
    repository = access_control.audit_repository
    return {
        "username": username,
        "hours": hours,
        "failures": await repository.count_recent_failures(user.id, hours),
        "records": _dump(await repository.list_recent_by_user(user.id, hours)),
    }


@router.get("/denied")
async def list_denied_audit(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    access_control: AccessControl = Depends(get_access_control),
) -> list[dict[str, Any]]:
    return _dump(await access_control.audit_repository.list_denied(limit=limit))


@router.get("/range")
async def list_audit_between(
    start: datetime,
    end: datetime,
    access_control: AccessControl = Depends(get_access_control),
) -> list[dict[str, Any]]:
    start, end = _as_utc(start), _as_utc(end)
    if start > end:
        raise HTTPException(status_code=400, detail="start 不能晚于 end")
    return _dump(await access_control.audit_repository.list_between(start, end))


@router.get("/resources/{resource}/{action}")
async def list_resource_audit(
    resource: str,
    action: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=1000),
    access_control: AccessControl = Depends(get_access_control),
) -> list[dict[str, Any]]:
    return _dump(await access_control.audit_repository.list_by_resource_action(resource, action, limit=limit))
