"""HTTP 侧鉴权依赖：Session 身份、访问判定、领域异常映射。"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from notesguard.models.permission_audit import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH
from notesguard.services import access_runtime
from notesguard.services.access_runtime import AccessControl
from notesguard.services.audit_service import AuditContext
from notesguard.services.errors import (
    AccessControlError,
    AlreadyExistsError,
    CircularDependencyError,
    NotFoundError,
    PermissionInUseError,
    RoleImmutableError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "username"

ERROR_STATUS: tuple[tuple[type[AccessControlError], int], ...] = (
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (CircularDependencyError, 409),
    (PermissionInUseError, 409),
    (RoleImmutableError, 403),
)


def status_for(exc: AccessControlError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def access_control_error_handler(_request: Request, exc: AccessControlError) -> JSONResponse:
    """把领域异常转换为 JSON 错误响应。"""

    status_code = status_for(exc)
    logger.info("请求失败 status=%d error=%s: %s", status_code, type(exc).__name__, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def get_access_control() -> AccessControl:
    return access_runtime.get_access_control()


def get_current_username(request: Request) -> str:
    """从 Session 读取登录用户名，未登录返回 401。"""

    username = str(request.session.get(SESSION_USER_KEY) or "").strip()
    if not username:
        raise HTTPException(status_code=401, detail="未登录")
    return username


def get_request_ip(request: Request) -> str | None:
    """客户端 IP：优先代理头，截断到审计字段上限（代理头由客户端控制）。"""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0]
    else:
        candidate = request.headers.get("x-real-ip") or (request.client.host if request.client else "")
    return candidate.strip()[:IP_ADDRESS_MAX_LENGTH] or None


def build_audit_context(request: Request) -> AuditContext:
    return AuditContext(
        ip_address=get_request_ip(request),
        user_agent=(request.headers.get("user-agent") or "")[:USER_AGENT_MAX_LENGTH] or None,
        details=f"{request.method} {request.url.path}",
    )


async def _decide(
    decide: Callable[[], Awaitable[bool]],
    username: str,
    label: str,
) -> None:
    try:
        granted = await decide()
    except UserNotFoundError as exc:
        # Session 中的用户已被删除
        raise HTTPException(status_code=401, detail="用户不存在") from exc
    if not granted:
        raise HTTPException(status_code=403, detail=f"缺少权限 {label}")
    logger.debug("请求放行 user=%s permission=%s", username, label)


def require_permission(resource: str, action: str) -> Callable[..., Awaitable[str]]:
    """路由依赖：要求当前用户拥有 resource:action，返回用户名。"""

    async def dependency(
        request: Request,
        username: str = Depends(get_current_username),
        access_control: AccessControl = Depends(get_access_control),
    ) -> str:
        await _decide(
            lambda: access_control.decisions.check(
                username,
                resource,
                action,
                context=build_audit_context(request),
            ),
            username,
            f"{resource}:{action}",
        )
        return username

    return dependency


def require_target_permission(target_type: str, action: str, id_param: str) -> Callable[..., Awaitable[str]]:
    """路由依赖：按路径参数 id_param 指定的目标对象判定权限。"""

    async def dependency(
        request: Request,
        username: str = Depends(get_current_username),
        access_control: AccessControl = Depends(get_access_control),
    ) -> str:
        target_id: Any = request.path_params.get(id_param)
        await _decide(
            lambda: access_control.decisions.check_target(
                username,
                target_id,
                target_type,
                action,
                context=build_audit_context(request),
            ),
            username,
            f"{target_type.upper()}:{action}",
        )
        return username

    return dependency
