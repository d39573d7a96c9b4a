"""访问判定：(用户, 资源, 动作) 是否被允许，并为每次判定提交审计。"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from notesguard.services.audit_service import AuditContext, AuditEntry, AuditSink
from notesguard.services.permission_cache import PermissionCache
from notesguard.services.role_graph_store import PermissionRecord

logger = logging.getLogger(__name__)

UNKNOWN_RESOURCE = "UNKNOWN"


def is_granted(permissions: Iterable[PermissionRecord], resource: str, action: str) -> bool:
    """任一权限在资源、动作两个槽位上都匹配（支持 ``*``）即放行。"""

    return any(permission.matches(resource, action) for permission in permissions)


def resource_of(target: Any) -> str:
    """领域对象的资源名取其类型名的大写形式。"""

    if target is None:
        return UNKNOWN_RESOURCE
    return type(target).__name__.upper()


class AccessDecisionPoint:
    """访问判定入口。

    - 权限集合来自 PermissionCache（未命中时回源解析）；
    - 无论放行与否都提交且只提交一条审计，提交失败不影响返回值；
    - 用户名无法解析时抛 UserNotFoundError，且不产生审计。
    """

    def __init__(self, cache: PermissionCache, audit_sink: AuditSink) -> None:
        self.cache = cache
        self.audit_sink = audit_sink

    async def check(
        self,
        username: str,
        resource: str,
        action: str,
        resource_id: Any = None,
        *,
        context: AuditContext | None = None,
    ) -> bool:
        logger.debug("权限检查 user=%s resource=%s action=%s", username, resource, action)

        entry = await self.cache.get_entry(username)
        granted = is_granted(entry.permissions, resource, action)
        resource_id = str(resource_id) if resource_id is not None else None
        self._submit_audit(entry.user_id, username, resource, action, resource_id, granted, context)

        if granted:
            logger.debug("权限通过 user=%s resource=%s:%s action=%s", username, resource, resource_id or "-", action)
        else:
            logger.warning("权限拒绝 user=%s resource=%s:%s action=%s", username, resource, resource_id or "-", action)
        return granted

    def _submit_audit(
        self,
        user_id: str,
        username: str,
        resource: str,
        action: str,
        resource_id: str | None,
        granted: bool,
        context: AuditContext | None,
    ) -> None:
        """构造并提交审计条目；任何异常只记日志，不影响判定结果。"""

        try:
            self.audit_sink.submit(
                AuditEntry(
                    user_id=user_id,
                    username=username,
                    resource=resource,
                    resource_id=resource_id,
                    action=action,
                    granted=granted,
                    ip_address=context.ip_address if context else None,
                    user_agent=context.user_agent if context else None,
                    details=context.details if context else None,
                )
            )
        except Exception:
            logger.exception("审计提交失败 user=%s resource=%s action=%s", username, resource, action)

    async def check_object(
        self,
        username: str | None,
        target: Any,
        permission: Any,
        *,
        context: AuditContext | None = None,
    ) -> bool:
        """按领域对象判定，资源取对象类型名。"""

        if not username or permission is None:
            return False
        return await self.check(username, resource_of(target), str(permission), context=context)

    async def check_target(
        self,
        username: str | None,
        target_id: Any,
        target_type: str,
        permission: Any,
        *,
        context: AuditContext | None = None,
    ) -> bool:
        """按 (目标 id, 目标类型, 动作) 判定。"""

        if not username or permission is None:
            return False
        return await self.check(username, target_type.upper(), str(permission), target_id, context=context)
