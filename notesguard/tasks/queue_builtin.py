"""内置队列消费者注册。"""

from __future__ import annotations

import logging
from typing import Any

from notesguard.config import AUDIT_GROUP, AUDIT_STREAM
from notesguard.services.audit_service import AuditEntry, AuditRepository, MongoAuditRepository
from notesguard.services.task_registry import get_queue_consumer, register_queue_consumer

logger = logging.getLogger(__name__)

PERMISSION_AUDIT_CONSUMER = "permission_audit_consumer"

_repository: AuditRepository | None = None


def _audit_repository() -> AuditRepository:
    global _repository
    if _repository is None:
        _repository = MongoAuditRepository()
    return _repository


def set_audit_repository(repository: AuditRepository | None) -> None:
    """替换审计落库仓储（主要用于测试）。"""

    global _repository
    _repository = repository


async def _handle_permission_audit(payload: dict[str, Any], meta: dict[str, Any]) -> None:
    """把 Stream 中的权限审计记录写入仓储。载荷不合法时抛错，由 worker 直接转入死信。"""

    entry = AuditEntry.model_validate(payload)
    record = await _audit_repository().append(entry)
    logger.debug(
        "审计记录已落库 id=%s user=%s permission=%s message_id=%s",
        record.id,
        entry.username,
        entry.permission,
        meta.get("message_id"),
    )


def register_tasks() -> None:
    """注册内置队列消费者（幂等）。"""

    if get_queue_consumer(PERMISSION_AUDIT_CONSUMER) is not None:
        return
    register_queue_consumer(
        key=PERMISSION_AUDIT_CONSUMER,
        name="权限审计落库",
        stream=AUDIT_STREAM,
        group=AUDIT_GROUP,
        handler=_handle_permission_audit,
    )


register_tasks()
