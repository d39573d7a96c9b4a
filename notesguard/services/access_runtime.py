"""访问控制组件装配（进程级单例）。"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from notesguard.config import AUDIT_BACKEND, AUDIT_QUEUE_MAXSIZE, AUDIT_STREAM, RBAC_STORE_BACKEND
from notesguard.services.access_service import AccessDecisionPoint
from notesguard.services.audit_service import (
    AuditRepository,
    AuditSink,
    AuditWriter,
    InMemoryAuditRepository,
    MongoAuditRepository,
    repository_writer,
    stream_writer,
)
from notesguard.services.mongo_graph_store import MongoRoleGraphStore
from notesguard.services.permission_cache import PermissionCache
from notesguard.services.permission_resolver import PermissionResolver
from notesguard.services.role_graph_store import InMemoryRoleGraphStore, RoleGraphStore
from notesguard.services.role_service import RoleGraphService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AccessControl:
    """一组共享同一存储与缓存的访问控制组件。"""

    store: RoleGraphStore
    resolver: PermissionResolver
    cache: PermissionCache
    roles: RoleGraphService
    audit_repository: AuditRepository
    audit_sink: AuditSink
    decisions: AccessDecisionPoint


def build_access_control(
    store: RoleGraphStore,
    audit_repository: AuditRepository,
    *,
    audit_writer: AuditWriter | None = None,
    audit_queue_maxsize: int = AUDIT_QUEUE_MAXSIZE,
) -> AccessControl:
    """装配组件。未指定 writer 时审计直接写入 audit_repository。"""

    resolver = PermissionResolver(store)
    cache = PermissionCache(resolver)
    sink = AuditSink(audit_writer or repository_writer(audit_repository), maxsize=audit_queue_maxsize)
    return AccessControl(
        store=store,
        resolver=resolver,
        cache=cache,
        roles=RoleGraphService(store, cache),
        audit_repository=audit_repository,
        audit_sink=sink,
        decisions=AccessDecisionPoint(cache, sink),
    )


def build_from_config() -> AccessControl:
    """按 RBAC_STORE_BACKEND / AUDIT_BACKEND 装配。"""

    store: RoleGraphStore = MongoRoleGraphStore() if RBAC_STORE_BACKEND == "mongo" else InMemoryRoleGraphStore()
    if AUDIT_BACKEND == "memory":
        return build_access_control(store, InMemoryAuditRepository())
    if AUDIT_BACKEND == "stream":
        # 队列 worker 负责落库，查询仍读 MongoDB
        return build_access_control(store, MongoAuditRepository(), audit_writer=stream_writer(AUDIT_STREAM))
    return build_access_control(store, MongoAuditRepository())


def needs_database() -> bool:
    return RBAC_STORE_BACKEND == "mongo" or AUDIT_BACKEND in {"mongo", "stream"}


_access_control: AccessControl | None = None


def set_access_control(access_control: AccessControl | None) -> None:
    global _access_control
    _access_control = access_control


def get_access_control() -> AccessControl:
    """获取当前进程的访问控制组件，未初始化时报错。"""

    if _access_control is None:
        raise RuntimeError("访问控制组件尚未初始化")
    return _access_control


async def close_access_control() -> None:
    """停止审计写入协程（会先处理完积压记录）。"""

    global _access_control
    if _access_control is not None:
        await _access_control.audit_sink.stop()
        logger.info(
            "审计写入协程已停止 submitted=%d written=%d failed=%d dropped=%d",
            _access_control.audit_sink.submitted,
            _access_control.audit_sink.written,
            _access_control.audit_sink.failed,
            _access_control.audit_sink.dropped,
        )
    _access_control = None
