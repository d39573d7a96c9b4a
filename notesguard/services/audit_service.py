"""权限审计：非阻塞写入与只读查询。

判定路径只调用 ``AuditSink.submit``（同步、不等待），记录由独立的
写入协程落库。写入失败只记日志，不重试、不向判定方抛出。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import itertools
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationInfo, field_validator

from notesguard.models import PermissionAuditDocument
from notesguard.models.permission_audit import AUDIT_FIELD_LIMITS
from notesguard.services.queue_service import enqueue_task
from notesguard.services.role_graph_store import permission_name

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AuditContext:
    """请求侧附加信息。"""

    ip_address: str | None = None
    user_agent: str | None = None
    details: str | None = None


class AuditEntry(BaseModel):
    """待写入的审计条目；timestamp 为空时在落库时补齐。超长的文本字段截断到存储上限。"""

    user_id: str | None = None
    username: str
    resource: str
    resource_id: str | None = None
    action: str
    granted: bool
    ip_address: str | None = None
    user_agent: str | None = None
    details: str | None = None
    timestamp: datetime | None = None

    @field_validator("username", "resource", "action", "ip_address", "user_agent")
    @classmethod
    def _clip_to_stored_length(cls, value: str | None, info: ValidationInfo) -> str | None:
        if value is None:
            return None
        return value[: AUDIT_FIELD_LIMITS[info.field_name]]

    @property
    def permission(self) -> str:
        return permission_name(self.resource, self.action)

    def stored_fields(self) -> dict[str, Any]:
        fields = self.model_dump(exclude={"timestamp"})
        fields["permission"] = self.permission
        fields["timestamp"] = self.timestamp or utc_now()
        return fields


class PermissionAuditRecord(BaseModel):
    """已落库的审计记录。"""

    id: str
    user_id: str | None = None
    username: str
    permission: str
    resource: str
    resource_id: str | None = None
    action: str
    granted: bool
    ip_address: str | None = None
    user_agent: str | None = None
    details: str | None = None
    timestamp: datetime


class AuditRepository(ABC):
    """只追加的审计日志。查询结果均按时间倒序。"""

    @abstractmethod
    async def append(self, entry: AuditEntry) -> PermissionAuditRecord: ...

    @abstractmethod
    async def list_by_username(self, username: str, *, limit: int | None = None) -> list[PermissionAuditRecord]: ...

    @abstractmethod
    async def list_by_resource_action(
        self,
        resource: str,
        action: str,
        *,
        limit: int | None = None,
    ) -> list[PermissionAuditRecord]: ...

    @abstractmethod
    async def list_between(self, start: datetime, end: datetime) -> list[PermissionAuditRecord]: ...

    @abstractmethod
    async def list_denied(self, *, limit: int | None = None) -> list[PermissionAuditRecord]: ...

    @abstractmethod
    async def list_recent_by_user(self, user_id: str, hours: int) -> list[PermissionAuditRecord]: ...

    @abstractmethod
    async def count_recent_failures(self, user_id: str, hours: int) -> int: ...


def _since(hours: int) -> datetime:
    return utc_now() - timedelta(hours=max(hours, 0))


class InMemoryAuditRepository(AuditRepository):
    """内存实现，id 为自增序号。"""

    def __init__(self) -> None:
        self._records: list[PermissionAuditRecord] = []
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[PermissionAuditRecord]:
        return list(self._records)

    def _select(self, predicate: Callable[[PermissionAuditRecord], bool], limit: int | None = None) -> list[PermissionAuditRecord]:
        matched = [item for item in self._records if predicate(item)]
        matched.sort(key=lambda item: (item.timestamp, int(item.id)), reverse=True)
        return matched[:limit] if limit else matched

    async def append(self, entry: AuditEntry) -> PermissionAuditRecord:
        record = PermissionAuditRecord(id=str(next(self._sequence)), **entry.stored_fields())
        self._records.append(record)
        return record

    async def list_by_username(self, username: str, *, limit: int | None = None) -> list[PermissionAuditRecord]:
        return self._select(lambda item: item.username == username, limit)

    async def list_by_resource_action(
        self,
        resource: str,
        action: str,
        *,
        limit: int | None = None,
    ) -> list[PermissionAuditRecord]:
        return self._select(lambda item: item.resource == resource and item.action == action, limit)

    async def list_between(self, start: datetime, end: datetime) -> list[PermissionAuditRecord]:
        return self._select(lambda item: start <= item.timestamp <= end)

    async def list_denied(self, *, limit: int | None = None) -> list[PermissionAuditRecord]:
        return self._select(lambda item: not item.granted, limit)

    async def list_recent_by_user(self, user_id: str, hours: int) -> list[PermissionAuditRecord]:
        since = _since(hours)
        return self._select(lambda item: item.user_id == user_id and item.timestamp >= since)

    async def count_recent_failures(self, user_id: str, hours: int) -> int:
        since = _since(hours)
        return len(self._select(lambda item: item.user_id == user_id and not item.granted and item.timestamp >= since))


def _to_record(doc: PermissionAuditDocument) -> PermissionAuditRecord:
    return PermissionAuditRecord(id=str(doc.id), **doc.model_dump(exclude={"id", "revision_id"}))


class MongoAuditRepository(AuditRepository):
    """MongoDB 实现。"""

    async def append(self, entry: AuditEntry) -> PermissionAuditRecord:
        doc = PermissionAuditDocument(**entry.stored_fields())
        await doc.insert()
        return _to_record(doc)

    async def _list(self, query: Any, limit: int | None = None) -> list[PermissionAuditRecord]:
        cursor = PermissionAuditDocument.find(query).sort("-timestamp")
        if limit:
            cursor = cursor.limit(limit)
        return [_to_record(doc) for doc in await cursor.to_list()]

    async def list_by_username(self, username: str, *, limit: int | None = None) -> list[PermissionAuditRecord]:
        return await self._list({"username": username}, limit)

    async def list_by_resource_action(
        self,
        resource: str,
        action: str,
        *,
        limit: int | None = None,
    ) -> list[PermissionAuditRecord]:
        return await self._list({"resource": resource, "action": action}, limit)

    async def list_between(self, start: datetime, end: datetime) -> list[PermissionAuditRecord]:
        return await self._list({"timestamp": {"$gte": start, "$lte": end}})

    async def list_denied(self, *, limit: int | None = None) -> list[PermissionAuditRecord]:
        return await self._list({"granted": False}, limit)

    async def list_recent_by_user(self, user_id: str, hours: int) -> list[PermissionAuditRecord]:
        return await self._list({"user_id": user_id, "timestamp": {"$gte": _since(hours)}})

    async def count_recent_failures(self, user_id: str, hours: int) -> int:
        return await PermissionAuditDocument.find(
            {"user_id": user_id, "granted": False, "timestamp": {"$gte": _since(hours)}}
        ).count()


AuditWriter = Callable[[AuditEntry], Awaitable[Any]]


def repository_writer(repository: AuditRepository) -> AuditWriter:
    """直接写入审计仓储。"""

    async def _write(entry: AuditEntry) -> None:
        await repository.append(entry)

    return _write


def stream_writer(stream: str) -> AuditWriter:
    """投递到 Redis Stream，由队列 worker 落库。"""

    async def _write(entry: AuditEntry) -> None:
        await enqueue_task(stream, entry.model_dump(mode="json"))

    return _write


class AuditSink:
    """审计写入队列 + 单个后台写入协程。"""

    def __init__(self, writer: AuditWriter, *, maxsize: int = 10000) -> None:
        self._writer = writer
        self._maxsize = max(maxsize, 1)
        self._queue: asyncio.Queue[AuditEntry] | None = None
        self._task: asyncio.Task[None] | None = None
        self.submitted = 0
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """在当前事件循环中启动写入协程（幂等）。"""

        if self.running:
            return
        queue = self._ensure_queue()
        self._task = asyncio.get_running_loop().create_task(self._run(queue), name="permission-audit-writer")

    def _ensure_queue(self) -> asyncio.Queue[AuditEntry]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        return self._queue

    def submit(self, entry: AuditEntry) -> bool:
        """非阻塞投递。队列已满时丢弃并记录错误，不抛出。"""

        try:
            self.start()
            self._ensure_queue().put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error("审计队列已满，丢弃记录 user=%s permission=%s", entry.username, entry.permission)
            return False
        self.submitted += 1
        return True

    async def _run(self, queue: asyncio.Queue[AuditEntry]) -> None:
        while True:
            entry = await queue.get()
            try:
                await self._writer(entry)
                self.written += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("审计记录写入失败 user=%s permission=%s", entry.username, entry.permission)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """等待已投递的记录全部处理完毕。"""

        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        """处理完积压记录后停止写入协程。"""

        await self.drain()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
