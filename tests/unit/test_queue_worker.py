from __future__ import annotations

from typing import Any

import pytest

from notesguard.services import task_registry
from notesguard.services.audit_service import InMemoryAuditRepository
from notesguard.services.queue_service import StreamMessage
from notesguard.tasks import queue_builtin
from notesguard.workers import queue_worker


class QueueCalls:
    def __init__(self) -> None:
        self.acked: list[str] = []
        self.dead: list[tuple[str, str]] = []

    def install(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_ack(_stream: str, _group: str, message_id: str) -> None:
            self.acked.append(message_id)

        async def fake_dead_letter(_definition: Any, message: StreamMessage, *, error: str) -> str:
            self.dead.append((message.message_id, error))
            return "3-0"

        monkeypatch.setattr(queue_worker, "ack_message", fake_ack)
        monkeypatch.setattr(queue_worker, "move_to_dead_letter", fake_dead_letter)


def _definition(handler: Any) -> task_registry.QueueConsumerDefinition:
    return task_registry.QueueConsumerDefinition(
        key="k",
        name="n",
        stream="stream",
        group="group",
        handler=handler,
    )


async def failing_handler(_payload: dict[str, Any], _meta: dict[str, Any]) -> None:
    raise RuntimeError("write failed")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_successful_message_is_acked(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = QueueCalls()
    calls.install(monkeypatch)
    seen: list[dict[str, Any]] = []

    async def handler(payload: dict[str, Any], meta: dict[str, Any]) -> None:
        seen.append({**payload, "worker_id": meta["worker_id"]})

    message = StreamMessage(message_id="1-0", payload={"a": 1})
    outcome = await queue_worker.handle_message(_definition(handler), message, worker_id="audit-0")

    assert outcome == "success"
    assert seen == [{"a": 1, "worker_id": "audit-0"}]
    assert calls.acked == ["1-0"]
    assert calls.dead == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_message_goes_straight_to_dead_letter(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = QueueCalls()
    calls.install(monkeypatch)
    message = StreamMessage(message_id="1-0", payload={"a": 1})

    outcome = await queue_worker.handle_message(_definition(failing_handler), message, worker_id="audit-0")

    assert outcome == "dead_lettered"
    assert calls.dead == [("1-0", "write failed")]
    assert calls.acked == ["1-0"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_audit_consumer_persists_stream_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = QueueCalls()
    calls.install(monkeypatch)
    repository = InMemoryAuditRepository()
    queue_builtin.set_audit_repository(repository)
    try:
        queue_builtin.register_tasks()
        definition = task_registry.get_queue_consumer(queue_builtin.PERMISSION_AUDIT_CONSUMER)
        assert definition is not None
        message = StreamMessage(
            message_id="5-0",
            payload={
                "user_id": "u1",
                "username": "bob",
                "resource": "NOTES",
                "action": "DELETE",
                "granted": False,
                "timestamp": "2026-01-01T00:00:00+00:00",
            },
        )

        outcome = await queue_worker.handle_message(definition, message, worker_id="audit-0")
        bad = await queue_worker.handle_message(
            definition,
            StreamMessage(message_id="6-0", payload={"username": "bob"}),
            worker_id="audit-0",
        )
    finally:
        queue_builtin.set_audit_repository(None)

    assert outcome == "success"
    assert bad == "dead_lettered"
    records = await repository.list_denied()
    assert [item.permission for item in records] == ["NOTES:DELETE"]
    assert calls.acked == ["5-0", "6-0"]
    assert [item[0] for item in calls.dead] == ["6-0"]
