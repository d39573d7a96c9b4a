from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
from typing import Callable, cast

import pytest

from notesguard.services.process_supervisor import (
    ChildSpec,
    ProcessSupervisor,
    RuntimeConfig,
    build_queue_worker_command,
    build_uvicorn_command,
    load_runtime_config,
    plan_children,
)


@dataclass
class FakeProcess:
    poll_result: int | None = None
    terminated: bool = False
    killed: bool = False

    def poll(self) -> int | None:
        return self.poll_result

    def terminate(self) -> None:
        self.terminated = True
        self.poll_result = -15

    def kill(self) -> None:
        self.killed = True


class FakePopenFactory:
    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.envs: list[dict[str, str]] = []
        self.processes: list[FakeProcess] = []

    def __call__(self, command: list[str], **kwargs: object) -> FakeProcess:
        self.commands.append(command)
        self.envs.append(cast(dict[str, str], kwargs.get("env") or {}))
        process = FakeProcess()
        self.processes.append(process)
        return process


def _config(**overrides: object) -> RuntimeConfig:
    values: dict[str, object] = {
        "queue_workers": 0,
        "app_port": 8000,
        "uvicorn_host": "0.0.0.0",
        "uvicorn_log_level": "info",
        "uvicorn_reload": False,
    }
    values.update(overrides)
    return RuntimeConfig(**values)  # type: ignore[arg-type]


def _supervisor(children: list[ChildSpec], popen: FakePopenFactory) -> ProcessSupervisor:
    return ProcessSupervisor(children, popen_factory=cast(Callable[..., subprocess.Popen[str]], popen))


@pytest.mark.unit
def test_multiple_http_workers_are_clamped_to_one(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="notesguard.services.process_supervisor"):
        config = load_runtime_config(http_workers=4, queue_workers=2, audit_backend="mongo")

    assert "HTTP_WORKERS=4" in caplog.text
    assert config.queue_workers == 0
    command = build_uvicorn_command(config)
    assert "--workers" not in command
    assert [child.name for child in plan_children(config)] == ["http"]


@pytest.mark.unit
def test_single_http_worker_does_not_warn(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="notesguard.services.process_supervisor"):
        load_runtime_config(http_workers=1, queue_workers=0, audit_backend="memory")

    assert caplog.records == []


@pytest.mark.unit
def test_stream_audit_always_gets_a_queue_worker(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="notesguard.services.process_supervisor"):
        config = load_runtime_config(http_workers=1, queue_workers=0, store_backend="memory", audit_backend="stream")

    assert config.queue_workers == 1
    assert config.store_backend == "memory"
    assert "QUEUE_WORKERS=0" in caplog.text
    assert load_runtime_config(queue_workers=3, audit_backend="stream").queue_workers == 3


@pytest.mark.unit
def test_uvicorn_command_targets_app_and_port() -> None:
    command = build_uvicorn_command(_config(app_port=9000, uvicorn_reload=True))

    assert "notesguard.main:app" in command
    assert command[command.index("--port") + 1] == "9000"
    assert "--reload" in command


@pytest.mark.unit
def test_start_spawns_http_and_audit_workers_with_identity() -> None:
    popen = FakePopenFactory()
    supervisor = _supervisor(plan_children(_config(queue_workers=2, audit_backend="stream")), popen)

    supervisor.start()

    assert len(popen.commands) == 3
    assert popen.commands[1] == build_queue_worker_command()
    assert popen.envs[2]["NG_WORKER_ID"] == "audit-1"
    assert [item.name for item in supervisor.processes] == ["http", "audit-0", "audit-1"]


@pytest.mark.unit
def test_first_exited_reports_unexpected_exit_and_stop_all_terminates_rest() -> None:
    popen = FakePopenFactory()
    supervisor = _supervisor(plan_children(_config(queue_workers=1)), popen)
    supervisor.start()

    assert supervisor.first_exited() is None
    popen.processes[1].poll_result = 2

    assert supervisor.first_exited() == ("audit-0", 2)

    supervisor.stop_all(timeout=0)
    assert popen.processes[0].terminated is True
    assert popen.processes[1].terminated is False
    assert not any(process.killed for process in popen.processes)
