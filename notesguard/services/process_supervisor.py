"""多进程启动编排：一个 HTTP 进程，加上 Stream 审计所需的队列 worker。

权限缓存、图级互斥锁与 memory 存储都是进程内状态，HTTP 侧只能运行单进程；
HTTP_WORKERS 大于 1 时按 1 处理并告警。
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Callable

from notesguard.config import (
    APP_PORT,
    AUDIT_BACKEND,
    HTTP_WORKERS,
    QUEUE_WORKERS,
    RBAC_STORE_BACKEND,
    UVICORN_HOST,
    UVICORN_LOG_LEVEL,
    UVICORN_RELOAD,
)

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 10
POLL_INTERVAL_SECONDS = 0.5
WORKER_ID_ENV = "NG_WORKER_ID"


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """主控进程运行配置。"""

    queue_workers: int
    app_port: int
    uvicorn_host: str
    uvicorn_log_level: str
    uvicorn_reload: bool
    store_backend: str = "mongo"
    audit_backend: str = "mongo"


@dataclass(frozen=True, slots=True)
class ChildSpec:
    """待拉起的子进程。"""

    name: str
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ManagedProcess:
    name: str
    process: subprocess.Popen[str]


def resolve_http_workers(requested: int) -> int:
    if requested > 1:
        logger.warning(
            "HTTP_WORKERS=%d 被忽略：权限缓存与变更锁为进程内状态，多进程会读到过期授权，按 1 个进程启动",
            requested,
        )
    return 1


def resolve_queue_workers(requested: int, audit_backend: str) -> int:
    """只有 Stream 审计需要队列 worker，且至少一个，否则记录永远不会落库。"""

    if audit_backend != "stream":
        return 0
    if requested < 1:
        logger.warning("AUDIT_BACKEND=stream 但 QUEUE_WORKERS=%d，按 1 个 worker 启动", requested)
        return 1
    return requested


def load_runtime_config(
    *,
    http_workers: int = HTTP_WORKERS,
    queue_workers: int = QUEUE_WORKERS,
    store_backend: str = RBAC_STORE_BACKEND,
    audit_backend: str = AUDIT_BACKEND,
) -> RuntimeConfig:
    resolve_http_workers(http_workers)
    return RuntimeConfig(
        queue_workers=resolve_queue_workers(queue_workers, audit_backend),
        app_port=max(APP_PORT, 1),
        uvicorn_host=UVICORN_HOST,
        uvicorn_log_level=UVICORN_LOG_LEVEL,
        uvicorn_reload=UVICORN_RELOAD,
        store_backend=store_backend,
        audit_backend=audit_backend,
    )


def build_uvicorn_command(config: RuntimeConfig) -> list[str]:
    """构建 Uvicorn 启动命令（固定单进程）。"""

    command = [
        sys.executable,
        "-m",
        "uvicorn",
        "notesguard.main:app",
        "--host",
        config.uvicorn_host,
        "--port",
        str(config.app_port),
        "--log-level",
        config.uvicorn_log_level,
    ]
    if config.uvicorn_reload:
        command.append("--reload")
    return command


def build_queue_worker_command() -> list[str]:
    return [sys.executable, "-m", "notesguard.workers.queue_worker"]


def plan_children(config: RuntimeConfig) -> list[ChildSpec]:
    children = [ChildSpec(name="http", command=build_uvicorn_command(config))]
    for index in range(config.queue_workers):
        worker_id = f"audit-{index}"
        children.append(
            ChildSpec(
                name=worker_id,
                command=build_queue_worker_command(),
                env={WORKER_ID_ENV: worker_id},
            )
        )
    return children


class ProcessSupervisor:
    """拉起并守护子进程：任一子进程意外退出即停止全部并返回 1。"""

    def __init__(
        self,
        children: list[ChildSpec],
        *,
        popen_factory: Callable[..., subprocess.Popen[str]] = subprocess.Popen,
    ) -> None:
        self.children = children
        self._popen_factory = popen_factory
        self._processes: list[ManagedProcess] = []
        self._stop_requested = False

    @property
    def processes(self) -> list[ManagedProcess]:
        return list(self._processes)

    def request_stop(self) -> None:
        self._stop_requested = True

    def start(self) -> None:
        for child in self.children:
            env = {**os.environ, **child.env}
            logger.info("启动子进程 name=%s cmd=%s", child.name, " ".join(child.command))
            process = self._popen_factory(child.command, env=env, text=True)
            self._processes.append(ManagedProcess(name=child.name, process=process))

    def first_exited(self) -> tuple[str, int] | None:
        """返回第一个已退出的子进程 (name, code)，都在运行时返回 None。"""

        for item in self._processes:
            code = item.process.poll()
            if code is not None:
                return item.name, int(code)
        return None

    def stop_all(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        """先 terminate，超时仍未退出的 kill。"""

        running = [item for item in self._processes if item.process.poll() is None]
        for item in running:
            item.process.terminate()

        deadline = time.monotonic() + timeout
        while True:
            running = [item for item in running if item.process.poll() is None]
            if not running or time.monotonic() >= deadline:
                break
            time.sleep(0.2)

        for item in running:
            logger.warning("子进程未在时限内退出，强制结束 name=%s", item.name)
            item.process.kill()

    def run(self) -> int:
        signal.signal(signal.SIGINT, lambda _signum, _frame: self.request_stop())
        signal.signal(signal.SIGTERM, lambda _signum, _frame: self.request_stop())
        self.start()

        exited: tuple[str, int] | None = None
        try:
            while not self._stop_requested:
                exited = self.first_exited()
                if exited is not None:
                    break
                time.sleep(POLL_INTERVAL_SECONDS)
        finally:
            self.stop_all()

        if exited is not None:
            logger.error("子进程异常退出，主控停止 name=%s code=%s", *exited)
            return 1
        return 0
