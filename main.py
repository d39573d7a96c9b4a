"""项目主启动入口（编排 HTTP 与审计队列进程）。"""

from __future__ import annotations

import logging

from notesguard.services.process_supervisor import ProcessSupervisor, load_runtime_config, plan_children

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def main() -> int:
    """启动主控进程。"""

    config = load_runtime_config()
    logger.info(
        "启动参数: store=%s audit=%s queue_workers=%d port=%d",
        config.store_backend,
        config.audit_backend,
        config.queue_workers,
        config.app_port,
    )
    return ProcessSupervisor(plan_children(config)).run()


if __name__ == "__main__":
    raise SystemExit(main())
