"""任务模块加载入口。"""

from __future__ import annotations

_loaded = False


def load_builtin_tasks() -> None:
    """加载内置队列消费者（幂等）。"""

    global _loaded
    from notesguard.tasks import queue_builtin

    # 测试清空注册中心后再次调用时需要重新注册
    queue_builtin.register_tasks()
    _loaded = True
