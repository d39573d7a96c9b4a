"""应用配置（通过 .env 覆盖）。"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# 优先加载项目根目录下的 .env
BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")


def _to_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    """安全解析整数环境变量。"""

    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _to_bool(value: str | None, default: bool = False) -> bool:
    """安全解析布尔环境变量。"""

    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


def _to_choice(value: str | None, choices: set[str], default: str) -> str:
    """解析枚举型环境变量，非法值回退默认值。"""

    normalized = str(value or "").strip().lower()
    return normalized if normalized in choices else default


APP_NAME = os.getenv("APP_NAME", "NotesGuard")
APP_ENV = os.getenv("APP_ENV", "dev")

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "notesguard")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

APP_PORT = _to_int(os.getenv("APP_PORT"), 8000, minimum=1)
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")

HTTP_WORKERS = _to_int(os.getenv("HTTP_WORKERS"), 1, minimum=1)
QUEUE_WORKERS = _to_int(os.getenv("QUEUE_WORKERS"), 1, minimum=0)

UVICORN_HOST = os.getenv("UVICORN_HOST", "0.0.0.0")
UVICORN_LOG_LEVEL = os.getenv("UVICORN_LOG_LEVEL", "info")
UVICORN_RELOAD = _to_bool(os.getenv("UVICORN_RELOAD"), default=False)

QUEUE_BLOCK_MS = _to_int(os.getenv("QUEUE_BLOCK_MS"), 1500, minimum=100)

# 角色图存储：memory 仅用于开发与测试，生产使用 mongo
RBAC_STORE_BACKEND = _to_choice(os.getenv("RBAC_STORE_BACKEND"), {"memory", "mongo"}, "mongo")
# 审计落地方式：memory / mongo 直写 / stream 经 Redis Streams 交给队列 worker
AUDIT_BACKEND = _to_choice(os.getenv("AUDIT_BACKEND"), {"memory", "mongo", "stream"}, "mongo")
AUDIT_STREAM = os.getenv("AUDIT_STREAM", "ng:queue:permission_audit")
AUDIT_GROUP = os.getenv("AUDIT_GROUP", "ng_audit_group")
AUDIT_QUEUE_MAXSIZE = _to_int(os.getenv("AUDIT_QUEUE_MAXSIZE"), 10000, minimum=1)
SEED_DEFAULT_ROLES = _to_bool(os.getenv("SEED_DEFAULT_ROLES"), default=True)
