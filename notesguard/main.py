"""FastAPI 应用入口。"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from .apps.admin.controllers.audit import router as audit_router
from .apps.admin.controllers.me import router as me_router
from .apps.admin.controllers.roles import router as roles_router
from .apps.admin.dependencies import access_control_error_handler
from .config import APP_NAME, SECRET_KEY, SEED_DEFAULT_ROLES
from .db import close_db, init_db
from .services import access_runtime
from .services.errors import AccessControlError
from .services.redis_service import close_redis
from .services.role_service import ensure_default_roles

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期：启动时初始化资源，退出时释放资源。"""

    use_db = access_runtime.needs_database()
    if use_db:
        await init_db()
    access_control = access_runtime.build_from_config()
    access_runtime.set_access_control(access_control)
    if SEED_DEFAULT_ROLES:
        await ensure_default_roles(access_control.roles)
    access_control.audit_sink.start()
    logger.info("访问控制组件已就绪 store=%s", type(access_control.store).__name__)
    try:
        yield
    finally:
        await access_runtime.close_access_control()
        await close_redis()
        if use_db:
            await close_db()


app = FastAPI(title=APP_NAME, lifespan=lifespan)
app.add_middleware(SessionMiddleware, secret_key=SECRET_KEY, session_cookie="ng_session")
app.add_exception_handler(AccessControlError, access_control_error_handler)
app.include_router(roles_router)
app.include_router(audit_router)
app.include_router(me_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
