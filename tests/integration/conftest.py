from __future__ import annotations

from typing import AsyncIterator
import uuid

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
import pytest
import pytest_asyncio

from notesguard.config import MONGO_URL
from notesguard.db import close_db, init_db


@pytest_asyncio.fixture
async def initialized_db() -> AsyncIterator[str]:
    """在独立的临时库上初始化 Beanie，MongoDB 不可用时跳过。"""

    probe = AsyncIOMotorClient(MONGO_URL, serverSelectionTimeoutMS=1000)
    try:
        await probe.admin.command("ping")
    except PyMongoError:
        probe.close()
        pytest.skip("MongoDB 不可用，跳过集成测试")

    db_name = f"notesguard_test_{uuid.uuid4().hex[:8]}"
    await init_db(MONGO_URL, db_name)
    try:
        yield db_name
    finally:
        await close_db()
        await probe.drop_database(db_name)
        probe.close()
