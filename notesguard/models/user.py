"""用户角色分配模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserDocument(Document):
    """用户。账号资料与密码由外部登录模块维护，这里只保存角色分配。"""

    username: str = Field(..., min_length=1, max_length=64)
    role_ids: list[PydanticObjectId] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "users"
        indexes = [
            IndexModel([("username", 1)], name="uniq_users_username", unique=True),
            IndexModel([("role_ids", 1)], name="idx_users_role_ids"),
        ]
