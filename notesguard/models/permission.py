"""权限模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document
from pydantic import Field
from pymongo import IndexModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionDocument(Document):
    """原子权限，name 形如 ``NOTES:READ``。"""

    name: str = Field(..., min_length=1, max_length=100)
    resource: str = Field(..., min_length=1, max_length=50)
    action: str = Field(..., min_length=1, max_length=50)
    description: str = Field(default="")
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "permissions"
        indexes = [
            IndexModel([("name", 1)], name="uniq_permissions_name", unique=True),
        ]
