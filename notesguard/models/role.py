"""角色模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import IndexModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RoleDocument(Document):
    """角色。继承边与直接权限都只保存 id。"""

    name: str = Field(..., min_length=1, max_length=50)
    description: str = Field(default="")
    is_system: bool = False
    permission_ids: list[PydanticObjectId] = Field(default_factory=list)
    child_role_ids: list[PydanticObjectId] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "roles"
        indexes = [
            IndexModel([("name", 1)], name="uniq_roles_name", unique=True),
            IndexModel([("child_role_ids", 1)], name="idx_roles_child_role_ids"),
            IndexModel([("permission_ids", 1)], name="idx_roles_permission_ids"),
        ]
