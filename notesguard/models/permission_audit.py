"""权限审计模型。"""

from __future__ import annotations

from datetime import datetime, timezone

from beanie import Document
from pydantic import Field
from pymongo import IndexModel

USERNAME_MAX_LENGTH = 64
RESOURCE_MAX_LENGTH = 50
ACTION_MAX_LENGTH = 50
PERMISSION_MAX_LENGTH = RESOURCE_MAX_LENGTH + 1 + ACTION_MAX_LENGTH
IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 255

# 写入前按这些上限截断，超长输入不能让记录落库失败
AUDIT_FIELD_LIMITS = {
    "username": USERNAME_MAX_LENGTH,
    "resource": RESOURCE_MAX_LENGTH,
    "action": ACTION_MAX_LENGTH,
    "ip_address": IP_ADDRESS_MAX_LENGTH,
    "user_agent": USER_AGENT_MAX_LENGTH,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionAuditDocument(Document):
    """一次访问判定的审计记录（只追加）。"""

    user_id: str | None = None
    username: str = Field(..., max_length=USERNAME_MAX_LENGTH)
    permission: str = Field(..., max_length=PERMISSION_MAX_LENGTH)
    resource: str = Field(..., max_length=RESOURCE_MAX_LENGTH)
    resource_id: str | None = None
    action: str = Field(..., max_length=ACTION_MAX_LENGTH)
    granted: bool
    ip_address: str | None = Field(default=None, max_length=IP_ADDRESS_MAX_LENGTH)
    user_agent: str | None = Field(default=None, max_length=USER_AGENT_MAX_LENGTH)
    details: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "permission_audit"
        indexes = [
            IndexModel([("username", 1), ("timestamp", -1)], name="idx_audit_username_timestamp"),
            IndexModel([("user_id", 1), ("timestamp", -1)], name="idx_audit_user_id_timestamp"),
            IndexModel([("resource", 1), ("action", 1)], name="idx_audit_resource_action"),
            IndexModel([("granted", 1), ("timestamp", -1)], name="idx_audit_granted_timestamp"),
            IndexModel([("timestamp", -1)], name="idx_audit_timestamp"),
        ]
