"""模型集合。"""

from .permission import PermissionDocument
from .permission_audit import PermissionAuditDocument
from .role import RoleDocument
from .user import UserDocument

__all__ = ["PermissionDocument", "RoleDocument", "UserDocument", "PermissionAuditDocument"]
