"""访问控制异常与告警类型。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


class AccessControlError(ValueError):
    """访问控制核心的异常基类。"""


class NotFoundError(AccessControlError):
    """按 id 或名称查找的实体不存在。"""


class RoleNotFoundError(NotFoundError):
    """角色不存在。"""


class PermissionNotFoundError(NotFoundError):
    """权限不存在。"""


class UserNotFoundError(NotFoundError):
    """鉴权时无法解析用户身份（区别于“无权限”）。"""


class AlreadyExistsError(AccessControlError):
    """创建时名称重复。"""


class CircularDependencyError(AccessControlError):
    """新增继承边会形成环。"""


class RoleImmutableError(AccessControlError):
    """系统角色不可修改、不可删除。"""


class PermissionInUseError(AccessControlError):
    """权限仍被角色引用，禁止删除。"""


@dataclass(frozen=True, slots=True)
class PartialReferenceSet:
    """批量按名称查找时只命中了部分引用。

    这是告警值而不是异常：批量导入需要带着已命中的部分继续执行。
    """

    kind: str
    owner: str
    requested: frozenset[str]
    found: frozenset[str]

    @property
    def missing(self) -> frozenset[str]:
        return self.requested - self.found

    def describe(self) -> str:
        missing = ", ".join(sorted(self.missing))
        return (
            f"{self.owner}: {self.kind} 引用缺失 {missing} "
            f"(期望 {len(self.requested)}，命中 {len(self.found)})"
        )


def check_partial(
    kind: str,
    owner: str,
    requested: Iterable[str],
    found: Iterable[str],
) -> PartialReferenceSet | None:
    """比较输入输出集合大小，存在缺失时返回告警。"""

    requested_set = frozenset(requested)
    found_set = frozenset(found) & requested_set
    if len(found_set) == len(requested_set):
        return None
    return PartialReferenceSet(kind=kind, owner=owner, requested=requested_set, found=found_set)
