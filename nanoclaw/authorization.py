"""Per-tenant authorization for mailbox requests and snapshot views."""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from nanoclaw.errors import AuthorizationDenied
from nanoclaw.models import AvailableGroup, ScheduledTask, Tenant


class Operation(str, Enum):
    SEND_MESSAGE = "send_message"
    SCHEDULE = "schedule"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    REFRESH_GROUPS = "refresh_groups"
    REGISTER_GROUP = "register_group"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


_PRIVILEGED_ONLY = frozenset({Operation.REFRESH_GROUPS, Operation.REGISTER_GROUP})


class AuthorizationPolicy:
    """Decides what a tenant's worker may do.

    The privileged tenant may act on anything. Every other tenant may only
    message its own chat and touch tasks recorded as its own. Ownership always
    comes from persisted state, never from the request.
    """

    def authorize(self, tenant: Tenant, operation: Operation, target: str | None) -> Decision:
        """Decide one request.

        ``target`` is the chat jid for SEND_MESSAGE and the owning tenant folder
        for task operations. Registry operations take no target.
        """
        if tenant.is_privileged:
            return Decision.ALLOW
        if operation in _PRIVILEGED_ONLY:
            return Decision.DENY
        if operation is Operation.SEND_MESSAGE:
            return Decision.ALLOW if target == tenant.jid else Decision.DENY
        return Decision.ALLOW if target == tenant.folder else Decision.DENY

    def require(self, tenant: Tenant, operation: Operation, target: str | None = None) -> None:
        """Raise AuthorizationDenied unless the request is allowed."""

        if self.authorize(tenant, operation, target) is Decision.DENY:
            raise AuthorizationDenied(
                f"{operation.value} denied for tenant {tenant.folder} (target={target!r})"
            )

    def visible_tasks(self, tenant: Tenant, tasks: Iterable[ScheduledTask]) -> list[ScheduledTask]:
        if tenant.is_privileged:
            return list(tasks)
        return [task for task in tasks if task.tenant_folder == tenant.folder]

    def visible_groups(self, tenant: Tenant, groups: Iterable[AvailableGroup]) -> list[AvailableGroup]:
        return list(groups) if tenant.is_privileged else []
