from __future__ import annotations

import logging
from enum import StrEnum
from threading import Lock
from typing import Protocol

from app.core.errors import ForbiddenError, UnauthorizedError
from app.metrics import observe_access_denied
from app.platform.security.context import CallerContext, normalize_role


logger = logging.getLogger("app.security")


class Role(StrEnum):
    ADMIN = "ADMIN"
    USER = "USER"


class ResourceAction(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Granted to every caller with a non-empty identity, whatever its roles.
AUTHENTICATED = "AUTHENTICATED"

DEFAULT_ROLE_PERMISSIONS: dict[str, set[str]] = {
    AUTHENTICATED: {"company.read", "company.contact.*"},
    Role.USER.value: {"company.project.read"},
    Role.ADMIN.value: {"*"},
}


class PolicyBackend(Protocol):
    """Pluggable policy backend deciding resource actions for a caller."""

    def is_resource_allowed(self, resource: str, action: ResourceAction, caller: CallerContext) -> bool:
        ...


class InMemoryPolicyBackend:
    """Role to permission map with `*` and `resource.*` wildcard grants."""

    def __init__(self, role_permissions: dict[str, set[str]] | None = None, *, default_allow: bool = False) -> None:
        source = DEFAULT_ROLE_PERMISSIONS if role_permissions is None else role_permissions
        self._role_permissions = {normalize_role(role): set(grants) for role, grants in source.items()}
        self._default_allow = default_allow

    def is_resource_allowed(self, resource: str, action: ResourceAction, caller: CallerContext) -> bool:
        if self._default_allow:
            return True
        required = f"{resource}.{action.value}"
        return any(self._matches(grant, required) for grant in self._grants_for(caller))

    def _grants_for(self, caller: CallerContext) -> set[str]:
        grants = set(self._role_permissions.get(AUTHENTICATED, set()))
        for role in caller.roles:
            grants.update(self._role_permissions.get(role, set()))
        return grants

    @staticmethod
    def _matches(grant: str, required: str) -> bool:
        if grant in {"*", required}:
            return True
        if grant.endswith(".*"):
            return required.startswith(grant[:-1])
        return False


_POLICY_BACKEND: PolicyBackend = InMemoryPolicyBackend()
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    """Set the active policy backend instance."""

    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend


def authorize(caller: CallerContext, resource: str, action: ResourceAction) -> None:
    """Raise unless the caller may perform `action` on `resource`.

    Runs before any persistence lookup, so a denied caller learns nothing about
    which companies or resources exist.
    """

    if not caller.is_authenticated:
        observe_access_denied(resource, action.value, "unauthenticated")
        logger.info("access.denied", extra={"resource": resource, "action": action.value, "reason": "unauthenticated"})
        raise UnauthorizedError("authentication required")

    if not get_policy_backend().is_resource_allowed(resource, action, caller):
        observe_access_denied(resource, action.value, "role")
        logger.info(
            "access.denied",
            extra={"resource": resource, "action": action.value, "reason": "role", "actor": caller.identity},
        )
        raise ForbiddenError(f"insufficient role for {resource}.{action.value}")
