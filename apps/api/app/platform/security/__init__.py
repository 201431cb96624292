from app.platform.security.context import CallerContext
from app.platform.security.policies import (
    DEFAULT_ROLE_PERMISSIONS,
    InMemoryPolicyBackend,
    PolicyBackend,
    ResourceAction,
    Role,
    authorize,
    get_policy_backend,
    set_policy_backend,
)
from app.platform.security.repository import BaseRepository

__all__ = [
    "CallerContext",
    "BaseRepository",
    "DEFAULT_ROLE_PERMISSIONS",
    "PolicyBackend",
    "InMemoryPolicyBackend",
    "ResourceAction",
    "Role",
    "authorize",
    "set_policy_backend",
    "get_policy_backend",
]
