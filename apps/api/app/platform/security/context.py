from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class CallerContext:
    """Authenticated caller supplied per request: identity plus role tags."""

    identity: str
    roles: frozenset[str] = field(default_factory=frozenset)
    correlation_id: str | None = None

    @classmethod
    def of(cls, identity: str | None, roles: list[str] | set[str] | None = None, *, correlation_id: str | None = None) -> CallerContext:
        return cls(
            identity=(identity or "").strip(),
            roles=frozenset(normalize_role(role) for role in roles or [] if normalize_role(role)),
            correlation_id=correlation_id,
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.identity)

    def has_any_role(self, *roles: str) -> bool:
        return any(normalize_role(role) in self.roles for role in roles)


def normalize_role(role: str) -> str:
    value = str(role).strip().upper()
    if value.startswith("ROLE_"):
        value = value[len("ROLE_") :]
    return value
