"""Role resolution for acting users."""

from .roles import AgentRoleRepository, CachedRoleResolver, Role, RoleResolver

__all__ = [
    "AgentRoleRepository",
    "CachedRoleResolver",
    "Role",
    "RoleResolver",
]
