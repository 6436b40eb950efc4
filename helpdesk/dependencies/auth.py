from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from helpdesk.core.config import get_settings
from helpdesk.security.roles import Role, RoleResolver
from helpdesk.tickets.models import Actor

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_actor_id(token: str | None) -> str:
    """Map a bearer token to the agent id it was issued for.

    Token issuance lives in the identity provider; this only looks the token
    up in the configured ``api_tokens`` table.
    """

    if token is None:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")

    actor_id = get_settings().api_tokens.get(token)
    if actor_id is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return actor_id


async def get_role_resolver(request: Request) -> RoleResolver:
    resolver = getattr(request.app.state, "role_resolver", None)
    if resolver is None:
        raise HTTPException(status_code=503, detail="Role resolver is not configured")
    return resolver


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    resolver: Annotated[RoleResolver, Depends(get_role_resolver)],
) -> Actor:
    token = credentials.credentials if credentials is not None else None
    actor_id = resolve_actor_id(token)
    role = await resolver.resolve(actor_id)
    if role is None:
        raise HTTPException(status_code=403, detail="Unknown agent")
    return Actor(id=actor_id, role=role)


async def require_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
