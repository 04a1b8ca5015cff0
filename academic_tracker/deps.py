"""FastAPI dependency providers.

Route handlers ask for the container, the signed-in user or a request
scope through these functions; tests replace `get_container` through
`app.dependency_overrides`.
"""

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import models
from .container import Container, RequestScope, get_container
from .errors import InvalidCredentialsError

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    container: Container = Depends(get_container),
) -> models.User:
    """Decode the bearer token and return the active user it belongs to."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="missing bearer token")
    try:
        payload = container.auth.decode_token(credentials.credentials)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=401, detail=str(e))
    user = container.users.get(payload.get("uid", ""))
    if not user or not user.active:
        raise HTTPException(status_code=401, detail="user not found or inactive")
    return user


def get_scope(
    user: models.User = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> RequestScope:
    """A new scope per call; FastAPI's dependency cache reuses it within one request."""
    return container.scope(user)


def require_role(*roles: models.UserRole):
    """Dependency factory restricting a route to the given roles."""
    allowed = {r.value for r in roles}

    def checker(scope: RequestScope = Depends(get_scope)) -> RequestScope:
        if scope.role.value not in allowed:
            raise HTTPException(status_code=403, detail="insufficient role")
        return scope

    return checker
