import os

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    # customer ids are numeric on the booking backend
    user_id = payload.get("user_id") or payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no user id",
        )

    request.state.user_sub = payload.get("sub")
    request.state.user_roles = payload.get("roles")
    payload["user_id"] = str(user_id)
    return payload


def require_role(*allowed_roles: str):
    allowed = {r.lower() for r in allowed_roles}

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        roles = user.get("roles")
        if not isinstance(roles, list) or not roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Roles missing in token",
            )
        if allowed.isdisjoint(str(r).lower() for r in roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access forbidden for this role",
            )
        return user

    return dependency
