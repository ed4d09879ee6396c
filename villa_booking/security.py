from dataclasses import dataclass

from jose import jwt, JWTError
from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import JWT_SECRET, JWT_ALGORITHM

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: str | None
    email: str | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def actor_from_payload(payload: dict) -> Actor:
    roles = payload.get("roles")
    if not isinstance(roles, list):
        roles = [payload.get("role")] if payload.get("role") else []
    roles = {str(r).lower() for r in roles}

    sub = payload.get("sub")
    return Actor(
        id=str(sub) if sub is not None else None,
        email=payload.get("email"),
        role="admin" if "admin" in roles else "user",
    )


def verified_subject(authorization: str | None) -> str | None:
    """`sub` of a bearer token whose signature checks out, else None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    try:
        payload = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    sub = payload.get("sub")
    return str(sub) if sub is not None else None


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

    request.state.user_sub = payload.get("sub")
    request.state.user_roles = payload.get("roles")
    return payload


def get_actor(payload: dict = Depends(get_current_user)) -> Actor:
    actor = actor_from_payload(payload)
    if not actor.id and not actor.email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no user identity",
        )
    return actor
