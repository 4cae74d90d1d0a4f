from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from prepaid.core.config import Settings
from prepaid.core.permissions import Permission, has_permission


class CurrentUser(Dict[str, Any]):
    """Claims of the authenticated staff user: ``id``, ``org_id`` (str) and ``roles``."""

    @property
    def id(self) -> str:
        return self["id"]

    @property
    def org_id(self) -> str:
        return self["org_id"]

    @property
    def roles(self) -> List[str]:
        return self["roles"]

    @property
    def email(self) -> Optional[str]:
        return self.get("email")


def _verify_jwt(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Token verification failed: {e}")


def create_access_token(settings: Settings, *, user_id: str, org_id: str, roles: list[str],
                        email: str | None = None, expires_at: int | None = None) -> str:
    claims: dict[str, Any] = {"sub": user_id, "org_id": str(org_id), "roles": roles}
    if email:
        claims["email"] = email
    if expires_at:
        claims["exp"] = expires_at
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def get_current_user(request: Request) -> CurrentUser:
    """Validate the HS256 bearer token from ``Authorization: Bearer <token>``."""
    auth: Optional[str] = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    token = auth.split(" ", 1)[1].strip()

    payload = _verify_jwt(token, request.app.state.settings)

    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: user id not found")
    org_id = payload.get("org_id")
    if not org_id:
        raise HTTPException(status_code=401, detail="Invalid token: organization not found")
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]

    # org ids are compared as strings everywhere
    return CurrentUser(id=str(user_id), org_id=str(org_id), roles=list(roles), email=payload.get("email"))


def require_permission(permission: Permission):
    def _dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_permission(current_user.roles, permission):
            raise HTTPException(status_code=403, detail=f"Missing permission: {permission.value}")
        return current_user

    return _dependency
