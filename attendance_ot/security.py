from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from attendance_ot.errors import ApiError
from attendance_ot.models import UserRole
from attendance_ot.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.MASTER_ADMIN})


@dataclass(frozen=True, slots=True)
class Principal:
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def create_access_token(*, user_id: int, role: UserRole) -> tuple[str, int]:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "role": role.value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, settings.access_token_minutes * 60


def decode_token(token: str) -> Principal:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    try:
        role = UserRole(payload.get("role"))
    except ValueError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is invalid.") from exc
    return Principal(user_id=int(subject), role=role)


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    principal = decode_token(credentials.credentials)
    request.state.actor = "admin" if principal.is_admin else "employee"
    request.state.actor_id = str(principal.user_id)
    return principal


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return principal


def require_master_admin(principal: Principal = Depends(require_user)) -> Principal:
    if principal.role != UserRole.MASTER_ADMIN:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Master admin role required.")
    return principal
