from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from apps.helpdesk.core.config import Settings, get_settings
from apps.helpdesk.tickets.errors import ForbiddenError, UnauthorizedError


class Role(str, Enum):
    """Supported roles."""

    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


ELEVATED_ROLES = frozenset({Role.INSTRUCTOR, Role.ADMIN})


@dataclass(slots=True, frozen=True)
class Identity:
    """The authenticated caller, built once per request."""

    subject_id: str
    email: str | None
    role: Role
    name: str | None = None

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


bearer_scheme = HTTPBearer(auto_error=False)


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _role_from_user_type(user_type: str | None) -> Role:
    if user_type == Role.ADMIN.value:
        return Role.ADMIN
    if user_type == Role.INSTRUCTOR.value:
        return Role.INSTRUCTOR
    return Role.STUDENT


def identity_from_claims(claims: Mapping[str, Any]) -> Identity:
    """Build an :class:`Identity` from decoded token claims.

    Claims either carry a nested ``user`` object (``id``, ``email``, ``name``,
    ``userType``) or top-level ``userId``/``sub``, ``email`` and ``role``.
    """

    user = claims.get("user")
    if isinstance(user, Mapping):
        subject_id = _as_str(user.get("id"))
        email = _as_str(user.get("email"))
        name = _as_str(user.get("name")) or _as_str(user.get("fullName"))
        role = _role_from_user_type(_as_str(user.get("userType")))
    else:
        subject_id = _as_str(claims.get("userId")) or _as_str(claims.get("sub"))
        email = _as_str(claims.get("email"))
        name = _as_str(claims.get("name"))
        raw_role = _as_str(claims.get("role")) or Role.STUDENT.value
        try:
            role = Role(raw_role)
        except ValueError as exc:
            raise UnauthorizedError(f"Unknown role: {raw_role}") from exc

    if subject_id is None:
        raise UnauthorizedError("User ID not found in token")
    return Identity(subject_id=subject_id, email=email, role=role, name=name)


def decode_identity(token: str, settings: Settings) -> Identity:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise UnauthorizedError("Invalid token") from exc
    return identity_from_claims(claims)


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> Identity:
    """Resolve the caller from the ``Authorization: Bearer`` header."""

    cached = getattr(request.state, "identity", None)
    if isinstance(cached, Identity):
        return cached

    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Authorization header required")
    identity = decode_identity(credentials.credentials, settings)
    request.state.identity = identity
    return identity


def role_required(*roles: Role) -> Callable[..., Any]:
    """Dependency factory ensuring the caller holds one of ``roles``."""

    allowed = frozenset(roles)

    async def dependency(identity: Annotated[Identity, Depends(get_current_identity)]) -> Identity:
        if identity.role not in allowed:
            raise ForbiddenError("Insufficient permissions")
        return identity

    return dependency


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
ElevatedIdentity = Annotated[Identity, Depends(role_required(Role.INSTRUCTOR, Role.ADMIN))]
AdminIdentity = Annotated[Identity, Depends(role_required(Role.ADMIN))]
