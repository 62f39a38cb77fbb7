import jwt
import pytest

from apps.helpdesk.core.config import Settings
from apps.helpdesk.dependencies.auth import (
    Identity,
    Role,
    decode_identity,
    identity_from_claims,
    role_required,
)
from apps.helpdesk.tickets.errors import ForbiddenError, UnauthorizedError

SECRET = "test-secret"


def _settings() -> Settings:
    return Settings(jwt_secret=SECRET, jwt_algorithm="HS256")


def test_nested_user_claims_map_user_type_to_role():
    identity = identity_from_claims(
        {"user": {"id": "u-1", "email": "ada@example.edu", "name": "Ada", "userType": "instructor"}}
    )

    assert identity == Identity(subject_id="u-1", email="ada@example.edu", role=Role.INSTRUCTOR, name="Ada")
    assert identity.is_elevated
    assert not identity.is_admin


def test_unknown_user_type_falls_back_to_student():
    identity = identity_from_claims({"user": {"id": "u-2", "userType": "guest"}})

    assert identity.role is Role.STUDENT
    assert identity.email is None


def test_top_level_claims_prefer_user_id_over_sub():
    identity = identity_from_claims({"userId": "u-3", "sub": "ignored", "role": "admin", "email": "a@x.edu"})

    assert identity.subject_id == "u-3"
    assert identity.role is Role.ADMIN


def test_sub_claim_is_used_when_user_id_missing():
    identity = identity_from_claims({"sub": "u-4"})

    assert identity.subject_id == "u-4"
    assert identity.role is Role.STUDENT


def test_unknown_top_level_role_is_rejected():
    with pytest.raises(UnauthorizedError):
        identity_from_claims({"sub": "u-5", "role": "superuser"})


def test_missing_user_id_is_rejected():
    with pytest.raises(UnauthorizedError) as exc:
        identity_from_claims({"user": {"email": "nobody@example.edu"}})

    assert exc.value.status_code == 401


def test_decode_identity_verifies_signature():
    token = jwt.encode({"sub": "u-6", "role": "instructor"}, SECRET, algorithm="HS256")

    identity = decode_identity(token, _settings())

    assert identity.subject_id == "u-6"
    assert identity.role is Role.INSTRUCTOR


def test_decode_identity_rejects_foreign_signature():
    token = jwt.encode({"sub": "u-7"}, "another-secret", algorithm="HS256")

    with pytest.raises(UnauthorizedError):
        decode_identity(token, _settings())


def test_decode_identity_rejects_garbage():
    with pytest.raises(UnauthorizedError):
        decode_identity("not-a-token", _settings())


@pytest.mark.asyncio
async def test_role_required_allows_authorized_identity():
    dependency = role_required(Role.INSTRUCTOR, Role.ADMIN)
    identity = Identity(subject_id="i-1", email=None, role=Role.INSTRUCTOR)

    result = await dependency(identity)  # type: ignore[arg-type]

    assert result is identity


@pytest.mark.asyncio
async def test_role_required_rejects_unauthorized_identity():
    dependency = role_required(Role.ADMIN)
    identity = Identity(subject_id="s-1", email=None, role=Role.STUDENT)

    with pytest.raises(ForbiddenError) as exc:
        await dependency(identity)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.message == "Insufficient permissions"
