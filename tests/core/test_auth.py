from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from jose import jwt

from src.core.auth.jwt import create_access_token, decode_token
from src.core.auth.models import Identity, UserRole
from src.core.config import settings
from src.core.exceptions import AuthenticationError


class TestTokens:
    """Tokens are issued elsewhere; we only verify them."""

    def test_roundtrip_claims(self):
        token = create_access_token(42, UserRole.STUDENT.value)
        payload = decode_token(token)
        assert payload["sub"] == "42"
        assert payload["role"] == "Student"

    def test_wrong_type_rejected(self):
        token = jwt.encode(
            {
                "sub": "1",
                "role": "Admin",
                "type": "refresh",
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError):
            decode_token(token, token_type="access")

    def test_expired_rejected(self):
        token = jwt.encode(
            {
                "sub": "1",
                "role": "Admin",
                "type": "access",
                "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
            },
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_identity_roles(self):
        admin = Identity(id=1, role="Admin")
        student = Identity(id=2, role="Student")
        assert admin.is_admin and not admin.is_student
        assert student.has_role(UserRole.STUDENT, UserRole.INSTRUCTOR)
        assert not student.has_role(UserRole.ADMIN)


class TestAuthDependencies:
    async def test_missing_header(self, client: AsyncClient):
        response = await client.get("/api/v1/enrollments/my")
        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_malformed_header(self, client: AsyncClient):
        response = await client.get("/api/v1/enrollments/my", headers={"Authorization": "Token abc"})
        assert response.status_code == 401

    async def test_unknown_role(self, client: AsyncClient):
        token = create_access_token(5, "Janitor")
        response = await client.get(
            "/api/v1/enrollments/my", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401

    async def test_student_cannot_use_admin_endpoint(self, client: AsyncClient, student_headers):
        response = await client.get("/api/v1/vouchers", headers=student_headers)
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    async def test_admin_cannot_use_student_endpoint(self, client: AsyncClient, admin_headers):
        response = await client.get("/api/v1/enrollments/my", headers=admin_headers)
        assert response.status_code == 403
