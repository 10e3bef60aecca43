import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.jwt import create_access_token, decode_token
from src.core.auth.models import UserRole
from src.core.auth.password import verify_password
from src.core.auth.service import AuthService
from src.core.exceptions import AuthenticationError, DuplicateError
from tests.factories import auth_headers, create_operator


class TestAuthService:
    """Tests for AuthService."""

    async def test_create_user(self, db_session: AsyncSession):
        """Test creating a new operator."""
        auth_service = AuthService(db_session)

        user = await auth_service.create_user(
            email="test@school.com",
            password="Password123",
            full_name="Test User",
            role=UserRole.ADMIN,
        )

        assert user.id is not None
        assert user.email == "test@school.com"
        assert user.role == "Admin"
        assert user.is_active is True
        assert user.password_hash != "Password123"
        assert verify_password("Password123", user.password_hash)

    async def test_create_user_without_password(self, db_session: AsyncSession):
        """Operators without a password exist for attribution only."""
        user = await AuthService(db_session).create_user(
            email="staff@school.com",
            password=None,
            full_name="Staff",
            role=UserRole.ACCOUNTANT,
        )
        assert user.can_login is False
        assert verify_password("anything", user.password_hash) is False

    async def test_create_user_duplicate_email(self, db_session: AsyncSession):
        """Test that duplicate email raises error."""
        auth_service = AuthService(db_session)

        await auth_service.create_user(
            email="test@school.com",
            password="Password123",
            full_name="Test User",
            role=UserRole.ADMIN,
        )

        with pytest.raises(DuplicateError) as exc_info:
            await auth_service.create_user(
                email="test@school.com",
                password="AnotherPass123",
                full_name="Another User",
                role=UserRole.CASHIER,
            )

        assert "already exists" in str(exc_info.value)


class TestTokens:
    """Tests for JWT access tokens."""

    def test_token_round_trip(self):
        token = create_access_token(42, UserRole.CASHIER.value)
        payload = decode_token(token)
        assert payload["sub"] == "42"
        assert payload["role"] == "Cashier"

    def test_wrong_token_type(self):
        token = create_access_token(42, UserRole.CASHIER.value)
        with pytest.raises(AuthenticationError):
            decode_token(token, token_type="refresh")

    def test_garbage_token(self):
        with pytest.raises(AuthenticationError):
            decode_token("not-a-token")


class TestAuthEndpoints:
    """Tests for authentication on ledger endpoints."""

    async def test_missing_header(self, client: AsyncClient):
        response = await client.get("/api/v1/tuitions")
        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_authorized(self, client: AsyncClient, db_session: AsyncSession):
        user = await create_operator(db_session)
        response = await client.get("/api/v1/tuitions", headers=auth_headers(user))
        assert response.status_code == 200

    async def test_role_required(self, client: AsyncClient, db_session: AsyncSession):
        """Accountants can read but not post payments."""
        user = await create_operator(db_session, role=UserRole.ACCOUNTANT)
        response = await client.post(
            "/api/v1/payments",
            headers=auth_headers(user),
            json={"tuition_id": 1, "amount": "1000.00"},
        )
        assert response.status_code == 403
