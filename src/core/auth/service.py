from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import User, UserRole
from src.core.auth.password import hash_password
from src.core.audit import AuditAction, create_audit_log
from src.core.exceptions import DuplicateError


class AuthService:
    """Operator lookup used by the ledger to attribute actions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: int) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_user(
        self,
        email: str,
        password: str | None,
        full_name: str,
        role: UserRole,
        phone: str | None = None,
        created_by_id: int | None = None,
    ) -> User:
        """Create an operator account (password optional for non-login staff)."""
        existing = await self.get_user_by_email(email)
        if existing:
            raise DuplicateError("User", "email", email)

        user = User(
            email=email,
            password_hash=hash_password(password) if password else None,
            full_name=full_name,
            phone=phone,
            role=role.value,
            is_active=True,
        )

        self.session.add(user)
        await self.session.flush()

        await create_audit_log(
            session=self.session,
            action=AuditAction.CREATE,
            entity_type="User",
            entity_id=user.id,
            user_id=created_by_id,
            entity_identifier=user.email,
            new_values={"email": user.email, "role": user.role, "full_name": user.full_name},
        )

        return user
