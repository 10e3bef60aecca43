"""Payment record model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.audit.models import SYSTEM_ACTOR
from src.core.database.base import Base, BigIntPK, MoneyType, money_column
from src.core.events import SettlementSource


class Payment(Base):
    """
    Immutable ledger entry: one settlement increment against one tuition.

    Written only by the payment applier (cash counter, online settlement,
    scholarship auto-settlement) and never updated afterwards. recorded_by_id
    is NULL when the system itself made the entry.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    payment_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )

    tuition_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tuitions.id"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("students.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    # Scholarship total in force when the entry was made
    scholarship_amount: Mapped[Decimal] = money_column()

    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SettlementSource.MANUAL.value, index=True
    )
    payment_request_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("payment_requests.id"), nullable=True, index=True
    )

    recorded_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # Relationships
    tuition: Mapped["Tuition"] = relationship("Tuition")
    recorded_by: Mapped["User | None"] = relationship("User")

    @property
    def actor(self) -> str:
        return str(self.recorded_by_id) if self.recorded_by_id is not None else SYSTEM_ACTOR


# Import for type hints
from src.core.auth.models import User
from src.modules.tuitions.models import Tuition
