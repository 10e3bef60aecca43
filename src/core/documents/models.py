from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base


class DocumentSequence(Base):
    """
    Counter behind payment numbers and payment request references.

    One row per (prefix, year); numbering restarts at 1 each year. Callers
    must hold the row lock before calling `issue`.
    """

    __tablename__ = "document_sequences"

    NUMBER_WIDTH = 6

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("prefix", "year", name="uq_document_sequence_prefix_year"),
    )

    def format(self, number: int) -> str:
        return f"{self.prefix}-{self.year}-{number:0{self.NUMBER_WIDTH}d}"

    def issue(self) -> str:
        """Advance the counter and return the new number."""
        self.last_number = (self.last_number or 0) + 1
        return self.format(self.last_number)
