from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.clock import utcnow
from src.core.documents.models import DocumentSequence

# Prefixes in use
PAYMENT_PREFIX = "PAY"
PAYMENT_REQUEST_PREFIX = "PRQ"


class DocumentNumberGenerator:
    """
    Generates sequential document numbers in format: PREFIX-YYYY-NNNNNN

    Examples:
        PAY-2026-000042  (payment record)
        PRQ-2026-000007  (payment request reference)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate(self, prefix: str, year: int | None = None) -> str:
        """
        Generate next document number for given prefix and year.

        The sequence row is locked FOR UPDATE so concurrent ledger writes never
        share a number.
        """
        if year is None:
            year = utcnow().year

        stmt = (
            select(DocumentSequence)
            .where(DocumentSequence.prefix == prefix, DocumentSequence.year == year)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        sequence = result.scalar_one_or_none()

        if sequence is None:
            sequence = DocumentSequence(prefix=prefix, year=year, last_number=0)
            self.session.add(sequence)
            await self.session.flush()

            # Re-fetch with lock
            result = await self.session.execute(stmt)
            sequence = result.scalar_one()

        number = sequence.issue()
        await self.session.flush()
        return number


async def get_document_number(session: AsyncSession, prefix: str, year: int | None = None) -> str:
    """Convenience function to generate a document number."""
    generator = DocumentNumberGenerator(session)
    return await generator.generate(prefix, year)
