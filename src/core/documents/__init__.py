from src.core.documents.models import DocumentSequence
from src.core.documents.number_generator import (
    PAYMENT_PREFIX,
    PAYMENT_REQUEST_PREFIX,
    DocumentNumberGenerator,
    get_document_number,
)

__all__ = [
    "DocumentSequence",
    "DocumentNumberGenerator",
    "get_document_number",
    "PAYMENT_PREFIX",
    "PAYMENT_REQUEST_PREFIX",
]
