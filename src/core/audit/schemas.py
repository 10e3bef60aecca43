from datetime import datetime
from typing import Any

from src.shared.schemas.base import BaseSchema


class AuditEntryResponse(BaseSchema):
    id: int
    action: str
    actor: str
    entity_identifier: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    comment: str | None
    created_at: datetime
