import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from outbox_service.models.outbox import OutboxMessageStatus


class OutboxMessageRead(BaseModel):
    """Detached, read-only view of an outbox row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    message_type: str
    content: str
    occurred_on: datetime
    status: OutboxMessageStatus
    processed_on: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    last_modified_on: datetime | None = None
    next_attempt_on: datetime | None = None
    aggregate_type: str | None = None
    aggregate_id: str | None = None
    correlation_id: str | None = None

    def transport_headers(self) -> dict[str, str]:
        headers = {
            "x-message-id": str(self.id),
            "x-message-type": self.message_type,
            "x-occurred-on": self.occurred_on.isoformat(),
        }
        if self.aggregate_type:
            headers["x-aggregate-type"] = self.aggregate_type
        if self.aggregate_id:
            headers["x-aggregate-id"] = self.aggregate_id
        if self.correlation_id:
            headers["x-correlation-id"] = self.correlation_id
        return headers


class OutboxHealth(BaseModel):
    pending: int
    retrying: int
    processed: int
    failed: int
