import uuid
from datetime import datetime
from typing import Literal, Union
from pydantic import BaseModel, ConfigDict


class OutboxLifecycleEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: uuid.UUID
    occurred_at: datetime


class OutboxMessageCreatedEvent(OutboxLifecycleEvent):
    name: Literal["outbox.message.created"] = "outbox.message.created"
    message_type: str


class OutboxMessageProcessedEvent(OutboxLifecycleEvent):
    name: Literal["outbox.message.processed"] = "outbox.message.processed"
    processed_on: datetime


class OutboxMessageRetryingEvent(OutboxLifecycleEvent):
    name: Literal["outbox.message.retrying"] = "outbox.message.retrying"
    retry_count: int
    error: str


class OutboxMessageFailedEvent(OutboxLifecycleEvent):
    name: Literal["outbox.message.failed"] = "outbox.message.failed"
    retry_count: int
    error: str | None = None


class OutboxMessageContentUpdatedEvent(OutboxLifecycleEvent):
    name: Literal["outbox.message.content_updated"] = "outbox.message.content_updated"


AnyOutboxEvent = Union[
    OutboxMessageCreatedEvent,
    OutboxMessageProcessedEvent,
    OutboxMessageRetryingEvent,
    OutboxMessageFailedEvent,
    OutboxMessageContentUpdatedEvent,
]
