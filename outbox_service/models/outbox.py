import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import CheckConstraint, String, Text, Integer, Index, Uuid, Update, case, update
from sqlalchemy.orm import Mapped, mapped_column

from outbox_service.core.database import Base, UTCDateTime, as_utc, utc_now
from outbox_service.core.errors import InvalidArgumentError, InvalidStateError
from outbox_service.schemas.events import (
    OutboxMessageContentUpdatedEvent,
    OutboxMessageCreatedEvent,
    OutboxMessageFailedEvent,
    OutboxMessageProcessedEvent,
    OutboxMessageRetryingEvent,
)


class OutboxMessageStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OutboxMessageStatus.PROCESSED, OutboxMessageStatus.FAILED)

    @classmethod
    def deliverable(cls) -> tuple[str, ...]:
        return (cls.PENDING.value, cls.RETRYING.value)


def require_text(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{name} must be a non-empty string")
    return value


class OutboxMessage(Base):
    """A message that must be delivered once the surrounding transaction commits.

    Status changes go through the ``mark_as_*`` methods, which enforce the
    lifecycle::

        pending --> retrying --> processed
           |           |
           +-----------+------> failed

    ``processed`` and ``failed`` are terminal. Each method returns the lifecycle
    event for the transition it applied, or ``None`` when the call was a no-op.
    """

    __tablename__ = "outbox_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    message_type: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_on: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OutboxMessageStatus.PENDING.value)
    processed_on: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    last_modified_on: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    next_attempt_on: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    aggregate_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    aggregate_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_outbox_messages_retry_count"),
        CheckConstraint(
            "(status = 'processed') = (processed_on IS NOT NULL)",
            name="ck_outbox_messages_processed_on",
        ),
        Index("ix_outbox_messages_status_occurred_on", "status", "occurred_on"),
        Index("ix_outbox_messages_status_processed_on", "status", "processed_on"),
        Index("ix_outbox_messages_status_next_attempt_on", "status", "next_attempt_on"),
    )

    def __init__(
        self,
        message_type: str,
        content: str,
        *,
        occurred_on: Optional[datetime] = None,
        id: Optional[uuid.UUID] = None,
        aggregate_type: Optional[str] = None,
        aggregate_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        if occurred_on is not None and not isinstance(occurred_on, datetime):
            raise InvalidArgumentError("occurred_on must be a datetime")
        if id is not None and not isinstance(id, uuid.UUID):
            raise InvalidArgumentError("id must be a UUID")

        super().__init__(
            id=id or uuid.uuid4(),
            message_type=require_text(message_type, "message_type"),
            content=require_text(content, "content"),
            occurred_on=as_utc(occurred_on) if occurred_on else utc_now(),
            status=OutboxMessageStatus.PENDING.value,
            processed_on=None,
            retry_count=0,
            last_error=None,
            last_modified_on=None,
            next_attempt_on=None,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            correlation_id=correlation_id,
        )

    @property
    def status_enum(self) -> OutboxMessageStatus:
        return OutboxMessageStatus(self.status)

    @property
    def is_processed(self) -> bool:
        return self.status_enum is OutboxMessageStatus.PROCESSED

    def created_event(self) -> OutboxMessageCreatedEvent:
        return OutboxMessageCreatedEvent(
            message_id=self.id,
            occurred_at=self.occurred_on,
            message_type=self.message_type,
        )

    def mark_as_processed(self, now: datetime) -> Optional[OutboxMessageProcessedEvent]:
        if self.status_enum.is_terminal:
            return None

        self.status = OutboxMessageStatus.PROCESSED.value
        self.processed_on = now
        self.last_error = None
        self.next_attempt_on = None
        self.last_modified_on = now
        return OutboxMessageProcessedEvent(message_id=self.id, occurred_at=now, processed_on=now)

    def mark_as_failed(
        self, error: str, now: datetime
    ) -> OutboxMessageRetryingEvent | OutboxMessageFailedEvent | None:
        require_text(error, "error")
        if self.is_processed:
            return None

        self.retry_count += 1
        self.last_error = error
        self.last_modified_on = now
        # failed is terminal: the attempt is recorded but the status stays put
        if self.status_enum is not OutboxMessageStatus.FAILED:
            self.status = OutboxMessageStatus.RETRYING.value
        return self.failure_event(now)

    @classmethod
    def record_failure(cls, message_id: uuid.UUID, error: str, now: datetime) -> Update:
        """Single-statement form of ``mark_as_failed`` for rows shared between sessions.

        The increment happens inside the database, so concurrent reports on the
        same row never overwrite each other's ``retry_count``.
        """
        return (
            update(cls)
            .where(cls.id == message_id)
            .where(cls.status != OutboxMessageStatus.PROCESSED.value)
            .values(
                retry_count=cls.retry_count + 1,
                last_error=error,
                last_modified_on=now,
                status=case(
                    (cls.status == OutboxMessageStatus.FAILED.value, OutboxMessageStatus.FAILED.value),
                    else_=OutboxMessageStatus.RETRYING.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )

    def failure_event(self, now: datetime) -> OutboxMessageRetryingEvent | OutboxMessageFailedEvent:
        if self.status_enum is OutboxMessageStatus.FAILED:
            return OutboxMessageFailedEvent(
                message_id=self.id, occurred_at=now, retry_count=self.retry_count, error=self.last_error
            )
        return OutboxMessageRetryingEvent(
            message_id=self.id, occurred_at=now, retry_count=self.retry_count, error=self.last_error
        )

    def mark_as_dead(self, now: datetime, error: Optional[str] = None) -> Optional[OutboxMessageFailedEvent]:
        if error is not None:
            require_text(error, "error")
        if self.status_enum.is_terminal:
            return None

        self.status = OutboxMessageStatus.FAILED.value
        if error is not None:
            self.last_error = error
        self.last_modified_on = now
        return OutboxMessageFailedEvent(
            message_id=self.id, occurred_at=now, retry_count=self.retry_count, error=self.last_error
        )

    def update_content(self, content: str, now: datetime) -> OutboxMessageContentUpdatedEvent:
        require_text(content, "content")
        if self.status_enum.is_terminal:
            raise InvalidStateError(self.id, self.status, "update content of")

        self.content = content
        self.last_modified_on = now
        return OutboxMessageContentUpdatedEvent(message_id=self.id, occurred_at=now)

    def __repr__(self) -> str:
        return (
            f"OutboxMessage(id={self.id}, message_type={self.message_type!r}, "
            f"status={self.status}, retry_count={self.retry_count})"
        )
