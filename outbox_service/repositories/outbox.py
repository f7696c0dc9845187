import inspect
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from outbox_service.core.database import as_utc, utc_now
from outbox_service.core.errors import (
    InvalidArgumentError,
    MessageNotFoundError,
    OutboxError,
    PersistenceError,
)
from outbox_service.models.outbox import OutboxMessage, OutboxMessageStatus, require_text
from outbox_service.schemas.events import AnyOutboxEvent
from outbox_service.schemas.outbox import OutboxMessageRead

logger = logging.getLogger(__name__)

EventHook = Callable[[AnyOutboxEvent], Union[None, Awaitable[None]]]
Transition = Callable[[OutboxMessage, datetime], Optional[AnyOutboxEvent]]
RetryDelay = Callable[[int], float]


class OutboxStore:
    """Persistence gateway for outbox messages.

    The store works on the caller's ``AsyncSession`` and commits it at the end of
    every mutating call. Business rows added to the same session before
    ``save_message``/``save_messages`` therefore commit, or roll back, together
    with the messages.

    Reads never claim rows: two dispatchers polling concurrently can receive the
    same batch, so delivery is at-least-once.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utc_now,
        event_hook: Optional[EventHook] = None,
    ) -> None:
        self.session = session
        self.clock = clock
        self.event_hook = event_hook

    async def save_message(self, message: OutboxMessage) -> OutboxMessage:
        if message is None:
            raise InvalidArgumentError("message must not be None")
        saved = await self.save_messages([message])
        return saved[0]

    async def save_messages(self, messages: Iterable[OutboxMessage]) -> List[OutboxMessage]:
        if messages is None:
            raise InvalidArgumentError("messages must not be None")
        batch = list(messages)
        if not batch:
            raise InvalidArgumentError("messages must not be empty")
        for message in batch:
            self._require_new(message)
        if len({message.id for message in batch}) != len(batch):
            raise InvalidArgumentError("messages contain duplicate ids")

        events = [message.created_event() for message in batch]
        async with self._storage("save_messages"):
            self.session.add_all(batch)
            await self.session.commit()

        logger.debug("Saved outbox messages", extra={"count": len(batch)})
        await self._emit(events)
        return batch

    async def get_unprocessed_messages(
        self, batch_size: int, *, ready_at: Optional[datetime] = None
    ) -> List[OutboxMessageRead]:
        """Oldest pending or retrying messages, up to ``batch_size``.

        With ``ready_at``, messages whose ``next_attempt_on`` lies after it are
        left out, so rows waiting out a backoff never crowd due ones out of the
        batch.
        """
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise InvalidArgumentError(f"batch_size must be a positive integer, got {batch_size!r}")
        if ready_at is not None and not isinstance(ready_at, datetime):
            raise InvalidArgumentError("ready_at must be a datetime")

        query = select(OutboxMessage).where(OutboxMessage.status.in_(OutboxMessageStatus.deliverable()))
        if ready_at is not None:
            query = query.where(
                or_(OutboxMessage.next_attempt_on.is_(None), OutboxMessage.next_attempt_on <= as_utc(ready_at))
            )

        async with self._storage("get_unprocessed_messages"):
            result = await self.session.execute(
                query
                .order_by(OutboxMessage.occurred_on.asc(), OutboxMessage.id.asc())
                .limit(batch_size)
                .execution_options(populate_existing=True)
            )
            messages = result.scalars().all()
            return [OutboxMessageRead.model_validate(message) for message in messages]

    async def get_message(self, message_id: uuid.UUID) -> Optional[OutboxMessageRead]:
        message_id = self._coerce_id(message_id)
        async with self._storage("get_message"):
            message = await self._load(message_id)
            return OutboxMessageRead.model_validate(message) if message else None

    async def mark_message_as_processed(self, message_id: uuid.UUID) -> OutboxMessageRead:
        return await self._transition(
            "mark_message_as_processed",
            message_id,
            lambda message, now: message.mark_as_processed(now),
        )

    async def mark_message_as_failed(
        self,
        message_id: uuid.UUID,
        error: str,
        *,
        retry_delay: Optional[RetryDelay] = None,
    ) -> OutboxMessageRead:
        """Record a failed delivery attempt.

        ``retry_delay`` maps the new retry count to seconds; when given, a
        retrying message gets ``next_attempt_on`` set and is held back from
        ``get_unprocessed_messages(ready_at=...)`` until then.
        """
        require_text(error, "error")
        message_id = self._coerce_id(message_id)
        now = self.clock()

        async with self._storage("mark_message_as_failed"):
            # the UPDATE runs first so it takes the write lock before the row is read back
            result = await self.session.execute(OutboxMessage.record_failure(message_id, error, now))
            message = await self._load(message_id)
            if message is None:
                await self.session.rollback()
                raise MessageNotFoundError(message_id)

            applied = result.rowcount > 0
            if applied and retry_delay is not None and message.status_enum is OutboxMessageStatus.RETRYING:
                message.next_attempt_on = now + timedelta(seconds=retry_delay(message.retry_count))

            event = message.failure_event(now) if applied else None
            snapshot = OutboxMessageRead.model_validate(message)
            await self.session.commit()

        await self._report("mark_message_as_failed", snapshot, event)
        return snapshot

    async def mark_message_as_dead(
        self, message_id: uuid.UUID, error: Optional[str] = None
    ) -> OutboxMessageRead:
        if error is not None:
            require_text(error, "error")
        return await self._transition(
            "mark_message_as_dead",
            message_id,
            lambda message, now: message.mark_as_dead(now, error),
        )

    async def update_message_content(self, message_id: uuid.UUID, content: str) -> OutboxMessageRead:
        require_text(content, "content")
        return await self._transition(
            "update_message_content",
            message_id,
            lambda message, now: message.update_content(content, now),
        )

    async def delete_processed_messages_older_than(self, cutoff: datetime) -> int:
        if not isinstance(cutoff, datetime):
            raise InvalidArgumentError("cutoff must be a datetime")
        cutoff = as_utc(cutoff)

        async with self._storage("delete_processed_messages_older_than"):
            result = await self.session.execute(
                delete(OutboxMessage)
                .where(OutboxMessage.status == OutboxMessageStatus.PROCESSED.value)
                .where(OutboxMessage.processed_on < cutoff)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()

        deleted_count = result.rowcount or 0
        if deleted_count > 0:
            logger.info(
                "Deleted processed outbox messages",
                extra={"count": deleted_count, "cutoff": cutoff.isoformat()},
            )
        return deleted_count

    async def count_by_status(self) -> dict[OutboxMessageStatus, int]:
        async with self._storage("count_by_status"):
            result = await self.session.execute(
                select(OutboxMessage.status, func.count()).group_by(OutboxMessage.status)
            )
            counts = {status: 0 for status in OutboxMessageStatus}
            for status, count in result.all():
                counts[OutboxMessageStatus(status)] = count
            return counts

    async def _transition(
        self, operation: str, message_id: uuid.UUID, apply: Transition
    ) -> OutboxMessageRead:
        message_id = self._coerce_id(message_id)

        async with self._storage(operation):
            locked = await self._lock(message_id)
            message = await self._load(message_id) if locked else None
            if message is None:
                await self.session.rollback()
                raise MessageNotFoundError(message_id)

            try:
                event = apply(message, self.clock())
            except OutboxError:
                await self.session.rollback()
                raise

            snapshot = OutboxMessageRead.model_validate(message)
            await self.session.commit()

        await self._report(operation, snapshot, event)
        return snapshot

    async def _lock(self, message_id: uuid.UUID) -> bool:
        # a no-op write takes the row lock on PostgreSQL and the write lock on
        # SQLite, where SELECT ... FOR UPDATE is not supported
        result = await self.session.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .values(status=OutboxMessage.status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _load(self, message_id: uuid.UUID) -> Optional[OutboxMessage]:
        result = await self.session.execute(
            select(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _report(self, operation: str, snapshot: OutboxMessageRead, event: Optional[AnyOutboxEvent]) -> None:
        if event is None:
            logger.info(
                "Outbox message is terminal, status change ignored",
                extra={"message_id": str(snapshot.id), "operation": operation, "status": snapshot.status.value},
            )
            return
        await self._emit([event])

    @asynccontextmanager
    async def _storage(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(
                f"Outbox storage failure during {operation}: {e}",
                extra={"operation": operation},
                exc_info=True,
            )
            await self.session.rollback()
            raise PersistenceError(operation, type(e).__name__) from e

    async def _emit(self, events: Iterable[AnyOutboxEvent]) -> None:
        for event in events:
            logger.info(
                "Outbox lifecycle event",
                extra={"event": event.name, "message_id": str(event.message_id)},
            )
            if self.event_hook is None:
                continue
            try:
                result = self.event_hook(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Outbox event hook failed", extra={"event": event.name})

    @staticmethod
    def _coerce_id(message_id: Union[uuid.UUID, str]) -> uuid.UUID:
        if isinstance(message_id, uuid.UUID):
            return message_id
        if isinstance(message_id, str):
            try:
                return uuid.UUID(message_id)
            except ValueError:
                pass
        raise InvalidArgumentError(f"message_id must be a UUID, got {message_id!r}")

    @staticmethod
    def _require_new(message: OutboxMessage) -> None:
        if not isinstance(message, OutboxMessage):
            raise InvalidArgumentError(f"expected OutboxMessage, got {type(message).__name__}")
        if sa_inspect(message).has_identity:
            raise InvalidArgumentError(f"outbox message {message.id} is already persisted")
        if message.status_enum is not OutboxMessageStatus.PENDING or message.retry_count != 0:
            raise InvalidArgumentError(f"outbox message {message.id} must be pending to be saved")
