import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from outbox_service.core.config import Settings
from outbox_service.core.database import utc_now
from outbox_service.core.errors import MessageNotFoundError
from outbox_service.models.outbox import OutboxMessageStatus
from outbox_service.repositories.outbox import OutboxStore
from outbox_service.schemas.outbox import OutboxMessageRead
from outbox_service.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: dict[str, str],
    ) -> None: ...


class OutboxDispatcher:
    """Polls the outbox and delivers unprocessed messages through a publisher.

    Every attempt ends with an outcome written back to the store before the
    next message is touched, so a crash never loses a delivery result. Delivery
    itself is at-least-once.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        publisher: Publisher,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 100,
        poll_interval: float = 5.0,
        retention: timedelta = timedelta(hours=24),
        cleanup_interval: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_maker = session_maker
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[float] = None

    @classmethod
    def from_settings(
        cls,
        session_maker: async_sessionmaker[AsyncSession],
        publisher: Publisher,
        config: Settings,
    ) -> "OutboxDispatcher":
        return cls(
            session_maker,
            publisher,
            retry_policy=RetryPolicy.from_settings(config),
            batch_size=config.outbox_batch_size,
            poll_interval=config.outbox_poll_interval,
            retention=timedelta(hours=config.outbox_retention_hours),
            cleanup_interval=config.outbox_cleanup_interval,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("OutboxDispatcher is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._process_loop())
        logger.info(
            "OutboxDispatcher started",
            extra={
                "batch_size": self.batch_size,
                "poll_interval": self.poll_interval,
                "max_retries": self.retry_policy.max_retries,
            },
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("OutboxDispatcher stopped")

    async def _process_loop(self) -> None:
        while self._running:
            published = 0
            try:
                published = await self.process_batch()
                await self._cleanup_if_due()
            except Exception as e:
                logger.error(f"Error in outbox dispatcher loop: {e}", exc_info=True)

            # a full batch means more work is probably waiting
            await asyncio.sleep(0 if published >= self.batch_size else self.poll_interval)

    async def process_batch(self) -> int:
        async with self.session_maker() as session:
            store = OutboxStore(session, clock=self.clock)
            messages = await store.get_unprocessed_messages(self.batch_size, ready_at=self.clock())

            if not messages:
                return 0

            logger.debug(f"Processing {len(messages)} outbox messages")

            published = 0
            for message in messages:
                if await self._dispatch(message, store):
                    published += 1
            return published

    async def _dispatch(self, message: OutboxMessageRead, store: OutboxStore) -> bool:
        if self.retry_policy.is_exhausted(message.retry_count):
            await self._give_up(message, store)
            return False

        try:
            await self.publisher.publish(
                message.message_type,
                message.content.encode(),
                message_id=str(message.id),
                headers=message.transport_headers(),
            )
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            await self._record_failure(message, error_msg, store)
            return False

        try:
            await store.mark_message_as_processed(message.id)
        except MessageNotFoundError:
            logger.warning(
                f"Outbox message {message.id} was published but no longer exists, dropping report"
            )
            return True

        logger.info(
            f"Successfully published outbox message {message.id} "
            f"(type: {message.message_type}, attempt: {message.retry_count + 1})"
        )
        return True

    async def _record_failure(self, message: OutboxMessageRead, error_msg: str, store: OutboxStore) -> None:
        try:
            updated = await store.mark_message_as_failed(
                message.id, error_msg, retry_delay=self.retry_policy.next_delay
            )
        except MessageNotFoundError:
            logger.warning(f"Outbox message {message.id} disappeared before its failure was recorded")
            return

        logger.error(
            f"Failed to publish outbox message {message.id} "
            f"(retry {updated.retry_count}/{self.retry_policy.max_retries}): {error_msg}"
        )
        if updated.status is OutboxMessageStatus.RETRYING and self.retry_policy.is_exhausted(updated.retry_count):
            await self._give_up(updated, store)

    async def _give_up(self, message: OutboxMessageRead, store: OutboxStore) -> None:
        try:
            await store.mark_message_as_dead(message.id)
        except MessageNotFoundError:
            return
        logger.warning(
            f"Outbox message {message.id} exceeded max retries ({self.retry_policy.max_retries}), marked as failed",
            extra={"message_id": str(message.id), "retry_count": message.retry_count},
        )

    async def cleanup_old_messages(self) -> int:
        cutoff = self.clock() - self.retention
        async with self.session_maker() as session:
            store = OutboxStore(session, clock=self.clock)
            deleted_count = await store.delete_processed_messages_older_than(cutoff)
        if deleted_count > 0:
            logger.info(f"Cleaned up {deleted_count} old outbox messages")
        return deleted_count

    async def _cleanup_if_due(self) -> None:
        now = asyncio.get_running_loop().time()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        await self.cleanup_old_messages()
