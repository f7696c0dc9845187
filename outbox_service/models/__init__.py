from outbox_service.core.database import Base
from outbox_service.models.outbox import OutboxMessage, OutboxMessageStatus

__all__ = ["Base", "OutboxMessage", "OutboxMessageStatus"]
