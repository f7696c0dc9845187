"""Error taxonomy for outbox operations.

Callers can rely on these signals from the store:

- ``InvalidArgumentError``: the input was rejected before touching storage.
- ``MessageNotFoundError``: the referenced message id does not exist.
- ``InvalidStateError``: the message is terminal and cannot be changed.
- ``PersistenceError``: the storage engine failed; the session was rolled back.
"""
import uuid
from typing import Optional


class OutboxError(Exception):
    """Base class for every error raised by the outbox package."""


class InvalidArgumentError(OutboxError, ValueError):
    pass


class InvalidStateError(OutboxError):
    """The message is in a state that does not permit the requested change."""

    def __init__(self, message_id: uuid.UUID, status: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} outbox message {message_id} in status '{status}'")
        self.message_id = message_id
        self.status = status
        self.operation = operation


class MessageNotFoundError(OutboxError, LookupError):
    def __init__(self, message_id: uuid.UUID) -> None:
        super().__init__(f"Outbox message {message_id} not found")
        self.message_id = message_id


class PersistenceError(OutboxError):
    def __init__(self, operation: str, detail: Optional[str] = None) -> None:
        message = f"Outbox storage failure during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
