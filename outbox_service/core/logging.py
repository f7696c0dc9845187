import logging
import sys
from typing import Optional
from pythonjsonlogger.json import JsonFormatter

from outbox_service.core.config import settings

# chatty at INFO
NOISY_LOGGERS = ("aio_pika", "aiormq", "sqlalchemy.engine")


class OutboxContextFilter(logging.Filter):
    """Tags records with the service name and, for outbox records, a ``component`` field."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        if record.name.startswith("outbox_service."):
            record.component = record.name.split(".")[1]
        return True


class OutboxLogHandler(logging.StreamHandler):
    pass


def setup_logging(level: Optional[str] = None) -> logging.Handler:
    root = logging.getLogger()
    root.setLevel(level or settings.log_level)

    # lifespan can run more than once per process (tests, reloads)
    for existing in list(root.handlers):
        if isinstance(existing, OutboxLogHandler):
            root.removeHandler(existing)

    handler = OutboxLogHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
    ))
    handler.addFilter(OutboxContextFilter(settings.service_name))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
