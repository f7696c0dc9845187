import json
import logging

import pytest

from outbox_service.core.logging import OutboxLogHandler, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_installs_a_single_json_handler(root_logger):
    setup_logging("DEBUG")
    setup_logging("DEBUG")

    installed = [h for h in root_logger.handlers if isinstance(h, OutboxLogHandler)]
    assert len(installed) == 1
    assert root_logger.level == logging.DEBUG
    assert logging.getLogger("aiormq").level == logging.WARNING


def test_outbox_records_carry_service_and_component(root_logger):
    handler = setup_logging("INFO")
    record = logging.LogRecord(
        "outbox_service.repositories.outbox", logging.INFO, __file__, 1, "Outbox lifecycle event", None, None
    )
    record.message_id = "m-1"

    assert handler.filter(record)
    payload = json.loads(handler.format(record))

    assert payload["message"] == "Outbox lifecycle event"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "outbox_service.repositories.outbox"
    assert payload["service"] == "outbox-service"
    assert payload["component"] == "repositories"
    assert payload["message_id"] == "m-1"
