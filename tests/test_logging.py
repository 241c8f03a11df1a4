import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from prescription_service.app.logging_config import ROOT_LOGGER, setup_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    saved = logger.handlers[:]
    logger.handlers.clear()
    yield logger
    logger.handlers[:] = saved


def test_json_lines_carry_extra_fields(package_logger):
    logger = setup_logging(level="debug", as_json=True)

    formatter = logger.handlers[0].formatter
    assert isinstance(formatter, JsonFormatter)
    assert logger.level == logging.DEBUG

    record = logging.getLogger(f"{ROOT_LOGGER}.app.services").makeRecord(
        "prescription_service.app.services",
        logging.INFO,
        __file__,
        1,
        "request completed",
        None,
        None,
        extra={"request_id": "abc"},
    )
    line = json.loads(formatter.format(record))
    assert line["message"] == "request completed"
    assert line["request_id"] == "abc"
    assert line["levelname"] == "INFO"


def test_plain_text_when_json_disabled(package_logger):
    logger = setup_logging(level="info", as_json=False)
    assert not isinstance(logger.handlers[0].formatter, JsonFormatter)
