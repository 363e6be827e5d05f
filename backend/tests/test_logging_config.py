from __future__ import annotations

import io
import logging

import pytest

from goalvault.logging_config import configure_logging, reset_logging


@pytest.fixture
def clean_logging():
    reset_logging()
    yield
    reset_logging()


def test_configure_logging_is_idempotent(clean_logging) -> None:
    stream = io.StringIO()

    configure_logging("debug", stream=stream)
    configure_logging("info", stream=io.StringIO())
    logging.getLogger("goalvault.services.reconciliation").debug("sweep resolved %d patches", 2)

    logger = logging.getLogger("goalvault")
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG
    assert "DEBUG [goalvault.services.reconciliation] sweep resolved 2 patches" in stream.getvalue()


def test_unknown_level_name_falls_back_to_info(clean_logging) -> None:
    configure_logging("chatty", stream=io.StringIO())

    assert logging.getLogger("goalvault").level == logging.INFO
