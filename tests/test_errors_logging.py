"""Tests for the error taxonomy, the logging boundary decorator and log formatting."""

import io
import logging
from uuid import uuid4

import pytest

from atlas_agents.errors import (
    DependencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    logged_operation,
)
from atlas_agents.logging_utils import (
    ROOT_LOGGER_NAME,
    Color,
    StructuredFormatter,
    colored,
    format_context,
    get_logger,
    setup_logging,
)


class Estimator:
    @logged_operation("estimate", context=("bid_id",))
    async def estimate(self, bid_id, amount):
        if amount < 0:
            raise ValidationError("amount", amount, "must be non-negative")
        return amount * 2

    @logged_operation("estimate batch")
    async def estimate_batch(self, bid_id, amounts):
        return [await self.estimate(bid_id, amount) for amount in amounts]

    @logged_operation("round")
    def round_total(self, total):
        return round(total)


def test_error_messages_and_context():
    agent_id = uuid4()

    not_found = NotFoundError("agent", agent_id)
    assert str(not_found) == f"Agent not found: {agent_id}"
    assert not_found.context == {"entity": "agent", "entity_id": str(agent_id)}

    invalid = InvalidStateError(entity_id=agent_id, current="DORMANT", attempted="pause")
    assert str(invalid) == f"Cannot pause agent {agent_id} from status: DORMANT"

    validation = ValidationError("priority", 11, "must be between 1 and 10")
    assert isinstance(validation, ValueError)
    assert validation.field == "priority"

    cause = OSError("socket closed")
    dependency = DependencyError("insert_task", cause)
    assert dependency.cause is cause
    assert "insert_task" in str(dependency)


@pytest.mark.asyncio
async def test_logged_operation_logs_then_reraises(caplog):
    caplog.set_level(logging.DEBUG, logger=ROOT_LOGGER_NAME)
    estimator = Estimator()

    with pytest.raises(ValidationError):
        await estimator.estimate("bid-7", -1)

    failures = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(failures) == 1
    record = failures[0]
    assert record.getMessage() == "Error in estimate"
    assert record.context["bid_id"] == "bid-7"
    assert "amount" not in record.context
    assert record.context["error_type"] == "ValidationError"


@pytest.mark.asyncio
async def test_nested_operations_log_a_failure_once(caplog):
    caplog.set_level(logging.DEBUG, logger=ROOT_LOGGER_NAME)
    estimator = Estimator()

    with pytest.raises(ValidationError):
        await estimator.estimate_batch("bid-9", [3, -1])

    failures = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.getMessage() for r in failures] == ["Error in estimate"]


@pytest.mark.asyncio
async def test_service_failure_is_logged_once(caplog, orchestrator):
    caplog.set_level(logging.DEBUG, logger=ROOT_LOGGER_NAME)

    with pytest.raises(NotFoundError):
        await orchestrator.pause_agent(uuid4())

    failures = [r for r in caplog.records if r.getMessage().startswith("Error in")]
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_logged_operation_success_path(caplog):
    caplog.set_level(logging.DEBUG, logger=ROOT_LOGGER_NAME)
    estimator = Estimator()

    assert await estimator.estimate("bid-8", 10) == 20
    assert estimator.round_total(4.6) == 5

    messages = [r.getMessage() for r in caplog.records]
    assert "estimate completed" in messages
    assert "round completed" in messages
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_structured_formatter_renders_sorted_context():
    formatter = StructuredFormatter(use_color=False)
    record = logging.LogRecord(
        name="atlas_agents.event_bus",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Event published",
        args=(),
        exc_info=None,
    )
    record.context = {"source": "bids", "event_type": "bid.created"}

    line = formatter.format(record)
    assert "[INFO] atlas_agents.event_bus: Event published" in line
    assert line.endswith("event_type='bid.created' source='bids'")


def test_format_context_and_colors(monkeypatch):
    assert format_context(None) == ""
    assert format_context({"b": 2, "a": 1}) == "a=1 b=2"

    monkeypatch.delenv("ATLAS_NO_COLOR", raising=False)
    assert colored("x", Color.RED) == f"{Color.RED.value}x{Color.RESET.value}"

    monkeypatch.setenv("ATLAS_NO_COLOR", "1")
    assert colored("x", Color.RED, bold=True) == "x"


def test_setup_logging_is_idempotent():
    stream = io.StringIO()
    logger = setup_logging("DEBUG", stream=stream)
    try:
        setup_logging("WARNING", stream=stream)
        installed = [h for h in logger.handlers if getattr(h, "_atlas_handler", False)]
        assert len(installed) == 1
        assert logger.level == logging.WARNING

        get_logger("orchestrator").warning("Agent already active")
        assert "Agent already active" in stream.getvalue()
    finally:
        for handler in [h for h in logger.handlers if getattr(h, "_atlas_handler", False)]:
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)


def test_get_logger_namespacing():
    assert get_logger("event_bus").name == "atlas_agents.event_bus"
    assert get_logger("atlas_agents.orchestrator").name == "atlas_agents.orchestrator"
    assert get_logger(ROOT_LOGGER_NAME).name == ROOT_LOGGER_NAME
