import logging

from comms_dispatch.logger import DeliveryActivityLog, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    logger = get_logger()
    assert isinstance(logger, logging.Logger)
    assert logger.name == "CommsDispatch"
    assert get_logger("CommsDispatch.queue").parent is logger


def test_delivery_activity_is_silent_when_disabled(caplog):
    activity = DeliveryActivityLog(enabled=False)
    with caplog.at_level(logging.INFO, logger="CommsDispatch.activity"):
        activity.attempt("email", "c1", ["ada@example.com"], "mailer", 0)
        activity.sent("c1", "mailer", "pm-1")
    assert caplog.records == []


def test_delivery_activity_trail(caplog):
    activity = DeliveryActivityLog(enabled=True)
    with caplog.at_level(logging.INFO, logger="CommsDispatch.activity"):
        activity.attempt("sms", "c1", ["+254712345678"], "at", 1)
        activity.deferred("c1", "at", 120)
        activity.failed("c1", "at", RuntimeError("busy"), retry_at=300)
        activity.failed("c1", "at", RuntimeError("gone"))
        activity.sent("c1", "at", "ATXid_1")

    messages = [record.getMessage() for record in caplog.records]
    assert messages[0] == "Attempting sms delivery of c1 to +254712345678 via at (attempt 1)"
    assert "deferred until 120" in messages[1]
    assert messages[2].endswith("(next attempt at 300)")
    assert messages[3] == "Delivery failed for c1 via at: gone"
    assert "ATXid_1" in messages[4]
