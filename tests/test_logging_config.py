import logging

from rich.logging import RichHandler

from deploy_pilot.logging_config import ExtrasFormatter, configure_logging


def make_record(message, **extra):
    return logging.makeLogRecord(
        {"name": "deploy_pilot.deployment", "levelno": logging.INFO, "levelname": "INFO", "msg": message, **extra}
    )


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


def test_extra_fields_follow_the_event_name():
    record = make_record("deployment_transition", **{"from": "pending", "to": "pre_flight"})
    assert ExtrasFormatter("%(message)s").format(record) == "deployment_transition from=pending to=pre_flight"


def test_values_with_spaces_are_quoted():
    record = make_record("operation_timed_out", timeout=30.0, reason="chat did not finish")
    text = ExtrasFormatter("%(message)s").format(record)
    assert text == "operation_timed_out timeout=30.0 reason='chat did not finish'"


def test_record_without_extras_is_unchanged():
    record = make_record("provider_ready %s", args=("now",))
    assert ExtrasFormatter("%(message)s").format(record) == "provider_ready now"


def test_logger_extra_reaches_the_formatted_line():
    seen = []

    class Capture(logging.Handler):
        def emit(self, record):
            seen.append(self.format(record))

    logger = logging.getLogger("deploy_pilot.test_logging_config")
    handler = Capture()
    handler.setFormatter(ExtrasFormatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    try:
        logger.warning("retry_scheduled", extra={"attempt": 2, "delay": 5.5, "kind": "rate_limit"})
    finally:
        logger.removeHandler(handler)
        logger.propagate = True
    assert seen == ["retry_scheduled attempt=2 delay=5.5 kind=rate_limit"]


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


def test_configure_logging_installs_one_rich_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging("debug")
        configure_logging("debug")
        added = [h for h in root.handlers if h not in before and isinstance(h, RichHandler)]
        assert len(added) <= 1
        rich = [h for h in root.handlers if isinstance(h, RichHandler)]
        assert isinstance(rich[0].formatter, ExtrasFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
