# logging_config.py
# Root logger setup for the CLI. Library modules only create loggers.
#
# Modules log an event name as the message and the details as `extra`
# fields; ExtrasFormatter renders those fields after the event name:
#
#   deployment_transition from=pending to=pre_flight

import logging

from rich.logging import RichHandler

from deploy_pilot.display import console

_RECORD_ATTRIBUTES = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def _render(value) -> str:
    if isinstance(value, str) and (not value or any(char.isspace() for char in value)):
        return repr(value)
    return str(value)


class ExtrasFormatter(logging.Formatter):
    """Appends a record's `extra` fields to the message as key=value pairs."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        # RichHandler calls formatMessage directly when it renders a traceback
        message = super().formatMessage(record)
        extras = [
            f"{key}={_render(value)}"
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        ]
        return " ".join([message, *extras]) if extras else message


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Install one RichHandler on the root logger. Safe to call repeatedly."""
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    if not any(isinstance(handler, RichHandler) for handler in root.handlers):
        handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)
        handler.setFormatter(ExtrasFormatter("%(message)s", datefmt="[%X]"))
        root.addHandler(handler)

    # third-party request logs are noise at INFO
    for name in ("httpx", "httpcore", "openai"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return root
