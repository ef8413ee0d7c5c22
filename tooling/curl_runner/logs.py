import logging
from typing import Optional, Union

from .errors import sanitize_command
from .settings import RunnerSettings


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PACKAGE_LOGGER = "tooling.curl_runner"


class RedactingFilter(logging.Filter):
    """Last line of defence: scrub credentials from fully formatted messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except Exception:
            return True
        cleaned = sanitize_command(msg)
        if cleaned != msg:
            record.msg = cleaned
            record.args = None
        return True


def attach_logger(
    logger: logging.Logger,
    *,
    level: int = logging.DEBUG,
    formatter: Optional[logging.Formatter] = None,
    handler: Optional[logging.Handler] = None,
) -> logging.Handler:
    """
    Attach a handler (stderr by default) to `logger`.

    If formatter is None, we reuse the first existing handler formatter,
    falling back to DEFAULT_FORMAT.
    """
    h = handler or logging.StreamHandler()
    h.setLevel(level)
    h.addFilter(RedactingFilter())

    if formatter is not None:
        h.setFormatter(formatter)
    elif logger.handlers and getattr(logger.handlers[0], "formatter", None) is not None:
        h.setFormatter(logger.handlers[0].formatter)
    else:
        h.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    logger.addHandler(h)
    return h


def configure_logging(
    level: Union[int, str, None] = None,
    *,
    settings: Optional[RunnerSettings] = None,
) -> Optional[logging.Handler]:
    """
    Opt-in console logging for the package logger.
    Without an explicit level, settings.log_level is used; if that is unset
    too, logging is left alone and None is returned.
    """
    if level is None and settings is not None:
        level = settings.log_level
    if level is None:
        return None
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown log level {name!r}")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    return attach_logger(logger, level=level)
