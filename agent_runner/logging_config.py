import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import config
from .runtime.logging_context import current_log_context, merge_prefixes


class LogContextFilter(logging.Filter):
    """Expose the active run prefix to service log formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_log_context()
        prefix = merge_prefixes(context.main_prefix, context.prefix)
        record.log_prefix = f"{prefix} " if prefix else ""
        return True


def setup_logging() -> None:
    """Configure service logging and write logs to file."""
    level = getattr(logging, str(config.LOGGING.LEVEL).upper(), logging.INFO)

    log_file = Path(config.LOGGING.FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(log_prefix)s%(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    context_filter = LogContextFilter()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(context_filter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=int(config.LOGGING.MAX_BYTES),
        backupCount=int(config.LOGGING.BACKUP_COUNT),
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(context_filter)

    root_logger.setLevel(level)
    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)
