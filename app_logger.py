import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "timetrack"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(filename)s:%(lineno)d] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    log_dir: Path | None = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = False,
) -> logging.Logger:
    """Configure the application logger. Safe to call repeatedly: handlers are named and added once.
    Module loggers (timetrack.<module>) propagate into this one."""
    logger = logging.getLogger(name)
    logger.propagate = False
    logger.setLevel(level)
    fmt = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    file_handler_name = f"{name}:file"
    if log_dir is not None and not any(h.get_name() == file_handler_name for h in logger.handlers):
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_dir / f"{name}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(fmt)
        file_handler.set_name(file_handler_name)
        logger.addHandler(file_handler)

    console_handler_name = f"{name}:console"
    if console and not any(h.get_name() == console_handler_name for h in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(fmt)
        console_handler.set_name(console_handler_name)
        logger.addHandler(console_handler)

    return logger
