"""Logging setup for the densify CLI and embedding applications."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from densify.config import LoggingConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE_NAME = "densify.log"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 3

_NOISY_LIBS = ("httpx", "httpcore", "asyncio")


def configure_logging(config: LoggingConfig, verbose: bool = False) -> logging.Logger:
    """Attach stderr (and optional rotating file) handlers to the ``densify`` logger.

    Safe to call more than once: handlers installed by an earlier call are
    replaced.
    """
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    root = logging.getLogger("densify")
    for handler in list(root.handlers):
        if getattr(handler, "_densify_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    _install(root, stream)

    log_dir = config.log_path
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        _install(root, file_handler)

    root.setLevel(level)

    for name in _NOISY_LIBS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def _install(logger: logging.Logger, handler: logging.Handler) -> None:
    handler._densify_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
