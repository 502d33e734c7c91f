"""
Logging Configuration

Routes stdlib logging (including uvicorn) through a Rich console handler.
"""

import logging

from rich.logging import RichHandler

from chapter_api.core.config import settings


def _build_rich_handler() -> RichHandler:
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
    handler.name = "chapter_api_rich"
    return handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    logger.handlers = []
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False


def configure_logging(level: str | None = None) -> None:
    """Install the Rich handler on the root and uvicorn loggers."""
    handler = _build_rich_handler()
    root_logger = logging.getLogger()
    root_logger.setLevel((level or settings.log_level).upper())
    _replace_handlers(root_logger, [handler])

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, [handler])

    # SQL echo is controlled by settings.debug on the engine
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
