"""
Structured logging setup using structlog.

Components log through structlog with a bound ``service`` and key/value
fields (``source_id``, ``from_block``, ``address``). Output is JSON lines in
production and a rich console in development.
"""

import sys
import logging
from typing import List, Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings, settings as default_settings

# Libraries that log every request or query at INFO
QUIET_LOGGERS = ("uvicorn.access", "asyncio", "aiohttp", "web3", "urllib3", "sqlalchemy.engine")


def _processors(render_json: bool) -> List:
    chain = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    chain.append(structlog.processors.JSONRenderer() if render_json else structlog.dev.ConsoleRenderer(colors=True))
    return chain


def _handlers(config: Settings, level: int, render_json: bool, log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    if config.is_development and not render_json:
        console = RichHandler(
            console=Console(file=sys.stderr),
            show_time=False,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handlers.append(console)
    else:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(stream)

    target = log_file or config.log_file
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
    return handlers


def setup_logging(log_file: Optional[str] = None, config: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_file: Extra file to append log lines to
        config: Settings to read level and format from, the process settings by default
    """
    config = config or default_settings
    render_json = config.log_format == "json"
    level = getattr(logging, config.log_level)

    structlog.configure(
        processors=_processors(render_json),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level, handlers=_handlers(config, level, render_json, log_file), force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
