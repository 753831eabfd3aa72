"""
Logging setup.

Modules log through `logging.getLogger(__name__)`; this module only decides
level and format, once, at application startup.
"""

import logging

from fundcard.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        force=True,
    )
    # SQL echo is controlled by DEBUG on the engine, not by our level
    if not settings.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # httpx logs every request URL at INFO, which includes rail references
    logging.getLogger("httpx").setLevel(logging.WARNING)


def mask_phone(phone: str) -> str:
    """Truncate a payer phone number for log lines."""
    return phone[:6] + "..." if len(phone) > 6 else "***"
