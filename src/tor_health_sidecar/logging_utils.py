from __future__ import annotations

import logging
from typing import Optional

from .config_manager import SidecarSettings

_ROOT_LOGGER = "tor_health_sidecar"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_VERBOSE_FORMAT = (
    "%(asctime)s %(levelname)s [%(name)s] "
    "%(process)d:%(threadName)s %(filename)s:%(lineno)d %(message)s"
)

# The request middleware logs every request; aiohttp's own access log would duplicate it.
_QUIET_LOGGERS = ("aiohttp.access",)


def configure_logging(settings: SidecarSettings) -> None:
    """Install the process-wide handler at the configured level."""

    # log_level is validated by SidecarSettings, so this is always a numeric level.
    level = logging.getLevelName(settings.log_level)
    logging.basicConfig(level=level, format=_VERBOSE_FORMAT if settings.log_verbose else _FORMAT)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger below the package namespace."""

    if not name:
        return logging.getLogger(_ROOT_LOGGER)
    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")
