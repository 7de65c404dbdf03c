"""Root logger configuration shared by the API process and the CLI."""

import logging
import sys

from tradebot.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_NOISY_LOGGERS = ("apscheduler", "aiohttp", "urllib3", "websockets")


def setup_logging(level: str | None = None):
    """Configure the root logger once; later calls only adjust the level."""
    level_name = (level or settings.log_level).upper()
    root = logging.getLogger()
    root.setLevel(level_name)

    if not any(getattr(h, "_tradebot", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._tradebot = True
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
