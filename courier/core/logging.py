from __future__ import annotations

import logging

from courier.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once per process; repeated calls only adjust the level.
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep driver chatter out of worker logs unless explicitly debugging.
    if level > logging.DEBUG:
        logging.getLogger("aiosmtplib").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
