from __future__ import annotations

import logging

from togglecascade.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated calls only adjust the level.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # SQLAlchemy echoes every statement at INFO; keep it quiet unless debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    )
