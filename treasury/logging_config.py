from __future__ import annotations

import logging

from treasury.config import settings


LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def configure_logging(level: str | None = None) -> None:
    resolved = (level or settings.log_level or 'INFO').upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
    # SQL echo is noisy below WARNING.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
