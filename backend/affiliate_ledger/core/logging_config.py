from __future__ import annotations

import logging

from affiliate_ledger.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Root logging setup for the service process.
    Modules only ever do `logger = logging.getLogger(__name__)`.
    """
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)
    # SQL echo is controlled separately; keep the engine quiet by default
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
