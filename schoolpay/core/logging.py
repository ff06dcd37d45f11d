"""Logging setup. Modules log through ``get_logger(__name__)``; ``configure_logging`` runs once at app start."""

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    from schoolpay.core.config import settings

    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
