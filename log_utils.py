"""Logging setup shared by the server, the camera loop and the CLI."""

from __future__ import annotations

import logging
import os
from typing import Optional

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once.

    The level defaults to SIGN_LOG_LEVEL (INFO when unset).
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.environ.get("SIGN_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=_LOG_FORMAT)
    _configured = True
