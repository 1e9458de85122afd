from __future__ import annotations

import logging
import sys

from timbersync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Install a single stdout handler once; repeated app factories must not duplicate output.
    global _configured
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # SQL echo is noisy at INFO; keep driver logs at warning unless explicitly raised.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
