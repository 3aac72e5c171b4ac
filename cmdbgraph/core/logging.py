from __future__ import annotations

import logging

from cmdbgraph.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HANDLER_NAME = "cmdbgraph"


def configure_logging() -> None:
    # Install one stream handler on the root logger; repeated calls only refresh the level.
    settings = get_settings()
    root = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    if any(getattr(handler, "name", None) == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    # SQL echo is noisy at INFO; keep engine logs at WARNING unless explicitly lowered.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
