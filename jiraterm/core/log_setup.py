from __future__ import annotations

import logging
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", *, stream: Optional[object] = None) -> None:
    """Install a single root handler for the host application.

    Library modules only ever call ``logging.getLogger(__name__)``; this is
    for the terminal entry point, which owns stderr. Calling it twice does not
    stack handlers.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for h in root.handlers:
        if getattr(h, "_jiraterm", False):
            h.setLevel(level.upper())
            return
    handler = logging.StreamHandler(stream)  # type: ignore[arg-type]
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._jiraterm = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
