from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Minimal logging configuration for this package.

    Notes:
    - stdlib logging only; uvicorn already installs handlers.
    - Set `AUTHZ_LOG_LEVEL=DEBUG` (or INFO/WARNING/ERROR) to control verbosity.
    - Guard stage traces are emitted at DEBUG unless the guard was built with
      debug logging, in which case they are promoted to INFO.
    """

    normalized = level.upper()
    logging.getLogger("hierarchy_authz").setLevel(normalized)
    logging.getLogger("hierarchy_authz").propagate = True
