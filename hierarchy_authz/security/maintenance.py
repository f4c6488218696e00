from __future__ import annotations

import logging
import threading

from .admin import PolicyAdminService
from .errors import AuthzError

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Background thread that revokes expired policies and role assignments every ``interval`` seconds."""

    def __init__(self, admin: PolicyAdminService, interval: float) -> None:
        self._admin = admin
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> dict[str, int]:
        try:
            return self._admin.expire_stale_grants()
        except AuthzError as exc:
            logger.error("Expiry sweep failed error=%s", exc)
            return {"policies": 0, "roles": 0}

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None:
            return
        if self._interval <= 0:
            logger.info("Expiry sweeper disabled")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="authz-expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started interval=%ss", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
