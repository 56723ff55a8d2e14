"""Network reachability checks for the sync API."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Set

import requests

from core.log import get_sync_logger
from core.settings import SYNC, SyncSettings


class ConnectivityMonitor:
    """Reports whether the API host answers at all.

    Any HTTP response, even an error page, counts as online; only transport
    failures count as offline. Subscribers are told about transitions.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        *,
        settings: SyncSettings = SYNC,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_url = (api_url or settings.api_url).rstrip("/")
        self.timeout = settings.connectivity_timeout_sec
        self.session = session or requests.Session()
        self.logger = logger or get_sync_logger("connectivity")
        self._listeners: Set[Callable[[bool], None]] = set()
        self._lock = threading.Lock()
        self._last_state: Optional[bool] = None

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        self._listeners.add(callback)

    def unsubscribe(self, callback: Callable[[bool], None]) -> None:
        self._listeners.discard(callback)

    @property
    def last_state(self) -> Optional[bool]:
        return self._last_state

    def is_online(self) -> bool:
        try:
            self.session.head(self.api_url, timeout=self.timeout, allow_redirects=True)
            online = True
        except requests.RequestException as exc:
            self.logger.debug("API unreachable: %s", exc)
            online = False
        self._record(online)
        return online

    def _record(self, online: bool) -> None:
        with self._lock:
            previous = self._last_state
            self._last_state = online
        if previous is None or previous == online:
            return
        self.logger.info("Network is now %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                self.logger.exception("Connectivity listener failed")


__all__ = ["ConnectivityMonitor"]
