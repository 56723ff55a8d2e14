"""Wires the offline queue, Sync Client and background processor together."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.log import get_sync_logger
from core.settings import STORAGE, SYNC, SyncSettings
from services.auth_token import TokenStore
from services.background_processor import BackgroundProcessor
from services.connectivity import ConnectivityMonitor
from services.queue_manager import QueueManager
from services.sync_client import SyncClient
from services.sync_history import SyncHistory
from storage.config import build_sync_settings, load_config
from storage.db import create_db_engine, init_db, make_session_factory


@dataclass
class SyncApp:
    settings: SyncSettings
    engine: object
    history: SyncHistory
    queue: QueueManager
    tokens: TokenStore
    client: SyncClient
    connectivity: ConnectivityMonitor
    processor: BackgroundProcessor

    def start(self) -> int:
        return self.processor.start()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        finished = self.processor.stop(timeout)
        self.connectivity.unsubscribe(self.processor.notify_connectivity_changed)
        self.client.close()
        self.engine.dispose()
        return finished


def build_app(
    *,
    db_path: Path | str = STORAGE.db_path,
    config_path: Optional[Path] = None,
    token_path: Optional[Path] = None,
    settings: Optional[SyncSettings] = None,
    logger: Optional[logging.Logger] = None,
) -> SyncApp:
    """Create every component explicitly; nothing here is a process-wide singleton."""

    if settings is None:
        settings = build_sync_settings(load_config(config_path), SYNC)
    logger = logger or get_sync_logger()

    engine = create_db_engine(db_path)
    init_db(engine)
    session_factory = make_session_factory(engine)

    history = SyncHistory(session_factory, logger=logger.getChild("history"))
    queue = QueueManager(
        session_factory, settings=settings, history=history, logger=logger.getChild("queue")
    )
    tokens = TokenStore(token_path)
    client = SyncClient(settings.api_url, tokens, settings=settings, logger=logger.getChild("client"))
    connectivity = ConnectivityMonitor(
        settings.api_url, settings=settings, logger=logger.getChild("connectivity")
    )
    processor = BackgroundProcessor(
        queue,
        client,
        connectivity,
        settings=settings,
        history=history,
        token_store=tokens,
        logger=logger.getChild("processor"),
    )
    connectivity.subscribe(processor.notify_connectivity_changed)
    return SyncApp(
        settings=settings,
        engine=engine,
        history=history,
        queue=queue,
        tokens=tokens,
        client=client,
        connectivity=connectivity,
        processor=processor,
    )


__all__ = ["SyncApp", "build_app"]
