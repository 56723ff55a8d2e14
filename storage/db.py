from __future__ import annotations

from pathlib import Path
from typing import Callable

from sqlalchemy import event
from sqlmodel import SQLModel, Session, create_engine

from core.settings import STORAGE

# Ensure SQLModel metadata is populated
import models.sync_operation  # noqa: F401
import models.sync_log  # noqa: F401
from storage import migrations


SessionFactory = Callable[[], Session]


def _configure_sqlite(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    # WAL lets the capture workflow enqueue while a cycle holds a write
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_db_engine(db_path: Path | str = STORAGE.db_path, *, echo: bool = STORAGE.echo_sql):
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{path.as_posix()}",
        echo=echo,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _configure_sqlite)
    return engine


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)


def make_session_factory(engine) -> SessionFactory:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["SessionFactory", "create_db_engine", "init_db", "make_session_factory"]
