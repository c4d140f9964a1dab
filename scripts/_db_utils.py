from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.custody.db import CustodyStore, build_engine, build_store


def script_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///custody.db").strip()


@contextmanager
def script_store(database_url: str | None = None) -> Generator[CustodyStore, None, None]:
    """A store for one script run; the engine is disposed on exit."""
    store = build_store(build_engine(script_database_url(database_url), pooled=False))
    try:
        yield store
    finally:
        store.engine.dispose()


@contextmanager
def script_session(database_url: str | None = None) -> Generator[Session, None, None]:
    with script_store(database_url) as store:
        with store.session() as s:
            yield s
