# =============================================
# File: chatfiles/db/repo.py
# Purpose: DB repository bootstrap: engine from DB_URL (default SQLite), lazy table creation, simple inserts/reads.
# =============================================

from __future__ import annotations
import os
import threading
from typing import List, Optional, Type

from sqlmodel import SQLModel, Session, create_engine, select

_engine = None
_lock = threading.Lock()


def get_engine():
    """Create the engine on first use so DB_URL overrides (tests) take effect."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:
                url = os.getenv("DB_URL", "sqlite:///./chatfiles.db")
                kwargs = {"connect_args": {"check_same_thread": False}} if url.startswith("sqlite") else {}
                _engine = create_engine(url, echo=False, **kwargs)
                SQLModel.metadata.create_all(_engine)
    return _engine


def reset_engine() -> None:
    """For tests: dispose the engine; the next call rebuilds it from DB_URL."""
    global _engine
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None


def add(row: SQLModel) -> SQLModel:
    with Session(get_engine()) as session:
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


def list_rows(model: Type[SQLModel], user_id: Optional[str] = None, limit: int = 100) -> List[SQLModel]:
    with Session(get_engine()) as session:
        stmt = select(model)
        if user_id is not None:
            stmt = stmt.where(model.user_id == user_id)
        return list(session.exec(stmt.limit(limit)).all())
