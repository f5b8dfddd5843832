from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from src.db.session import get_session_factory


def db_session_factory() -> sessionmaker[Session]:
    """Services that open their own sessions per call (one per fetch thread) take the factory."""
    return get_session_factory()
