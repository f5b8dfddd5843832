from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.db.models import Base
from src.db.session import make_session_factory


@pytest.fixture()
def session_factory(tmp_path) -> sessionmaker[Session]:
    # File-backed so the store's fetch threads all see the same database.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'returns.db'}", future=True, connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()
