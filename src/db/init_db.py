from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from src.db.models import Base
from src.db.session import get_database_url, get_engine


def init_db(engine: Engine | None = None) -> None:
    if engine is None:
        url = get_database_url()
        if url.startswith("sqlite:///./"):
            Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        engine = get_engine()
    Base.metadata.create_all(bind=engine)
