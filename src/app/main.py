from __future__ import annotations

from dotenv import load_dotenv
from fastapi import FastAPI

from src.app.routes.performance import router as performance_router
from src.db.init_db import init_db


load_dotenv()


def create_app(*, create_tables: bool = True) -> FastAPI:
    app = FastAPI(title="Portfolio Returns", version="0.1.0")

    if create_tables:

        @app.on_event("startup")
        def _startup() -> None:
            init_db()

    app.include_router(performance_router)
    return app


app = create_app()
