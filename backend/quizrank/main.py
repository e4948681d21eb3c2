import logging
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import telemetry_pipeline  # noqa: F401  registers the reconciliation listener
from .config import Settings, get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .developer_routes import router as developer_router
from .leaderboard_routes import router as leaderboard_router
from .logging_config import configure_logging


configure_logging()
logger = logging.getLogger(__name__)
app = FastAPI(title="QuizRank Leaderboard Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(leaderboard_router)
app.include_router(developer_router)

settings_snapshot = get_settings()
logger.info("Leaderboard service starting with database configured: %s", bool(settings_snapshot.database_url))
logger.info("Developer endpoints enabled: %s", settings_snapshot.debug_endpoints)


@app.get("/healthz")
def health(settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    return {"status": "ok", "mode": "leaderboard"}


@app.get("/healthz/database")
def database_health() -> Dict[str, Any]:
    try:
        engine = get_engine()
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except (RuntimeError, SQLAlchemyError) as exc:
        logger.warning("Database health check failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {
        "status": "ok",
        "persistence_mode": "database",
        "dialect": engine.dialect.name,
        "pool": get_pool_snapshot(engine),
    }
