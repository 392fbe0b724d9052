import time
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from common.schemas import HealthStatus
from common.settings import settings

logger = logging.getLogger(__name__)

def health_router(service_name: str, engine: Optional[Engine] = None) -> APIRouter:
    router = APIRouter()
    started = time.time()

    @router.get("/health", response_model=HealthStatus, response_model_exclude_none=True)
    def health() -> HealthStatus:
        status, database = "healthy", None
        if engine is not None:
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                database = "ok"
            except SQLAlchemyError as e:
                logger.error(f"Health check database failure: {e}")
                status, database = "degraded", "error"
        return HealthStatus(
            service=service_name,
            status=status,
            timestamp=datetime.now(timezone.utc),
            uptime=int(time.time() - started),
            version=settings.service_version,
            database=database,
        )

    return router
