from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.db.session import get_db


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness check: always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness check: returns 503 if the database or Redis is unavailable."""
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = str(e)
    try:
        redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = str(e)

    if all(v == "ok" for v in checks.values()):
        return {"status": "ready", "checks": checks}
    response.status_code = 503
    return {"status": "not_ready", "checks": checks}
