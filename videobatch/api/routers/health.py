from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from videobatch.api.dependencies import DatabaseSession

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict:
    return {"status": "healthy", "service": "videobatch-api"}


@router.get("/health/ready")
async def readiness_check(db: DatabaseSession) -> dict:
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except SQLAlchemyError:
        return {"status": "not_ready", "database": "disconnected"}
