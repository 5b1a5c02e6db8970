from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import text
from app.database import get_db

router = APIRouter()

@router.get("/health")
async def health_check():
    """
    Basic liveness check - verifies the application is running.
    """
    return {
        "status": "healthy",
        "service": "difflog-sync"
    }

@router.get("/health/ready")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - verifies the profile store is reachable.
    """
    checks = {
        "database": "unknown"
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = "unhealthy"
        raise HTTPException(
            status_code=503,
            detail={"error": "Database unavailable", "status": "not_ready", "checks": checks}
        )

    return {
        "status": "ready",
        "checks": checks
    }
