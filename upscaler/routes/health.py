"""
Upscaler Health Check Routes
"""
from fastapi import APIRouter, Depends
from datetime import datetime
import os
import sys
import psutil
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import Dict, Any

from ..config import Settings, get_settings
from ..database import get_db
from ..worker.batch_manager import BatchManager, get_batch_manager

router = APIRouter(prefix="/api/health", tags=["health"])

START_TIME = datetime.utcnow()


def get_uptime() -> str:
    """Get service uptime as human-readable string"""
    delta = datetime.utcnow() - START_TIME
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    if delta.days > 0:
        return f"{delta.days}d {hours}h {minutes}m"
    elif hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    else:
        return f"{minutes}m {seconds}s"


def check_database(db: Session) -> Dict[str, Any]:
    """Check database connectivity"""
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


def check_process() -> Dict[str, Any]:
    """Memory held by this process (images are kept in memory)"""
    try:
        info = psutil.Process(os.getpid()).memory_info()
        return {
            "status": "healthy",
            "rss_mb": round(info.rss / (1024 * 1024), 1),
            "python_version": sys.version.split()[0],
        }
    except psutil.Error as e:
        return {
            "status": "unknown",
            "error": str(e),
        }


@router.get("")
def health_check(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    manager: BatchManager = Depends(get_batch_manager),
):
    """Health check endpoint for load balancers and monitoring."""
    database = check_database(db)
    healthy = database["status"] == "healthy"

    return {
        "ok": healthy,
        "status": "healthy" if healthy else "unhealthy",
        "environment": settings.environment,
        "version": settings.app_version,
        "uptime": get_uptime(),
        "checks": {
            "database": database,
            "process": check_process(),
            "upscaler_configured": bool(settings.stability_api_key),
            "payments_configured": bool(settings.stripe_secret_key),
        },
        "batches": {
            "total": len(manager),
            "active": manager.active_count,
        },
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
