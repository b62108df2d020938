from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import text
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone

from cyclegate.db import get_db
from cyclegate.models import ProcessedEvent, UserAccount

router = APIRouter()
logger = logging.getLogger(__name__)

CRITICAL_PERCENT = 95


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _gauge(name: str, help_text: str, value) -> str:
    return f"# HELP {name} {help_text}\n# TYPE {name} gauge\n{name} {value}\n"


@router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": _now().isoformat()}


@router.get("/readyz")
def readiness_check(db: Session = Depends(get_db)):
    """Ready once the database answers; 503 otherwise."""
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Readiness probe failed: {e}")
        detail = {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        raise HTTPException(status_code=503, detail=detail)

    latency_ms = int((time.perf_counter() - started) * 1000)
    return {
        "status": "ready",
        "checks": {"database": {"status": "healthy", "latency_ms": latency_ms}},
        "timestamp": _now().isoformat(),
    }


@router.get("/livez")
async def liveness_check():
    """Fails only when memory or disk is nearly exhausted."""
    memory_percent = psutil.virtual_memory().percent
    disk = psutil.disk_usage('/')
    disk_percent = round(disk.used / disk.total * 100, 1)

    if memory_percent > CRITICAL_PERCENT or disk_percent > CRITICAL_PERCENT:
        logger.critical(f"Liveness check failed: memory {memory_percent}%, disk {disk_percent}%")
        raise HTTPException(status_code=503, detail="Application not alive: resources exhausted")

    return {
        "status": "alive",
        "memory_percent": memory_percent,
        "disk_percent": disk_percent,
        "timestamp": _now().isoformat(),
    }


@router.get("/metrics")
def prometheus_metrics(db: Session = Depends(get_db)):
    """Account and webhook gauges in Prometheus text format."""
    since = _now() - timedelta(hours=24)
    accounts = db.query(UserAccount)

    gauges = [
        ("cyclegate_users_total", "Total number of user accounts", accounts.count()),
        ("cyclegate_users_with_cycles", "Accounts with at least one unlocked cycle",
         accounts.filter(UserAccount.unlocked_cycles > 0).count()),
        ("cyclegate_active_subscriptions", "Accounts whose subscription is currently active",
         accounts.filter(UserAccount.subscription_active.is_(True)).count()),
        ("cyclegate_webhook_events_processed", "Stripe events accepted in the last 24h",
         db.query(ProcessedEvent).filter(ProcessedEvent.processed_at >= since).count()),
        ("cyclegate_memory_usage_percent", "Memory usage percentage", psutil.virtual_memory().percent),
    ]
    body = "\n".join(_gauge(name, help_text, value) for name, help_text, value in gauges)
    return Response(content=body, media_type="text/plain")
