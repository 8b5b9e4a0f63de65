import sqlite3
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool

from mfa_gateway.core.config import VERSION
from mfa_gateway.core.database import get_db
from mfa_gateway.routers.deps import get_gateway

router = APIRouter()

START_TIME = time.time()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_database(db_path) -> str:
    conn = get_db(db_path)
    try:
        conn.cursor().execute("SELECT 1")
    finally:
        conn.close()
    return "ok"


@router.get("/health", tags=["system"])
async def health_check(request: Request):
    """Health check endpoint to verify service and DB status."""
    gateway = get_gateway(request)
    status = {
        "status": "healthy",
        "timestamp": _now_iso(),
        "uptime": round(time.time() - START_TIME, 3),
        "version": VERSION,
        "database": "unknown",
    }
    try:
        status["database"] = await run_in_threadpool(_check_database, gateway.db_path)
    except sqlite3.Error as e:
        status["status"] = "error"
        status["database"] = str(e)
    return status


@router.get("/proxy-status", tags=["system"])
async def proxy_status(request: Request):
    """Upstream reachability plus the gateway's admission configuration."""
    gateway = get_gateway(request)
    target_health = await gateway.proxy.check_health()
    return {
        "proxy": {
            "target": gateway.proxy.target,
            "status": "active",
            "target_health": {**target_health, "checked_at": _now_iso()},
        },
        "authentication": {"required": True, "mfa": True},
        "features": ["WebSocket", "HTTP/HTTPS", "MFA"],
        "public_paths": gateway.public_paths,
    }
