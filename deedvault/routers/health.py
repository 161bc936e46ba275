"""
Health Router

Endpoints:
- /healthz - liveness
- /readyz  - readiness (database and object store reachable)
"""

import asyncio
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from deedvault import __version__
from deedvault.core.config import Settings, get_settings
from deedvault.core.database import get_db
from deedvault.core.dependencies import get_store
from deedvault.services.storage import ObjectStore

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """Liveness probe - is the process running?"""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """Readiness probe - database answers and the store is configured."""
    checks = {}
    details = {"version": __version__, "storage_provider": store.provider_name}
    start = time.perf_counter()

    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=5.0)
        checks["database"] = True
    except asyncio.TimeoutError:
        checks["database"] = False
        details["database_error"] = "Connection timeout (5s)"
    except Exception as e:
        checks["database"] = False
        details["database_error"] = str(e)

    try:
        await store.exists("readyz-probe", bucket=settings.default_bucket)
        checks["object_store"] = True
    except Exception as e:
        checks["object_store"] = False
        details["object_store_error"] = str(e)

    details["check_duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks, "details": details},
    )
