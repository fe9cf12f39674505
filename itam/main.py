from __future__ import annotations

import logging
import os

from fastapi import FastAPI, HTTPException

from itam.api.routers import assets, assignments, identity, maintenance, notifications, warranty
from itam.infra.audit import AuditMiddleware
from itam.infra.db import check_db_ready

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


configure_logging()

app = FastAPI(
    title="itam-platform",
    description="Multi-tenant IT asset tracking: lifecycle, custody ledger, maintenance and warranty alerts.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(assets.router, prefix="/api/assets", tags=["assets"])
app.include_router(assignments.router, prefix="/api/assignments", tags=["assignments"])
app.include_router(maintenance.router, prefix="/api/maintenance", tags=["maintenance"])
app.include_router(warranty.router, prefix="/api/warranty", tags=["warranty"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
