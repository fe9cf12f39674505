from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect

from itam.infra.migrate import run_upgrade_head

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_builds_the_schema(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.chdir(REPO_ROOT)

    run_upgrade_head(str(REPO_ROOT / "alembic.ini"))

    engine = create_engine(db_url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assignment_indexes = {index["name"]: index for index in inspector.get_indexes("asset_assignments")}
    finally:
        engine.dispose()

    assert {
        "tenants",
        "users",
        "assets",
        "asset_assignments",
        "attachments",
        "maintenance",
        "maintenance_attachments",
        "warranty_alerts",
        "notifications",
        "events",
        "audit_logs",
        "alembic_version",
    } <= tables
    assert assignment_indexes["uq_asset_assignments_active_asset"]["unique"]
