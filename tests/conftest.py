from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from itam.domain.models import BootstrapAdminRequest, TenantCreate
from itam.domain.quotas import SubscriptionTier
from itam.infra import audit, db, events
from itam.infra.tenant import TenantContext
from itam.services import blob_storage
from itam.services.tenant_service import TenantService
from itam.services.user_service import UserService


@pytest.fixture()
def test_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "itam_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(audit, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    monkeypatch.setattr(blob_storage, "ATTACHMENT_ROOT", str(tmp_path / "blobs"))
    yield engine
    engine.dispose()


TenantFactory = Callable[..., TenantContext]


@pytest.fixture()
def make_tenant(test_engine: Engine) -> TenantFactory:
    """Create a tenant with a bootstrapped admin and return the admin's context."""

    def _make(name: str, tier: SubscriptionTier = SubscriptionTier.FREE) -> TenantContext:
        tenant = TenantService().create_tenant(TenantCreate(name=name, subscription_tier=tier))
        admin = UserService().bootstrap_admin(
            BootstrapAdminRequest(tenant_id=tenant.id, username=f"{name}-admin", password="pw")
        )
        return TenantContext(tenant_id=tenant.id, actor_id=admin.id, is_admin=True)

    return _make
