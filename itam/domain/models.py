from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, computed_field
from pydantic import Field as PydanticField
from sqlalchemy import JSON, BigInteger, Column, ForeignKeyConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from itam.domain import derived
from itam.domain.derived import WarrantyAlertType, WarrantyStatus
from itam.domain.quotas import ResourceKind, SubscriptionTier
from itam.domain.state_machine import AssetStatus, MaintenanceStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    slug: str = Field(index=True, unique=True)
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.FREE, index=True)
    subscription_start_at: datetime = Field(default_factory=now_utc)
    subscription_end_at: datetime | None = Field(default=None)
    is_active: bool = Field(default=True)
    max_assets: int
    max_users: int
    max_storage_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    current_asset_count: int = Field(default=0)
    current_user_count: int = Field(default=0)
    current_storage_bytes: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    username: str = Field(index=True)
    full_name: str
    department: str | None = None
    password_hash: str
    is_admin: bool = Field(default=False)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class DeviceType(StrEnum):
    LAPTOP = "LAPTOP"
    DESKTOP = "DESKTOP"
    MONITOR = "MONITOR"
    PHONE = "PHONE"
    TABLET = "TABLET"
    PRINTER = "PRINTER"
    NETWORK = "NETWORK"
    SERVER = "SERVER"
    PERIPHERAL = "PERIPHERAL"
    SOFTWARE = "SOFTWARE"
    OTHER = "OTHER"


class Asset(SQLModel, table=True):
    __tablename__ = "assets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "asset_tag", name="uq_assets_tenant_tag"),
        UniqueConstraint("tenant_id", "id", name="uq_assets_tenant_id_id"),
        ForeignKeyConstraint(
            ["tenant_id", "assigned_to_user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_assets_tenant_status", "tenant_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    asset_tag: str = Field(index=True)
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    model_year: int | None = None
    serial_number: str | None = Field(default=None, index=True)
    device_type: DeviceType = Field(index=True)
    status: AssetStatus = Field(default=AssetStatus.AVAILABLE)
    status_before_maintenance: AssetStatus | None = None
    location: str | None = None
    assigned_to_user_id: str | None = Field(default=None, index=True)
    purchase_date: date | None = None
    purchase_price_cents: int | None = None
    warranty_provider: str | None = None
    warranty_start_date: date | None = None
    warranty_end_date: date | None = Field(default=None, index=True)
    notes: str | None = None
    version: int = Field(default=1)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)
    retired_at: datetime | None = None
    retired_reason: str | None = None
    lost_at: datetime | None = None


class ReturnCondition(StrEnum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    NEEDS_REPAIR = "NEEDS_REPAIR"
    LOST = "LOST"


class AssetAssignment(SQLModel, table=True):
    __tablename__ = "asset_assignments"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "asset_id"],
            ["assets.tenant_id", "assets.id"],
            ondelete="RESTRICT",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="RESTRICT",
        ),
        Index(
            "uq_asset_assignments_active_asset",
            "asset_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
        Index("ix_asset_assignments_tenant_user", "tenant_id", "user_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    asset_id: str = Field(index=True)
    user_id: str = Field(index=True)
    assigned_by_user_id: str
    assigned_at: datetime = Field(default_factory=now_utc, index=True)
    notes: str | None = None
    returned_at: datetime | None = None
    returned_by_user_id: str | None = None
    return_condition: ReturnCondition | None = None
    return_notes: str | None = None


class AttachmentCategory(StrEnum):
    RECEIPT = "RECEIPT"
    PHOTO = "PHOTO"
    WARRANTY_DOCUMENT = "WARRANTY_DOCUMENT"
    MANUAL = "MANUAL"
    OTHER = "OTHER"


class Attachment(SQLModel, table=True):
    __tablename__ = "attachments"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "asset_id"],
            ["assets.tenant_id", "assets.id"],
            ondelete="RESTRICT",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    asset_id: str = Field(index=True)
    file_name: str
    storage_key: str = Field(unique=True)
    content_type: str
    size_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    category: AttachmentCategory
    description: str | None = None
    uploaded_by_user_id: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Maintenance(SQLModel, table=True):
    __tablename__ = "maintenance"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_maintenance_tenant_id_id"),
        ForeignKeyConstraint(
            ["tenant_id", "asset_id"],
            ["assets.tenant_id", "assets.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_maintenance_tenant_asset_status", "tenant_id", "asset_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    asset_id: str = Field(index=True)
    title: str
    description: str | None = None
    status: MaintenanceStatus = Field(default=MaintenanceStatus.PENDING, index=True)
    notes: str | None = None
    version: int = Field(default=1)
    created_by_user_id: str
    performed_by_user_id: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class MaintenanceAttachmentCategory(StrEnum):
    BEFORE_PHOTO = "BEFORE_PHOTO"
    AFTER_PHOTO = "AFTER_PHOTO"
    RECEIPT = "RECEIPT"
    DOCUMENT = "DOCUMENT"
    OTHER = "OTHER"


class MaintenanceAttachment(SQLModel, table=True):
    __tablename__ = "maintenance_attachments"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "maintenance_id"],
            ["maintenance.tenant_id", "maintenance.id"],
            ondelete="RESTRICT",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    maintenance_id: str = Field(index=True)
    file_name: str
    storage_key: str = Field(unique=True)
    content_type: str
    size_bytes: int = Field(sa_column=Column(BigInteger, nullable=False))
    category: MaintenanceAttachmentCategory
    description: str | None = None
    uploaded_by_user_id: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class WarrantyAlert(SQLModel, table=True):
    __tablename__ = "warranty_alerts"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "asset_id"],
            ["assets.tenant_id", "assets.id"],
            ondelete="RESTRICT",
        ),
        Index(
            "uq_warranty_alerts_open_snapshot",
            "asset_id",
            "alert_type",
            "warranty_end_date",
            unique=True,
            sqlite_where=text("acknowledged_at IS NULL"),
            postgresql_where=text("acknowledged_at IS NULL"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    asset_id: str = Field(index=True)
    alert_type: WarrantyAlertType = Field(index=True)
    warranty_end_date: date
    days_remaining: int
    created_at: datetime = Field(default_factory=now_utc, index=True)
    acknowledged_at: datetime | None = None
    acknowledged_by_user_id: str | None = None


class NotificationType(StrEnum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
        ),
        Index("ix_notifications_tenant_user_read", "tenant_id", "user_id", "is_read"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    user_id: str = Field(index=True)
    title: str
    message: str
    type: NotificationType = Field(default=NotificationType.INFO)
    link: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    read_at: datetime | None = None


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str
    slug: str | None = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_end_at: datetime | None = None


class TenantTierUpdate(BaseModel):
    subscription_tier: SubscriptionTier


class TenantActivationUpdate(BaseModel):
    is_active: bool


class TenantRead(ORMReadModel):
    id: str
    name: str
    slug: str
    subscription_tier: SubscriptionTier
    subscription_start_at: datetime
    subscription_end_at: datetime | None = None
    is_active: bool
    max_assets: int
    max_users: int
    max_storage_bytes: int
    created_at: datetime


class ResourceUsageRead(BaseModel):
    resource_kind: ResourceKind
    current: int
    limit: int


class TenantUsageRead(BaseModel):
    tenant_id: str
    tenant_name: str
    subscription_tier: SubscriptionTier
    is_active: bool
    usage: list[ResourceUsageRead]


class UserCreate(BaseModel):
    username: str
    password: str
    full_name: str
    department: str | None = None
    is_admin: bool = False


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    username: str
    full_name: str
    department: str | None = None
    is_admin: bool
    is_active: bool
    created_at: datetime


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    username: str
    password: str
    full_name: str = "Administrator"


class DevLoginRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    permissions: list[str] = PydanticField(default_factory=list)


class AssetCreate(BaseModel):
    device_type: DeviceType
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    model_year: int | None = PydanticField(default=None, ge=1900, le=2100)
    serial_number: str | None = None
    location: str | None = None
    purchase_date: date | None = None
    purchase_price_cents: int | None = PydanticField(default=None, ge=0)
    warranty_provider: str | None = None
    warranty_start_date: date | None = None
    warranty_end_date: date | None = None
    notes: str | None = None


class AssetUpdate(BaseModel):
    device_type: DeviceType | None = None
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    model_year: int | None = PydanticField(default=None, ge=1900, le=2100)
    serial_number: str | None = None
    location: str | None = None
    purchase_date: date | None = None
    purchase_price_cents: int | None = PydanticField(default=None, ge=0)
    warranty_provider: str | None = None
    warranty_start_date: date | None = None
    warranty_end_date: date | None = None
    notes: str | None = None


class AssetRead(ORMReadModel):
    id: str
    tenant_id: str
    asset_tag: str
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    model_year: int | None = None
    serial_number: str | None = None
    device_type: DeviceType
    status: AssetStatus
    location: str | None = None
    assigned_to_user_id: str | None = None
    purchase_date: date | None = None
    purchase_price_cents: int | None = None
    warranty_provider: str | None = None
    warranty_start_date: date | None = None
    warranty_end_date: date | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    retired_at: datetime | None = None
    lost_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def display_name(self) -> str:
        return derived.display_name(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def warranty_status(self) -> WarrantyStatus:
        return derived.warranty_status(self.warranty_end_date, derived.utc_today())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def warranty_days_remaining(self) -> int | None:
        return derived.warranty_days_remaining(self.warranty_end_date, derived.utc_today())


class AssetAssignRequest(BaseModel):
    user_id: str
    notes: str | None = None


class AssetReturnRequest(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    notes: str | None = None


class AssetRetireRequest(BaseModel):
    reason: str | None = None


class AssetLostRequest(BaseModel):
    notes: str | None = None


class AssetRecoverRequest(BaseModel):
    confirm: bool = False
    location: str | None = None


class AssetAssignmentRead(ORMReadModel):
    id: str
    tenant_id: str
    asset_id: str
    user_id: str
    assigned_by_user_id: str
    assigned_at: datetime
    notes: str | None = None
    returned_at: datetime | None = None
    returned_by_user_id: str | None = None
    return_condition: ReturnCondition | None = None
    return_notes: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_active(self) -> bool:
        return derived.is_assignment_active(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_seconds(self) -> int:
        return int(derived.assignment_duration(self).total_seconds())


class AttachmentRead(ORMReadModel):
    id: str
    tenant_id: str
    asset_id: str
    file_name: str
    content_type: str
    size_bytes: int
    category: AttachmentCategory
    description: str | None = None
    uploaded_by_user_id: str
    created_at: datetime


class MaintenanceCreate(BaseModel):
    asset_id: str
    title: str
    description: str | None = None
    notes: str | None = None


class MaintenanceTransitionRequest(BaseModel):
    notes: str | None = None


class MaintenanceAttachmentRead(ORMReadModel):
    id: str
    tenant_id: str
    maintenance_id: str
    file_name: str
    content_type: str
    size_bytes: int
    category: MaintenanceAttachmentCategory
    description: str | None = None
    uploaded_by_user_id: str
    created_at: datetime


class MaintenanceRead(ORMReadModel):
    id: str
    tenant_id: str
    asset_id: str
    title: str
    description: str | None = None
    status: MaintenanceStatus
    notes: str | None = None
    created_by_user_id: str
    performed_by_user_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class MaintenanceDetailRead(BaseModel):
    maintenance: MaintenanceRead
    attachments: list[MaintenanceAttachmentRead]


class WarrantyAlertRead(ORMReadModel):
    id: str
    tenant_id: str
    asset_id: str
    alert_type: WarrantyAlertType
    warranty_end_date: date
    days_remaining: int
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by_user_id: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_acknowledged(self) -> bool:
        return derived.is_alert_acknowledged(self)


class WarrantyAlertSummaryRead(BaseModel):
    expiring_count: int
    expired_count: int
    unacknowledged_count: int
    total_count: int


class WarrantyScanRequest(BaseModel):
    as_of: date | None = None


class WarrantyScanRead(BaseModel):
    scanned_assets: int
    created_alerts: int
    skipped_alerts: int
    notifications: int


class NotificationRead(ORMReadModel):
    id: str
    tenant_id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    link: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    is_read: bool
    created_at: datetime
    read_at: datetime | None = None


class NotificationCountRead(BaseModel):
    unread_count: int
    total_count: int
