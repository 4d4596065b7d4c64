"""SQLAlchemy 2.0 ORM table definitions for the agency billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for schema creation and the repository
layer.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timestamp column that always reads back timezone-aware UTC.

    SQLite drops the offset on storage; values are re-tagged as UTC on load.
    """

    impl = DateTime
    cache_ok = True

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing state tables."""


# ---------------------------------------------------------------------------
# Agencies and membership
# ---------------------------------------------------------------------------


class AgencyTable(Base):
    """Tenant root: one row per agency.

    ``stripe_subscription_id`` may only be set once ``stripe_customer_id``
    is, enforced by a check constraint.
    """

    __tablename__ = "agencies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    subscription_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    billing_type: Mapped[str] = mapped_column(String(16), nullable=False, default="paid")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "stripe_subscription_id IS NULL OR stripe_customer_id IS NOT NULL",
            name="ck_agencies_subscription_requires_customer",
        ),
        CheckConstraint(
            "billing_type IN ('paid', 'free', 'custom', 'trial')",
            name="ck_agencies_billing_type",
        ),
        Index("ix_agencies_stripe_customer", "stripe_customer_id"),
        Index("ix_agencies_stripe_subscription", "stripe_subscription_id"),
    )


class AgencyMemberTable(Base):
    """Users belonging to an agency.  Clients are owned through these users."""

    __tablename__ = "agency_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="agency")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("agency_id", "user_id", name="uq_agency_members_agency_user"),
        Index("ix_agency_members_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ClientTable(Base):
    """A client dashboard.

    Ownership runs through ``user_id`` (an agency member); clients created
    on an agency's behalf by an operator carry ``belongs_to_agency_id``
    instead.
    """

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    domain: Mapped[str | None] = mapped_column(String(512), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    belongs_to_agency_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("agencies.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DASHBOARD_ONLY")
    managed_service_status: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    managed_service_package: Mapped[str | None] = mapped_column(String(32), nullable=True)
    managed_service_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    managed_service_requested_date: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    managed_service_activated_date: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    managed_service_canceled_date: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    managed_service_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    canceled_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PENDING', 'REJECTED', 'DASHBOARD_ONLY', 'CANCELED', 'SUSPENDED', 'ARCHIVED')",
            name="ck_clients_status",
        ),
        CheckConstraint(
            "managed_service_status IN ('none', 'pending', 'active', 'canceled', 'suspended', 'archived')",
            name="ck_clients_managed_service_status",
        ),
        Index("ix_clients_user", "user_id"),
        Index("ix_clients_agency", "belongs_to_agency_id"),
        Index("ix_clients_status_end_date", "status", "canceled_end_date"),
    )


# ---------------------------------------------------------------------------
# Managed services
# ---------------------------------------------------------------------------

_OPEN_MANAGED_SERVICE = text("status IN ('PENDING', 'ACTIVE')")


class ManagedServiceTable(Base):
    """One managed-service engagement for an (agency, client) pair.

    Rows are never deleted.  The partial unique index allows at most one
    ``PENDING`` and one ``ACTIVE`` row per pair; ``CANCELED`` rows are
    unrestricted.
    """

    __tablename__ = "managed_services"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.id"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), ForeignKey("clients.id"), nullable=False)
    package_id: Mapped[str] = mapped_column(String(32), nullable=False)
    package_name: Mapped[str] = mapped_column(String(128), nullable=False)
    monthly_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_commission_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("status IN ('PENDING', 'ACTIVE', 'CANCELED')", name="ck_managed_services_status"),
        Index(
            "uq_managed_services_open_per_client",
            "agency_id",
            "client_id",
            "status",
            unique=True,
            postgresql_where=_OPEN_MANAGED_SERVICE,
            sqlite_where=_OPEN_MANAGED_SERVICE,
        ),
        Index("ix_managed_services_agency_status", "agency_id", "status"),
        Index("ix_managed_services_client", "client_id"),
    )


class ManagedServiceRequestTable(Base):
    """Write-once audit copy of each managed-service request."""

    __tablename__ = "managed_service_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    managed_service_id: Mapped[str] = mapped_column(String(64), ForeignKey("managed_services.id"), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agency_name: Mapped[str] = mapped_column(String(256), nullable=False)
    agency_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_name: Mapped[str] = mapped_column(String(256), nullable=False)
    package_id: Mapped[str] = mapped_column(String(32), nullable=False)
    package_name: Mapped[str] = mapped_column(String(128), nullable=False)
    monthly_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_managed_service_requests_agency", "agency_id", "created_at"),)


# ---------------------------------------------------------------------------
# Add-ons
# ---------------------------------------------------------------------------


class AgencyAddOnTable(Base):
    """One attached add-on.  Deleted outright on detach."""

    __tablename__ = "agency_add_ons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.id"), nullable=False)
    add_on_type: Mapped[str] = mapped_column(String(32), nullable=False)
    add_on_option: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("agency_id", "add_on_type", "add_on_option", name="uq_agency_add_ons_option"),
        Index("ix_agency_add_ons_agency", "agency_id"),
    )
