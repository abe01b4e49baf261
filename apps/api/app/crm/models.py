from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from app.core.database import Base
from app.platform.security.resolver import register_public_reference
from app.platform.tenancy.models import Organization, User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


LEAD_STATUSES = ("New", "Contacted", "Qualified", "Converted", "Lost")
PRIORITIES = ("low", "medium", "high")
PIPELINE_STAGES = ("Qualified", "Proposal", "Negotiation", "Contract", "ClosedWon", "ClosedLost")
TERMINAL_STAGES = frozenset({"ClosedWon", "ClosedLost"})
QUOTE_STATUSES = ("Pending", "Accepted", "Declined", "Expired")
CUSTOMER_STATUSES = ("Active", "Inactive")


class TenantOwnedMixin:
    """Columns every sales record carries."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    public_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("organization.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True
    )
    updated_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @declared_attr
    def creator(cls) -> Mapped[User | None]:
        return relationship("User", foreign_keys=f"{cls.__name__}.created_by")

    @declared_attr
    def updater(cls) -> Mapped[User | None]:
        return relationship("User", foreign_keys=f"{cls.__name__}.updated_by")


class Client(TenantOwnedMixin, Base):
    __tablename__ = "sales_client"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    organization: Mapped[Organization] = relationship("Organization")


class Lead(TenantOwnedMixin, Base):
    __tablename__ = "sales_lead"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="New", server_default="New")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True
    )
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True
    )

    organization: Mapped[Organization] = relationship("Organization")
    assignee: Mapped[User | None] = relationship("User", foreign_keys=[assigned_to_id])
    client: Mapped[Client | None] = relationship("Client")
    deal: Mapped[PipelineDeal | None] = relationship("PipelineDeal", back_populates="lead", uselist=False)


class PipelineDeal(TenantOwnedMixin, Base):
    __tablename__ = "sales_pipeline_deal"
    __table_args__ = (Index("ix_sales_pipeline_deal_org_stage", "organization_id", "stage"),)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="Qualified", server_default="Qualified")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Unique: a lead produces at most one deal, which makes bulk conversion re-runnable.
    lead_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_lead.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True
    )
    assigned_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("app_user.id", ondelete="SET NULL"), nullable=True
    )

    organization: Mapped[Organization] = relationship("Organization")
    lead: Mapped[Lead | None] = relationship("Lead", back_populates="deal")
    client: Mapped[Client | None] = relationship("Client")
    assignee: Mapped[User | None] = relationship("User", foreign_keys=[assigned_to_id])
    products: Mapped[list[PipelineProduct]] = relationship(
        "PipelineProduct",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="PipelineProduct.position",
    )
    quote: Mapped[Quote | None] = relationship("Quote", back_populates="pipeline", uselist=False)


class PipelineProduct(Base):
    __tablename__ = "sales_pipeline_product"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_pipeline_deal.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))

    deal: Mapped[PipelineDeal] = relationship("PipelineDeal", back_populates="products")


class Quote(TenantOwnedMixin, Base):
    __tablename__ = "sales_quote"

    title: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Pending", server_default="Pending")
    # Unique: at most one quote per pipeline deal, enforced by the database.
    pipeline_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_pipeline_deal.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("sales_client.id", ondelete="SET NULL"), nullable=True
    )
    discount: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False, default=Decimal("0"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    organization: Mapped[Organization] = relationship("Organization")
    pipeline: Mapped[PipelineDeal | None] = relationship("PipelineDeal", back_populates="quote")
    client: Mapped[Client | None] = relationship("Client")
    lines: Mapped[list[QuoteLine]] = relationship(
        "QuoteLine",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteLine.position",
    )


class QuoteLine(Base):
    __tablename__ = "sales_quote_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_quote.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))

    quote: Mapped[Quote] = relationship("Quote", back_populates="lines")


class Customer(TenantOwnedMixin, Base):
    __tablename__ = "sales_customer"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_sales_customer_org_email"),)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Active", server_default="Active")
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    last_purchase: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    organization: Mapped[Organization] = relationship("Organization")


register_public_reference("client", Client)
register_public_reference("lead", Lead)
register_public_reference("pipeline", PipelineDeal)
register_public_reference("quote", Quote)
register_public_reference("customer", Customer)
