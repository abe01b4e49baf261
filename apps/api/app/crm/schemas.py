from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, EmailStr, Field


Priority = Literal["low", "medium", "high"]


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None


class ClientRead(BaseModel):
    public_id: str
    organization_id: str
    name: str
    company: str | None
    email: str | None
    phone: str | None
    address: str | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    source: str | None = None
    status: str = "New"
    priority: Priority = "medium"
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    budget: Decimal | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    assigned_to: str | None = None
    client_id: str | None = None


class LeadRead(BaseModel):
    public_id: str
    organization_id: str
    name: str
    email: str | None
    phone: str | None
    company: str | None
    source: str | None
    status: str
    priority: str
    notes: str | None
    tags: list[str]
    budget: Decimal | None
    expected_close_date: date | None
    assigned_to: str | None
    client_id: str | None
    pipeline_id: str | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class PipelineProductInput(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Decimal = Field(default=Decimal("0"), ge=0)


class PipelineProductRead(BaseModel):
    name: str
    quantity: int
    price: Decimal


class PipelineDealCreate(BaseModel):
    title: str = Field(min_length=1)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    stage: str = "Qualified"
    probability: int = Field(default=0, ge=0, le=100)
    priority: Priority = "medium"
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    expected_close_date: date | None = None
    lead_id: str | None = None
    client_id: str | None = None
    assigned_to: str | None = None
    products: list[PipelineProductInput] = Field(default_factory=list)


class PipelineDealRead(BaseModel):
    public_id: str
    organization_id: str
    title: str
    amount: Decimal
    stage: str
    probability: int
    priority: str
    notes: str | None
    tags: list[str]
    expected_close_date: date | None
    lead_id: str | None
    client_id: str | None
    assigned_to: str | None
    quote_id: str | None
    products: list[PipelineProductRead]
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class QuoteLineRead(BaseModel):
    name: str
    description: str | None
    quantity: int
    price: Decimal
    total: Decimal


class QuoteRead(BaseModel):
    public_id: str
    organization_id: str
    title: str
    amount: Decimal
    status: str
    pipeline_id: str | None
    client_id: str | None
    items: list[QuoteLineRead]
    discount: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    currency: str
    valid_until: datetime | None
    notes: str | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class CustomerRead(BaseModel):
    public_id: str
    organization_id: str
    name: str
    email: str
    phone: str | None
    address: str | None
    status: str
    total_value: Decimal
    last_purchase: datetime | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class StageTransitionRequest(BaseModel):
    stage: str = Field(min_length=1)


class StageTransitionRead(BaseModel):
    pipeline: PipelineDealRead
    quote_id: str | None
    quote_created: bool


class QuoteStatusRequest(BaseModel):
    status: str = Field(min_length=1)


class QuoteAcceptanceRead(BaseModel):
    quote: QuoteRead
    ledger_applied: bool
    customer_id: str | None
    customer_created: bool


class BulkConvertRequest(BaseModel):
    lead_ids: list[str] = Field(min_length=1)
    stage: str = "Qualified"
    client_id: str | None = None
    assigned_to: str | None = None


class BulkConvertRead(BaseModel):
    created_pipeline_ids: list[str]
    skipped_lead_ids: list[str]
    converted_lead_ids: list[str]


class LeadDeleteRead(BaseModel):
    lead_id: str
    deleted_pipeline_ids: list[str]
    unlinked_quote_ids: list[str]
