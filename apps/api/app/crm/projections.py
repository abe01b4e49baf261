"""One read-model projection per sales entity.

Linked records are exposed by public identifier only; internal references never
leave the service layer.
"""

from __future__ import annotations

from app.crm.models import Client, Customer, Lead, PipelineDeal, Quote
from app.crm.schemas import (
    ClientRead,
    CustomerRead,
    LeadRead,
    PipelineDealRead,
    PipelineProductRead,
    QuoteLineRead,
    QuoteRead,
)
from app.platform.tenancy.models import User


def _public_id(record: object | None) -> str | None:
    return getattr(record, "public_id", None) if record is not None else None


def _actor_ids(record: Client | Lead | PipelineDeal | Quote | Customer) -> dict[str, str | None]:
    creator: User | None = record.creator
    updater: User | None = record.updater
    return {
        "organization_id": record.organization.public_id,
        "created_by": _public_id(creator),
        "updated_by": _public_id(updater),
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def project_client(client: Client) -> ClientRead:
    return ClientRead(
        public_id=client.public_id,
        name=client.name,
        company=client.company,
        email=client.email,
        phone=client.phone,
        address=client.address,
        **_actor_ids(client),
    )


def project_lead(lead: Lead) -> LeadRead:
    return LeadRead(
        public_id=lead.public_id,
        name=lead.name,
        email=lead.email,
        phone=lead.phone,
        company=lead.company,
        source=lead.source,
        status=lead.status,
        priority=lead.priority,
        notes=lead.notes,
        tags=list(lead.tags or []),
        budget=lead.budget,
        expected_close_date=lead.expected_close_date,
        assigned_to=_public_id(lead.assignee),
        client_id=_public_id(lead.client),
        pipeline_id=_public_id(lead.deal),
        **_actor_ids(lead),
    )


def project_pipeline(deal: PipelineDeal) -> PipelineDealRead:
    return PipelineDealRead(
        public_id=deal.public_id,
        title=deal.title,
        amount=deal.amount,
        stage=deal.stage,
        probability=deal.probability,
        priority=deal.priority,
        notes=deal.notes,
        tags=list(deal.tags or []),
        expected_close_date=deal.expected_close_date,
        lead_id=_public_id(deal.lead),
        client_id=_public_id(deal.client),
        assigned_to=_public_id(deal.assignee),
        quote_id=_public_id(deal.quote),
        products=[
            PipelineProductRead(name=product.name, quantity=product.quantity, price=product.price)
            for product in deal.products
        ],
        **_actor_ids(deal),
    )


def project_quote(quote: Quote) -> QuoteRead:
    return QuoteRead(
        public_id=quote.public_id,
        title=quote.title,
        amount=quote.amount,
        status=quote.status,
        pipeline_id=_public_id(quote.pipeline),
        client_id=_public_id(quote.client),
        items=[
            QuoteLineRead(
                name=line.name,
                description=line.description,
                quantity=line.quantity,
                price=line.price,
                total=line.total,
            )
            for line in quote.lines
        ],
        discount=quote.discount,
        tax=quote.tax,
        shipping_cost=quote.shipping_cost,
        total=quote.total,
        currency=quote.currency,
        valid_until=quote.valid_until,
        notes=quote.notes,
        **_actor_ids(quote),
    )


def project_customer(customer: Customer) -> CustomerRead:
    return CustomerRead(
        public_id=customer.public_id,
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        address=customer.address,
        status=customer.status,
        total_value=customer.total_value,
        last_purchase=customer.last_purchase,
        **_actor_ids(customer),
    )
