from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.errors import AllocationFailedError, ConflictError
from app.crm.models import Client, Customer, Lead, PipelineDeal, PipelineProduct, Quote
from app.crm.projections import project_client, project_customer, project_lead, project_pipeline, project_quote
from app.crm.schemas import (
    ClientCreate,
    ClientRead,
    CustomerRead,
    LeadCreate,
    LeadRead,
    PipelineDealCreate,
    PipelineDealRead,
    QuoteRead,
)
from app.crm.stages import money, normalize_lead_status, normalize_quote_status, normalize_stage
from app.platform.security.context import ActorContext
from app.platform.security.resolver import ReferenceResolver, reference_resolver
from app.platform.sequences.service import SequenceAllocator, sequence_allocator


logger = logging.getLogger("app.sales.records")

def record_audit(
    actor: ActorContext,
    entity_type: str,
    public_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> None:
    audit.record(
        actor_user_id=actor.user_public_id,
        organization_id=actor.organization_public_id,
        entity_type=entity_type,
        entity_id=public_id,
        action=action,
        before=before,
        after=after,
        correlation_id=actor.correlation_id,
    )


def publish_event(actor: ActorContext, event_type: str, payload: dict[str, Any]) -> None:
    events.publish(
        event_type,
        organization_id=actor.organization_public_id,
        actor_user_id=actor.user_public_id,
        payload=payload,
        correlation_id=actor.correlation_id,
    )


class SalesRecordService:
    """Shared plumbing for tenant-scoped sales records."""

    entity_type = ""
    model: Any = None

    def __init__(
        self,
        allocator: SequenceAllocator | None = None,
        resolver: ReferenceResolver | None = None,
    ) -> None:
        self.allocator = allocator or sequence_allocator
        self.resolver = resolver or reference_resolver

    def load(self, session: Session, actor: ActorContext, public_id: str) -> Any:
        record_id = self.resolver.resolve(session, self.entity_type, public_id, actor.organization_id)
        return session.get(self.model, record_id)

    def resolve_optional(
        self,
        session: Session,
        actor: ActorContext,
        entity_type: str,
        public_id: str | None,
    ) -> uuid.UUID | None:
        if public_id is None:
            return None
        return self.resolver.resolve(session, entity_type, public_id, actor.organization_id)

    def _list(self, session: Session, actor: ActorContext, *filters: Any) -> list[Any]:
        stmt = (
            select(self.model)
            .where(and_(self.model.organization_id == actor.organization_id, *filters))
            .order_by(self.model.created_at.asc(), self.model.public_id.asc())
        )
        return list(session.scalars(stmt))


class ClientService(SalesRecordService):
    entity_type = "client"
    model = Client

    def create_client(self, session: Session, actor: ActorContext, dto: ClientCreate) -> ClientRead:
        try:
            client = Client(
                public_id=self.allocator.allocate(session, self.entity_type),
                organization_id=actor.organization_id,
                name=dto.name,
                company=dto.company,
                email=str(dto.email).lower() if dto.email is not None else None,
                phone=dto.phone,
                address=dto.address,
                created_by=actor.user_id,
                updated_by=actor.user_id,
            )
            session.add(client)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise

        result = project_client(client)
        record_audit(actor, self.entity_type, client.public_id, "create", None, result.model_dump(mode="json"))
        return result

    def get_client(self, session: Session, actor: ActorContext, public_id: str) -> ClientRead:
        return project_client(self.load(session, actor, public_id))

    def list_clients(self, session: Session, actor: ActorContext) -> list[ClientRead]:
        return [project_client(client) for client in self._list(session, actor)]


class LeadService(SalesRecordService):
    entity_type = "lead"
    model = Lead

    def create_lead(self, session: Session, actor: ActorContext, dto: LeadCreate) -> LeadRead:
        status = normalize_lead_status(dto.status)
        client_id = self.resolve_optional(session, actor, "client", dto.client_id)
        assignee_id = self.resolve_optional(session, actor, "user", dto.assigned_to)

        try:
            lead = Lead(
                public_id=self.allocator.allocate(session, self.entity_type),
                organization_id=actor.organization_id,
                name=dto.name,
                email=str(dto.email).lower() if dto.email is not None else None,
                phone=dto.phone,
                company=dto.company,
                source=dto.source,
                status=status,
                priority=dto.priority,
                notes=dto.notes,
                tags=list(dto.tags),
                budget=money(dto.budget) if dto.budget is not None else None,
                expected_close_date=dto.expected_close_date,
                assigned_to_id=assignee_id,
                client_id=client_id,
                created_by=actor.user_id,
                updated_by=actor.user_id,
            )
            session.add(lead)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise

        result = project_lead(lead)
        record_audit(actor, self.entity_type, lead.public_id, "create", None, result.model_dump(mode="json"))
        publish_event(actor, "sales.lead.created", {"lead_id": lead.public_id, "status": lead.status})
        return result

    def get_lead(self, session: Session, actor: ActorContext, public_id: str) -> LeadRead:
        return project_lead(self.load(session, actor, public_id))

    def list_leads(self, session: Session, actor: ActorContext, status: str | None = None) -> list[LeadRead]:
        filters = [Lead.status == normalize_lead_status(status)] if status else []
        return [project_lead(lead) for lead in self._list(session, actor, *filters)]


class PipelineService(SalesRecordService):
    entity_type = "pipeline"
    model = PipelineDeal

    def create_deal(self, session: Session, actor: ActorContext, dto: PipelineDealCreate) -> PipelineDealRead:
        stage = normalize_stage(dto.stage)
        lead_id = self.resolve_optional(session, actor, "lead", dto.lead_id)
        client_id = self.resolve_optional(session, actor, "client", dto.client_id)
        assignee_id = self.resolve_optional(session, actor, "user", dto.assigned_to)

        try:
            deal = PipelineDeal(
                public_id=self.allocator.allocate(session, self.entity_type),
                organization_id=actor.organization_id,
                title=dto.title,
                amount=money(dto.amount),
                stage=stage,
                probability=dto.probability,
                priority=dto.priority,
                notes=dto.notes,
                tags=list(dto.tags),
                expected_close_date=dto.expected_close_date,
                lead_id=lead_id,
                client_id=client_id,
                assigned_to_id=assignee_id or actor.user_id,
                created_by=actor.user_id,
                updated_by=actor.user_id,
                products=[
                    PipelineProduct(position=index, name=item.name, quantity=item.quantity, price=money(item.price))
                    for index, item in enumerate(dto.products)
                ],
            )
            session.add(deal)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("lead already has a pipeline deal", details={"lead_id": dto.lead_id}) from exc

        result = project_pipeline(deal)
        record_audit(actor, self.entity_type, deal.public_id, "create", None, result.model_dump(mode="json"))
        publish_event(actor, "sales.pipeline.created", {"pipeline_id": deal.public_id, "stage": deal.stage})
        logger.info("pipeline.created", extra={"pipeline_id": deal.public_id, "stage": deal.stage})
        return result

    def get_deal(self, session: Session, actor: ActorContext, public_id: str) -> PipelineDealRead:
        return project_pipeline(self.load(session, actor, public_id))

    def list_deals(self, session: Session, actor: ActorContext, stage: str | None = None) -> list[PipelineDealRead]:
        filters = [PipelineDeal.stage == normalize_stage(stage)] if stage else []
        return [project_pipeline(deal) for deal in self._list(session, actor, *filters)]


class QuoteService(SalesRecordService):
    entity_type = "quote"
    model = Quote

    def get_quote(self, session: Session, actor: ActorContext, public_id: str) -> QuoteRead:
        return project_quote(self.load(session, actor, public_id))

    def list_quotes(self, session: Session, actor: ActorContext, status: str | None = None) -> list[QuoteRead]:
        filters = [Quote.status == normalize_quote_status(status)] if status else []
        return [project_quote(quote) for quote in self._list(session, actor, *filters)]


class CustomerService(SalesRecordService):
    entity_type = "customer"
    model = Customer

    def get_customer(self, session: Session, actor: ActorContext, public_id: str) -> CustomerRead:
        return project_customer(self.load(session, actor, public_id))

    def list_customers(self, session: Session, actor: ActorContext) -> list[CustomerRead]:
        return [project_customer(customer) for customer in self._list(session, actor)]


client_service = ClientService()
lead_service = LeadService()
pipeline_service = PipelineService()
quote_service = QuoteService()
customer_service = CustomerService()
