from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import (
    ConflictError,
    InternalError,
    SalesError,
    ValidationFailedError,
)
from app.crm.models import Client, Customer, Lead, PipelineDeal, Quote, QuoteLine
from app.crm.projections import project_pipeline, project_quote
from app.crm.schemas import (
    BulkConvertRead,
    LeadDeleteRead,
    QuoteAcceptanceRead,
    QuoteRead,
    StageTransitionRead,
)
from app.crm.service import publish_event, record_audit
from app.crm.stages import (
    is_terminal,
    line_total,
    money,
    normalize_quote_status,
    normalize_stage,
    quote_status_for_stage,
    quote_total,
)
from app.metrics import (
    observe_conversion_duration,
    observe_conversion_retry,
    observe_leads_converted,
    observe_ledger_update,
    observe_quote_created,
)
from app.platform.security.context import ActorContext
from app.platform.security.resolver import ReferenceResolver, reference_resolver
from app.platform.sequences.service import SequenceAllocator, sequence_allocator


logger = logging.getLogger("app.sales.conversion")
tracer = trace.get_tracer("app.sales.conversion")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _partial_failure(created: list[str], failed_lead_id: str | None) -> dict[str, object]:
    return {"created_pipeline_ids": list(created), "failed_lead_id": failed_lead_id}


@dataclass(slots=True)
class LedgerOutcome:
    customer_public_id: str
    created: bool
    amount: Decimal


@dataclass(slots=True)
class QuoteOutcome:
    quote_public_id: str
    status: str
    created: bool
    action: str
    ledger: LedgerOutcome | None = None


class ConversionEngine:
    """Drives Lead -> Pipeline deal -> Quote -> Customer side effects.

    Every public identifier is resolved inside the actor's organization before
    anything is written. Steps that race on a unique constraint are retried a
    bounded number of times; each retry re-reads the row that won.
    """

    def __init__(
        self,
        allocator: SequenceAllocator | None = None,
        resolver: ReferenceResolver | None = None,
        settings_provider: Callable[[], Settings] = get_settings,
    ) -> None:
        self.allocator = allocator or sequence_allocator
        self.resolver = resolver or reference_resolver
        self.settings_provider = settings_provider

    def transition_stage(
        self,
        session: Session,
        actor: ActorContext,
        pipeline_public_id: str,
        new_stage: str,
    ) -> StageTransitionRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("sales.transition_stage") as span:
            span.set_attribute("pipeline_id", pipeline_public_id)
            stage = normalize_stage(new_stage)
            deal_id = self.resolver.resolve(session, "pipeline", pipeline_public_id, actor.organization_id)

            deal = session.get(PipelineDeal, deal_id)
            previous_stage = deal.stage
            deal.stage = stage
            deal.updated_by = actor.user_id
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise InternalError(
                    "stage change could not be persisted",
                    details={"pipeline_id": pipeline_public_id, "stage": stage},
                ) from exc

            span.set_attribute("stage", stage)
            logger.info(
                "conversion.stage_changed",
                extra={"pipeline_id": pipeline_public_id, "stage": stage, "previous_stage": previous_stage},
            )
            record_audit(
                actor,
                "pipeline",
                pipeline_public_id,
                "stage_change",
                {"stage": previous_stage},
                {"stage": stage},
            )
            publish_event(
                actor,
                "sales.pipeline.stage_changed",
                {"pipeline_id": pipeline_public_id, "previous_stage": previous_stage, "stage": stage},
            )

            outcome: QuoteOutcome | None = None
            if is_terminal(stage):
                outcome = self._ensure_quote(session, actor, deal_id, pipeline_public_id, stage)
                span.set_attribute("quote_id", outcome.quote_public_id)
                span.set_attribute("quote_created", outcome.created)
                self._report_quote_outcome(actor, pipeline_public_id, outcome)

        observe_conversion_duration("transition_stage", time.perf_counter() - started)
        return StageTransitionRead(
            pipeline=project_pipeline(session.get(PipelineDeal, deal_id)),
            quote_id=outcome.quote_public_id if outcome else None,
            quote_created=outcome.created if outcome else False,
        )

    def _ensure_quote(
        self,
        session: Session,
        actor: ActorContext,
        deal_id: uuid.UUID,
        pipeline_public_id: str,
        stage: str,
    ) -> QuoteOutcome:
        settings = self.settings_provider()
        attempts = max(1, settings.conversion_retry_attempts)
        last_conflict: IntegrityError | None = None

        for attempt in range(1, attempts + 1):
            try:
                outcome = self._ensure_quote_once(session, actor, deal_id, stage, settings)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                last_conflict = exc
                observe_conversion_retry("transition_stage")
                logger.warning(
                    "conversion.conflict_retry",
                    extra={"operation": "transition_stage", "pipeline_id": pipeline_public_id, "attempt": attempt},
                )
                continue
            except SalesError as exc:
                session.rollback()
                exc.details.update({"pipeline_id": pipeline_public_id, "stage_persisted": True})
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise InternalError(
                    "quote creation failed",
                    details={"pipeline_id": pipeline_public_id, "stage_persisted": True},
                ) from exc
            return outcome

        raise ConflictError(
            "quote creation kept conflicting",
            details={"pipeline_id": pipeline_public_id, "stage_persisted": True, "attempts": attempts},
        ) from last_conflict

    def _ensure_quote_once(
        self,
        session: Session,
        actor: ActorContext,
        deal_id: uuid.UUID,
        stage: str,
        settings: Settings,
    ) -> QuoteOutcome:
        deal = session.get(PipelineDeal, deal_id)
        existing = session.scalar(
            select(Quote).where(and_(Quote.pipeline_id == deal_id, Quote.organization_id == actor.organization_id))
        )

        if existing is None:
            quote = self._build_quote(session, actor, deal, stage, settings)
            ledger = self._credit_customer(session, actor, quote) if quote.status == "Accepted" else None
            return QuoteOutcome(quote.public_id, quote.status, created=True, action="created", ledger=ledger)

        if settings.terminal_quote_policy == "refresh" and existing.status != "Accepted":
            self._refresh_quote(session, actor, existing, deal, stage)
            ledger = self._credit_customer(session, actor, existing) if existing.status == "Accepted" else None
            return QuoteOutcome(existing.public_id, existing.status, created=False, action="refreshed", ledger=ledger)

        return QuoteOutcome(existing.public_id, existing.status, created=False, action="kept")

    def _build_quote(
        self,
        session: Session,
        actor: ActorContext,
        deal: PipelineDeal,
        stage: str,
        settings: Settings,
    ) -> Quote:
        public_id = self.allocator.allocate(session, "quote")
        quote = Quote(
            public_id=public_id,
            organization_id=deal.organization_id,
            pipeline_id=deal.id,
            client_id=deal.client_id,
            currency=settings.default_currency,
            valid_until=utcnow() + timedelta(days=settings.quote_validity_days),
            created_by=actor.user_id,
        )
        self._apply_deal(quote, deal, stage, actor)
        session.add(quote)
        # Surfaces a concurrent insert for the same deal as IntegrityError.
        session.flush()
        return quote

    def _refresh_quote(
        self,
        session: Session,
        actor: ActorContext,
        quote: Quote,
        deal: PipelineDeal,
        stage: str,
    ) -> None:
        quote.lines.clear()
        session.flush()
        self._apply_deal(quote, deal, stage, actor)
        quote.client_id = deal.client_id
        session.flush()

    def _apply_deal(self, quote: Quote, deal: PipelineDeal, stage: str, actor: ActorContext) -> None:
        lines = [
            QuoteLine(
                position=index,
                name=product.name,
                quantity=product.quantity,
                price=money(product.price),
                total=line_total(product.quantity, product.price),
            )
            for index, product in enumerate(deal.products)
        ]
        quote.title = deal.title
        quote.amount = money(deal.amount)
        quote.status = quote_status_for_stage(stage)
        quote.lines.extend(lines)
        quote.total = quote_total(
            quote.amount,
            [line.total for line in lines],
            discount=quote.discount or Decimal("0"),
            tax=quote.tax or Decimal("0"),
            shipping_cost=quote.shipping_cost or Decimal("0"),
        )
        quote.updated_by = actor.user_id

    def _report_quote_outcome(self, actor: ActorContext, pipeline_public_id: str, outcome: QuoteOutcome) -> None:
        if outcome.action == "kept":
            logger.info(
                "conversion.quote_kept",
                extra={"pipeline_id": pipeline_public_id, "quote_id": outcome.quote_public_id, "status": outcome.status},
            )
            return

        if outcome.created:
            observe_quote_created(outcome.status)
        logger.info(
            f"conversion.quote_{outcome.action}",
            extra={"pipeline_id": pipeline_public_id, "quote_id": outcome.quote_public_id, "status": outcome.status},
        )
        record_audit(
            actor,
            "quote",
            outcome.quote_public_id,
            "create" if outcome.created else "refresh",
            None,
            {"pipeline_id": pipeline_public_id, "status": outcome.status},
        )
        publish_event(
            actor,
            f"sales.quote.{outcome.action}",
            {"quote_id": outcome.quote_public_id, "pipeline_id": pipeline_public_id, "status": outcome.status},
        )
        if outcome.ledger is not None:
            self._report_ledger(actor, outcome.quote_public_id, outcome.ledger)

    def accept_quote(self, session: Session, actor: ActorContext, quote_public_id: str) -> QuoteAcceptanceRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("sales.accept_quote") as span:
            span.set_attribute("quote_id", quote_public_id)
            quote_id = self.resolver.resolve(session, "quote", quote_public_id, actor.organization_id)
            attempts = max(1, self.settings_provider().conversion_retry_attempts)

            for attempt in range(1, attempts + 1):
                try:
                    previous_status, ledger = self._accept_once(session, actor, quote_id)
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    observe_conversion_retry("accept_quote")
                    logger.warning(
                        "conversion.conflict_retry",
                        extra={"operation": "accept_quote", "quote_id": quote_public_id, "attempt": attempt},
                    )
                    continue
                except SalesError:
                    session.rollback()
                    raise
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise InternalError("quote acceptance failed", details={"quote_id": quote_public_id}) from exc
                break
            else:
                raise ConflictError(
                    "quote acceptance kept conflicting",
                    details={"quote_id": quote_public_id, "attempts": attempts},
                )

            changed = previous_status is not None
            span.set_attribute("ledger_applied", ledger is not None)
            if changed:
                logger.info(
                    "conversion.quote_accepted",
                    extra={"quote_id": quote_public_id, "previous_status": previous_status, "status": "Accepted"},
                )
                record_audit(
                    actor,
                    "quote",
                    quote_public_id,
                    "accept",
                    {"status": previous_status},
                    {"status": "Accepted"},
                )
                publish_event(actor, "sales.quote.accepted", {"quote_id": quote_public_id})
            if ledger is not None:
                self._report_ledger(actor, quote_public_id, ledger)

        observe_conversion_duration("accept_quote", time.perf_counter() - started)
        return QuoteAcceptanceRead(
            quote=project_quote(session.get(Quote, quote_id)),
            ledger_applied=ledger is not None,
            customer_id=ledger.customer_public_id if ledger else None,
            customer_created=ledger.created if ledger else False,
        )

    def _accept_once(
        self,
        session: Session,
        actor: ActorContext,
        quote_id: uuid.UUID,
    ) -> tuple[str | None, LedgerOutcome | None]:
        """Flip the quote to Accepted and credit the ledger only if this call made the change."""

        previous_status = session.scalar(select(Quote.status).where(Quote.id == quote_id))
        result = session.execute(
            update(Quote)
            .where(
                and_(
                    Quote.id == quote_id,
                    Quote.organization_id == actor.organization_id,
                    Quote.status != "Accepted",
                )
            )
            .values(status="Accepted", updated_by=actor.user_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None, None

        quote = session.get(Quote, quote_id)
        return previous_status, self._credit_customer(session, actor, quote)

    def set_quote_status(
        self,
        session: Session,
        actor: ActorContext,
        quote_public_id: str,
        status: str,
    ) -> QuoteRead:
        status = normalize_quote_status(status)
        if status == "Accepted":
            return self.accept_quote(session, actor, quote_public_id).quote

        quote_id = self.resolver.resolve(session, "quote", quote_public_id, actor.organization_id)
        quote = session.get(Quote, quote_id)
        previous_status = quote.status
        if previous_status == status:
            return project_quote(quote)
        if previous_status == "Accepted":
            raise ConflictError(
                "accepted quotes cannot change status",
                details={"quote_id": quote_public_id, "status": status},
            )

        quote.status = status
        quote.updated_by = actor.user_id
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise InternalError("quote status update failed", details={"quote_id": quote_public_id}) from exc

        record_audit(actor, "quote", quote_public_id, "status_change", {"status": previous_status}, {"status": status})
        publish_event(
            actor,
            "sales.quote.status_changed",
            {"quote_id": quote_public_id, "previous_status": previous_status, "status": status},
        )
        return project_quote(quote)

    def _credit_customer(self, session: Session, actor: ActorContext, quote: Quote) -> LedgerOutcome | None:
        if quote.client_id is None:
            return None
        client = session.get(Client, quote.client_id)
        if client is None or not client.email:
            return None

        email = client.email.lower()
        amount = money(quote.total)
        now = utcnow()
        result = session.execute(
            update(Customer)
            .where(and_(Customer.organization_id == quote.organization_id, Customer.email == email))
            .values(
                total_value=Customer.total_value + amount,
                last_purchase=now,
                updated_by=actor.user_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            customer_public_id = session.scalar(
                select(Customer.public_id).where(
                    and_(Customer.organization_id == quote.organization_id, Customer.email == email)
                )
            )
            return LedgerOutcome(customer_public_id, created=False, amount=amount)

        customer = Customer(
            public_id=self.allocator.allocate(session, "customer"),
            organization_id=quote.organization_id,
            name=client.name,
            email=email,
            phone=client.phone,
            address=client.address,
            status="Active",
            total_value=amount,
            last_purchase=now,
            created_by=actor.user_id,
            updated_by=actor.user_id,
        )
        session.add(customer)
        # A concurrent first purchase for the same email fails here and the caller retries.
        session.flush()
        return LedgerOutcome(customer.public_id, created=True, amount=amount)

    def _report_ledger(self, actor: ActorContext, quote_public_id: str, ledger: LedgerOutcome) -> None:
        operation = "create" if ledger.created else "increment"
        observe_ledger_update(operation)
        logger.info(
            "conversion.customer_credited",
            extra={"customer_id": ledger.customer_public_id, "quote_id": quote_public_id, "operation": operation},
        )
        record_audit(
            actor,
            "customer",
            ledger.customer_public_id,
            operation,
            None,
            {"quote_id": quote_public_id, "amount": str(ledger.amount)},
        )
        publish_event(
            actor,
            "sales.customer.credited",
            {
                "customer_id": ledger.customer_public_id,
                "quote_id": quote_public_id,
                "amount": str(ledger.amount),
                "created": ledger.created,
            },
        )

    def bulk_convert_leads(
        self,
        session: Session,
        actor: ActorContext,
        lead_public_ids: Sequence[str],
        target_stage: str = "Qualified",
        client_public_id: str | None = None,
        assignee_public_id: str | None = None,
    ) -> BulkConvertRead:
        """Create one pipeline deal per lead, skipping leads that already have one.

        Deals commit one at a time. When lead *k* fails, deals created for the
        earlier leads stay, no lead status changes and the error carries
        ``created_pipeline_ids`` and ``failed_lead_id``. Re-running the same
        request afterwards only creates the missing deals.
        """

        started = time.perf_counter()
        with tracer.start_as_current_span("sales.bulk_convert_leads") as span:
            stage = normalize_stage(target_stage)
            if is_terminal(stage):
                raise ValidationFailedError("leads cannot be converted into a closed stage", details={"stage": stage})

            ordered = list(dict.fromkeys(lead_public_ids))
            if not ordered:
                raise ValidationFailedError("lead_ids must not be empty")
            span.set_attribute("lead_count", len(ordered))

            lead_ids = self.resolver.resolve_many(session, "lead", ordered, actor.organization_id)
            client_id = (
                self.resolver.resolve(session, "client", client_public_id, actor.organization_id)
                if client_public_id
                else None
            )
            assignee_id = (
                self.resolver.resolve(session, "user", assignee_public_id, actor.organization_id)
                if assignee_public_id
                else None
            )

            created: list[str] = []
            skipped: list[str] = []
            processed: list[uuid.UUID] = []
            for lead_public_id, lead_id in zip(ordered, lead_ids):
                try:
                    existing = self._deal_for_lead(session, actor, lead_id)
                    if existing is not None:
                        skipped.append(lead_public_id)
                        processed.append(lead_id)
                        continue
                    pipeline_public_id = self._deal_from_lead(session, actor, lead_id, stage, client_id, assignee_id)
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    observe_conversion_retry("bulk_convert_leads")
                    if self._deal_for_lead(session, actor, lead_id) is None:
                        raise InternalError(
                            "lead conversion failed",
                            details=_partial_failure(created, lead_public_id),
                        ) from exc
                    skipped.append(lead_public_id)
                    processed.append(lead_id)
                    continue
                except SalesError as exc:
                    session.rollback()
                    exc.details.update(_partial_failure(created, lead_public_id))
                    logger.warning(
                        "conversion.bulk_failed",
                        extra={"lead_id": lead_public_id, "created_count": len(created), "error": exc.message},
                    )
                    raise
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise InternalError(
                        "lead conversion failed",
                        details=_partial_failure(created, lead_public_id),
                    ) from exc

                created.append(pipeline_public_id)
                processed.append(lead_id)
                record_audit(
                    actor,
                    "pipeline",
                    pipeline_public_id,
                    "create",
                    None,
                    {"lead_id": lead_public_id, "stage": stage},
                )
                publish_event(
                    actor,
                    "sales.lead.converted",
                    {"lead_id": lead_public_id, "pipeline_id": pipeline_public_id, "stage": stage},
                )

            try:
                session.execute(
                    update(Lead)
                    .where(and_(Lead.id.in_(processed), Lead.organization_id == actor.organization_id))
                    .values(status="Converted", updated_by=actor.user_id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise InternalError(
                    "lead status update failed",
                    details=_partial_failure(created, None),
                ) from exc

            observe_leads_converted("created", len(created))
            observe_leads_converted("skipped", len(skipped))
            logger.info(
                "conversion.leads_converted",
                extra={"created_count": len(created), "skipped_count": len(skipped), "stage": stage},
            )

        observe_conversion_duration("bulk_convert_leads", time.perf_counter() - started)
        return BulkConvertRead(created_pipeline_ids=created, skipped_lead_ids=skipped, converted_lead_ids=ordered)

    def _deal_for_lead(self, session: Session, actor: ActorContext, lead_id: uuid.UUID) -> str | None:
        return session.scalar(
            select(PipelineDeal.public_id).where(
                and_(PipelineDeal.lead_id == lead_id, PipelineDeal.organization_id == actor.organization_id)
            )
        )

    def _deal_from_lead(
        self,
        session: Session,
        actor: ActorContext,
        lead_id: uuid.UUID,
        stage: str,
        client_id: uuid.UUID | None,
        assignee_id: uuid.UUID | None,
    ) -> str:
        lead = session.get(Lead, lead_id)
        deal = PipelineDeal(
            public_id=self.allocator.allocate(session, "pipeline"),
            organization_id=actor.organization_id,
            title=lead.name,
            amount=money(lead.budget),
            stage=stage,
            priority=lead.priority,
            notes=lead.notes,
            tags=list(lead.tags or []),
            expected_close_date=lead.expected_close_date,
            lead_id=lead.id,
            client_id=client_id or lead.client_id,
            assigned_to_id=assignee_id or lead.assigned_to_id or actor.user_id,
            created_by=actor.user_id,
            updated_by=actor.user_id,
        )
        session.add(deal)
        session.flush()
        return deal.public_id

    def delete_lead(self, session: Session, actor: ActorContext, lead_public_id: str) -> LeadDeleteRead:
        with tracer.start_as_current_span("sales.delete_lead") as span:
            span.set_attribute("lead_id", lead_public_id)
            lead_id = self.resolver.resolve(session, "lead", lead_public_id, actor.organization_id)
            lead = session.get(Lead, lead_id)
            deals = list(
                session.scalars(
                    select(PipelineDeal).where(
                        and_(PipelineDeal.lead_id == lead_id, PipelineDeal.organization_id == actor.organization_id)
                    )
                )
            )
            deal_ids = [deal.id for deal in deals]
            deal_public_ids = [deal.public_id for deal in deals]
            quote_public_ids: list[str] = []

            try:
                if deal_ids:
                    quote_public_ids = list(
                        session.scalars(select(Quote.public_id).where(Quote.pipeline_id.in_(deal_ids)))
                    )
                    session.execute(
                        update(Quote)
                        .where(Quote.pipeline_id.in_(deal_ids))
                        .values(pipeline_id=None, updated_by=actor.user_id, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                for deal in deals:
                    session.delete(deal)
                session.delete(lead)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise InternalError("lead deletion failed", details={"lead_id": lead_public_id}) from exc

        logger.info(
            "conversion.lead_deleted",
            extra={"lead_id": lead_public_id, "deleted_count": len(deal_public_ids)},
        )
        record_audit(
            actor,
            "lead",
            lead_public_id,
            "delete",
            {"pipeline_ids": deal_public_ids, "quote_ids": quote_public_ids},
            None,
        )
        for pipeline_public_id in deal_public_ids:
            record_audit(actor, "pipeline", pipeline_public_id, "delete", {"lead_id": lead_public_id}, None)
        publish_event(
            actor,
            "sales.lead.deleted",
            {"lead_id": lead_public_id, "pipeline_ids": deal_public_ids, "unlinked_quote_ids": quote_public_ids},
        )
        return LeadDeleteRead(
            lead_id=lead_public_id,
            deleted_pipeline_ids=deal_public_ids,
            unlinked_quote_ids=quote_public_ids,
        )


conversion_engine = ConversionEngine()
