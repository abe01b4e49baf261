from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import AllocationFailedError, NotFoundError, ValidationFailedError
from app.crm.conversion import ConversionEngine
from app.crm.models import Lead, PipelineDeal, Quote
from app.crm.schemas import ClientCreate, LeadCreate
from app.crm.service import ClientService, LeadService, PipelineService, QuoteService
from app.platform.security.context import ActorContext
from app.platform.tenancy.models import Organization, User
from app.platform.tenancy.schemas import OrganizationCreate, UserCreate
from app.platform.tenancy.service import TenancyService


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


def _actor(session: Session, name: str = "Acme") -> ActorContext:
    tenancy = TenancyService()
    organization = tenancy.create_organization(session, OrganizationCreate(name=name))
    user = tenancy.create_user(
        session,
        organization.public_id,
        UserCreate(name=f"{name} Rep", email=f"rep@{name.lower()}.example.com"),
    )
    return ActorContext(
        user_id=session.scalar(select(User.id).where(User.public_id == user.public_id)),
        user_public_id=user.public_id,
        organization_id=session.scalar(select(Organization.id).where(Organization.public_id == organization.public_id)),
        organization_public_id=organization.public_id,
    )


def _lead(session: Session, actor: ActorContext, name: str, **fields) -> str:  # type: ignore[no-untyped-def]
    return LeadService().create_lead(session, actor, LeadCreate(name=name, **fields)).public_id


def _lead_status(session: Session, public_id: str) -> str:
    return session.scalar(select(Lead.status).where(Lead.public_id == public_id))


def _deal_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(PipelineDeal))


def test_converts_lead_into_qualified_deal(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(
        db_session,
        actor,
        "Acme Corp",
        budget=Decimal("12000"),
        priority="high",
        tags=["enterprise"],
        notes="Met at expo",
    )

    result = ConversionEngine().bulk_convert_leads(db_session, actor, [lead_id])

    assert len(result.created_pipeline_ids) == 1
    assert result.skipped_lead_ids == []
    assert result.converted_lead_ids == [lead_id]

    deal = PipelineService().get_deal(db_session, actor, result.created_pipeline_ids[0])
    assert deal.public_id.startswith("PIP")
    assert deal.title == "Acme Corp"
    assert deal.stage == "Qualified"
    assert deal.amount == Decimal("12000")
    assert deal.priority == "high"
    assert deal.tags == ["enterprise"]
    assert deal.notes == "Met at expo"
    assert deal.lead_id == lead_id
    assert deal.assigned_to == actor.user_public_id
    assert _lead_status(db_session, lead_id) == "Converted"
    assert LeadService().get_lead(db_session, actor, lead_id).pipeline_id == deal.public_id


def test_rerun_skips_leads_that_already_have_a_deal(db_session: Session) -> None:
    actor = _actor(db_session)
    first = _lead(db_session, actor, "Acme Corp")
    second = _lead(db_session, actor, "Globex")
    engine = ConversionEngine()

    initial = engine.bulk_convert_leads(db_session, actor, [first])
    rerun = engine.bulk_convert_leads(db_session, actor, [first, second])

    assert len(initial.created_pipeline_ids) == 1
    assert rerun.skipped_lead_ids == [first]
    assert len(rerun.created_pipeline_ids) == 1
    assert rerun.converted_lead_ids == [first, second]
    assert _deal_count(db_session) == 2
    assert _lead_status(db_session, second) == "Converted"


def test_duplicate_lead_ids_collapse(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(db_session, actor, "Acme Corp")

    result = ConversionEngine().bulk_convert_leads(db_session, actor, [lead_id, lead_id, lead_id])

    assert len(result.created_pipeline_ids) == 1
    assert result.converted_lead_ids == [lead_id]
    assert _deal_count(db_session) == 1


def test_client_and_assignee_override_lead_values(db_session: Session) -> None:
    actor = _actor(db_session)
    tenancy = TenancyService()
    closer = tenancy.create_user(
        db_session,
        actor.organization_public_id,
        UserCreate(name="Closer", email="closer@acme.example.com"),
    )
    client = ClientService().create_client(db_session, actor, ClientCreate(name="Acme Holdings"))
    lead_id = _lead(db_session, actor, "Acme Corp")

    result = ConversionEngine().bulk_convert_leads(
        db_session,
        actor,
        [lead_id],
        target_stage="Proposal",
        client_public_id=client.public_id,
        assignee_public_id=closer.public_id,
    )

    deal = PipelineService().get_deal(db_session, actor, result.created_pipeline_ids[0])
    assert deal.stage == "Proposal"
    assert deal.client_id == client.public_id
    assert deal.assigned_to == closer.public_id


def test_closed_target_stage_is_rejected(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(db_session, actor, "Acme Corp")

    with pytest.raises(ValidationFailedError):
        ConversionEngine().bulk_convert_leads(db_session, actor, [lead_id], target_stage="ClosedWon")

    assert _deal_count(db_session) == 0
    assert _lead_status(db_session, lead_id) == "New"


def test_unknown_lead_fails_before_any_write(db_session: Session) -> None:
    owner = _actor(db_session, "Acme")
    outsider = _actor(db_session, "Globex")
    own_lead = _lead(db_session, outsider, "Initech")
    foreign_lead = _lead(db_session, owner, "Acme Corp")

    with pytest.raises(NotFoundError):
        ConversionEngine().bulk_convert_leads(db_session, outsider, [own_lead, foreign_lead])

    assert _deal_count(db_session) == 0
    assert _lead_status(db_session, own_lead) == "New"


def test_partial_failure_reports_created_deals_and_failed_lead(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    actor = _actor(db_session)
    first = _lead(db_session, actor, "Acme Corp")
    second = _lead(db_session, actor, "Globex")
    third = _lead(db_session, actor, "Initech")
    engine = ConversionEngine()
    original = engine._deal_from_lead
    calls: list[int] = []

    def flaky_deal_from_lead(session, actor, lead_id, stage, client_id, assignee_id):  # type: ignore[no-untyped-def]
        calls.append(1)
        if len(calls) == 2:
            raise AllocationFailedError("identifier allocation failed", details={"counter": "pipelineId"})
        return original(session, actor, lead_id, stage, client_id, assignee_id)

    monkeypatch.setattr(engine, "_deal_from_lead", flaky_deal_from_lead)

    with pytest.raises(AllocationFailedError) as exc_info:
        engine.bulk_convert_leads(db_session, actor, [first, second, third])

    details = exc_info.value.details
    assert details["failed_lead_id"] == second
    assert len(details["created_pipeline_ids"]) == 1
    assert details["counter"] == "pipelineId"
    assert _deal_count(db_session) == 1
    assert [_lead_status(db_session, item) for item in (first, second, third)] == ["New", "New", "New"]

    monkeypatch.setattr(engine, "_deal_from_lead", original)
    retry = engine.bulk_convert_leads(db_session, actor, [first, second, third])

    assert retry.skipped_lead_ids == [first]
    assert len(retry.created_pipeline_ids) == 2
    assert _deal_count(db_session) == 3
    assert {_lead_status(db_session, item) for item in (first, second, third)} == {"Converted"}


def test_conversion_is_audited_and_published(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(db_session, actor, "Acme Corp")

    result = ConversionEngine().bulk_convert_leads(db_session, actor, [lead_id])

    pipeline_id = result.created_pipeline_ids[0]
    assert audit.entries_for("pipeline", pipeline_id)[0]["after"] == {"lead_id": lead_id, "stage": "Qualified"}
    converted = [item for item in events.published_events if item["event_type"] == "sales.lead.converted"]
    assert converted[0]["payload"]["pipeline_id"] == pipeline_id


def test_delete_lead_removes_deal_and_unlinks_quote(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(db_session, actor, "Acme Corp", budget=Decimal("900"))
    engine = ConversionEngine()
    pipeline_id = engine.bulk_convert_leads(db_session, actor, [lead_id]).created_pipeline_ids[0]
    quote_id = engine.transition_stage(db_session, actor, pipeline_id, "ClosedLost").quote_id

    result = engine.delete_lead(db_session, actor, lead_id)

    assert result.lead_id == lead_id
    assert result.deleted_pipeline_ids == [pipeline_id]
    assert result.unlinked_quote_ids == [quote_id]
    assert _deal_count(db_session) == 0
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 0

    db_session.expire_all()
    quote = QuoteService().get_quote(db_session, actor, quote_id)
    assert quote.pipeline_id is None
    assert quote.status == "Declined"
    assert db_session.scalar(select(func.count()).select_from(Quote)) == 1

    with pytest.raises(NotFoundError):
        LeadService().get_lead(db_session, actor, lead_id)
    assert [item["event_type"] for item in events.published_events][-1] == "sales.lead.deleted"


def test_delete_lead_without_deal(db_session: Session) -> None:
    actor = _actor(db_session)
    lead_id = _lead(db_session, actor, "Acme Corp")

    result = ConversionEngine().delete_lead(db_session, actor, lead_id)

    assert result.deleted_pipeline_ids == []
    assert result.unlinked_quote_ids == []


def test_delete_foreign_lead_is_not_found(db_session: Session) -> None:
    owner = _actor(db_session, "Acme")
    outsider = _actor(db_session, "Globex")
    lead_id = _lead(db_session, owner, "Acme Corp")

    with pytest.raises(NotFoundError):
        ConversionEngine().delete_lead(db_session, outsider, lead_id)

    assert _lead_status(db_session, lead_id) == "New"
