from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import Settings, get_settings
from app.core.database import Base
from app.core.errors import AllocationFailedError, NotFoundError, ValidationFailedError
from app.crm.conversion import ConversionEngine
from app.crm.models import Customer, PipelineDeal, Quote
from app.crm.schemas import ClientCreate, PipelineDealCreate, PipelineProductInput
from app.crm.service import ClientService, CustomerService, PipelineService, QuoteService
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
        correlation_id="corr-stage-1",
    )


def _deal(session: Session, actor: ActorContext, *, amount: str = "5000", with_client: bool = True) -> str:
    client_id = None
    if with_client:
        client = ClientService().create_client(
            session,
            actor,
            ClientCreate(name="Acme Corp", email="buyer@acme.example.com", phone="555-0100", address="1 Main St"),
        )
        client_id = client.public_id
    deal = PipelineService().create_deal(
        session,
        actor,
        PipelineDealCreate(
            title="Acme rollout",
            amount=Decimal(amount),
            client_id=client_id,
            products=[PipelineProductInput(name="Widget", quantity=2, price=Decimal("100"))],
        ),
    )
    return deal.public_id


def _quote_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Quote))


def test_closed_won_creates_accepted_quote_from_deal(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    result = ConversionEngine().transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    assert result.pipeline.stage == "ClosedWon"
    assert result.quote_created is True
    assert result.quote_id is not None
    assert result.quote_id.startswith("QT")
    assert result.pipeline.quote_id == result.quote_id

    quote = QuoteService().get_quote(db_session, actor, result.quote_id)
    assert quote.status == "Accepted"
    assert quote.amount == Decimal("5000")
    assert quote.total == Decimal("5000")
    assert quote.pipeline_id == pipeline_id
    assert quote.client_id == result.pipeline.client_id
    assert len(quote.items) == 1
    assert quote.items[0].name == "Widget"
    assert quote.items[0].quantity == 2
    assert quote.items[0].total == Decimal("200")
    assert quote.valid_until is not None
    assert quote.created_by == actor.user_public_id


def test_closed_won_credits_customer_ledger(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    ConversionEngine().transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    customers = CustomerService().list_customers(db_session, actor)
    assert len(customers) == 1
    assert customers[0].email == "buyer@acme.example.com"
    assert customers[0].total_value == Decimal("5000")
    assert customers[0].status == "Active"
    assert customers[0].last_purchase is not None


def test_closed_lost_creates_declined_quote_without_customer(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    result = ConversionEngine().transition_stage(db_session, actor, pipeline_id, "Closed Lost")

    assert result.pipeline.stage == "ClosedLost"
    quote = QuoteService().get_quote(db_session, actor, result.quote_id)
    assert quote.status == "Declined"
    assert db_session.scalar(select(func.count()).select_from(Customer)) == 0


def test_repeated_terminal_transition_keeps_single_quote(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)
    engine = ConversionEngine()

    first = engine.transition_stage(db_session, actor, pipeline_id, "ClosedWon")
    second = engine.transition_stage(db_session, actor, pipeline_id, "Closed Won")
    third = engine.transition_stage(db_session, actor, pipeline_id, "ClosedLost")

    assert first.quote_created is True
    assert second.quote_created is False
    assert third.quote_created is False
    assert first.quote_id == second.quote_id == third.quote_id
    assert _quote_count(db_session) == 1
    assert QuoteService().get_quote(db_session, actor, first.quote_id).status == "Accepted"

    customers = CustomerService().list_customers(db_session, actor)
    assert customers[0].total_value == Decimal("5000")


def test_non_terminal_stage_does_not_create_quote(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    result = ConversionEngine().transition_stage(db_session, actor, pipeline_id, "Negotiation")

    assert result.pipeline.stage == "Negotiation"
    assert result.quote_id is None
    assert result.quote_created is False
    assert _quote_count(db_session) == 0


def test_invalid_stage_is_rejected_without_changes(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    with pytest.raises(ValidationFailedError) as exc_info:
        ConversionEngine().transition_stage(db_session, actor, pipeline_id, "Won")

    assert exc_info.value.message == "invalid stage"
    assert PipelineService().get_deal(db_session, actor, pipeline_id).stage == "Qualified"


def test_deal_from_other_organization_is_not_found(db_session: Session) -> None:
    owner = _actor(db_session, "Acme")
    outsider = _actor(db_session, "Globex")
    pipeline_id = _deal(db_session, owner)

    with pytest.raises(NotFoundError):
        ConversionEngine().transition_stage(db_session, outsider, pipeline_id, "ClosedWon")

    assert PipelineService().get_deal(db_session, owner, pipeline_id).stage == "Qualified"
    assert _quote_count(db_session) == 0


def test_concurrent_quote_insert_is_retried_as_existing_quote(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor, with_client=False)
    engine = ConversionEngine()
    original = engine._ensure_quote_once
    winners: list[str] = []

    def racing_ensure_quote_once(session, actor, deal_id, stage, settings):  # type: ignore[no-untyped-def]
        if not winners:
            deal = session.get(PipelineDeal, deal_id)
            winners.append(engine._build_quote(session, actor, deal, stage, settings).public_id)
            session.commit()
            engine._build_quote(session, actor, session.get(PipelineDeal, deal_id), stage, settings)
        return original(session, actor, deal_id, stage, settings)

    monkeypatch.setattr(engine, "_ensure_quote_once", racing_ensure_quote_once)

    result = engine.transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    assert result.quote_created is False
    assert result.quote_id == winners[0]
    assert _quote_count(db_session) == 1


def test_allocation_failure_keeps_stage_and_reports_it(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)
    engine = ConversionEngine()

    def failing_allocate(session, entity_type):  # type: ignore[no-untyped-def]
        raise AllocationFailedError("identifier allocation failed", details={"counter": "quoteId"})

    monkeypatch.setattr(engine.allocator, "allocate", failing_allocate)

    with pytest.raises(AllocationFailedError) as exc_info:
        engine.transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    assert exc_info.value.details["stage_persisted"] is True
    assert exc_info.value.details["pipeline_id"] == pipeline_id
    assert PipelineService().get_deal(db_session, actor, pipeline_id).stage == "ClosedWon"
    assert _quote_count(db_session) == 0


def test_refresh_policy_rebuilds_unaccepted_quote(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)
    engine = ConversionEngine(settings_provider=lambda: Settings(terminal_quote_policy="refresh"))

    lost = engine.transition_stage(db_session, actor, pipeline_id, "ClosedLost")
    deal = db_session.scalar(select(PipelineDeal).where(PipelineDeal.public_id == pipeline_id))
    deal.amount = Decimal("7500")
    db_session.commit()
    won = engine.transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    assert won.quote_id == lost.quote_id
    assert won.quote_created is False
    quote = QuoteService().get_quote(db_session, actor, won.quote_id)
    assert quote.status == "Accepted"
    assert quote.amount == Decimal("7500")
    assert len(quote.items) == 1
    assert CustomerService().list_customers(db_session, actor)[0].total_value == Decimal("7500")


def test_keep_policy_leaves_existing_quote_untouched(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)
    engine = ConversionEngine(settings_provider=lambda: Settings(terminal_quote_policy="keep"))

    lost = engine.transition_stage(db_session, actor, pipeline_id, "ClosedLost")
    won = engine.transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    assert won.quote_id == lost.quote_id
    assert QuoteService().get_quote(db_session, actor, won.quote_id).status == "Declined"
    assert db_session.scalar(select(func.count()).select_from(Customer)) == 0


def test_stage_change_is_audited_and_published(db_session: Session) -> None:
    actor = _actor(db_session)
    pipeline_id = _deal(db_session, actor)

    result = ConversionEngine().transition_stage(db_session, actor, pipeline_id, "ClosedWon")

    stage_audits = audit.entries_for("pipeline", pipeline_id)
    assert any(entry["action"] == "stage_change" and entry["after"] == {"stage": "ClosedWon"} for entry in stage_audits)
    assert audit.entries_for("quote", result.quote_id)[-1]["correlation_id"] == "corr-stage-1"

    event_types = [item["event_type"] for item in events.published_events]
    assert "sales.pipeline.stage_changed" in event_types
    assert "sales.quote.created" in event_types
    assert "sales.customer.credited" in event_types
