from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.errors import NotFoundError, SalesError
from app.crm.conversion import ConversionEngine
from app.crm.schemas import (
    BulkConvertRead,
    BulkConvertRequest,
    ClientCreate,
    ClientRead,
    CustomerRead,
    LeadCreate,
    LeadDeleteRead,
    LeadRead,
    PipelineDealCreate,
    PipelineDealRead,
    QuoteAcceptanceRead,
    QuoteRead,
    QuoteStatusRequest,
    StageTransitionRead,
    StageTransitionRequest,
)
from app.crm.service import ClientService, CustomerService, LeadService, PipelineService, QuoteService
from app.platform.security.context import ActorContext
from app.platform.security.resolver import reference_resolver
from app.platform.sequences.schemas import AllocatedIdentifierRead
from app.platform.sequences.service import IdentifierService

identifiers_router = APIRouter(prefix="/api/sales", tags=["sales.identifiers"])
clients_router = APIRouter(prefix="/api/sales", tags=["sales.clients"])
leads_router = APIRouter(prefix="/api/sales", tags=["sales.leads"])
pipelines_router = APIRouter(prefix="/api/sales", tags=["sales.pipelines"])
quotes_router = APIRouter(prefix="/api/sales", tags=["sales.quotes"])
customers_router = APIRouter(prefix="/api/sales", tags=["sales.customers"])
identifier_service = IdentifierService()
client_service = ClientService()
lead_service = LeadService()
pipeline_service = PipelineService()
quote_service = QuoteService()
customer_service = CustomerService()
conversion_engine = ConversionEngine()


@dataclass
class ErrorEnvelope:
    code: str
    kind: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    kind: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        kind=kind,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def sales_error_response(request: Request, exc: SalesError, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        kind=exc.kind,
        message=exc.message,
        details=exc.details or None,
    )


def get_actor(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_current_user),
) -> ActorContext:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    organization_public_id = request.headers.get("x-organization-id")
    if not organization_public_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="x-organization-id header required")

    try:
        organization_id = reference_resolver.resolve_organization(db, organization_public_id)
        user_id = reference_resolver.resolve(db, "user", auth_user.sub, organization_id)
    except NotFoundError:
        # Unknown users and users of another organization look the same.
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown actor") from None

    return ActorContext(
        user_id=user_id,
        user_public_id=auth_user.sub,
        organization_id=organization_id,
        organization_public_id=organization_public_id,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


@identifiers_router.post(
    "/identifiers/{entity_type}",
    response_model=AllocatedIdentifierRead,
    status_code=status.HTTP_201_CREATED,
)
def allocate_identifier(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> AllocatedIdentifierRead | JSONResponse:
    try:
        return identifier_service.allocate_id(db, entity_type)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_identifier_allocate_failed")


@clients_router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, actor, dto)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_client_create_failed")


@clients_router.get("/clients", response_model=list[ClientRead])
def list_clients(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[ClientRead]:
    return client_service.list_clients(db, actor)


@clients_router.get("/clients/{public_id}", response_model=ClientRead)
def get_client(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_client_get_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, actor, dto)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(db, actor, status=status_filter)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_lead_list_failed")


@leads_router.post("/leads/bulk-convert", response_model=BulkConvertRead)
def bulk_convert_leads(
    request: Request,
    dto: BulkConvertRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> BulkConvertRead | JSONResponse:
    try:
        return conversion_engine.bulk_convert_leads(
            db,
            actor,
            dto.lead_ids,
            target_stage=dto.stage,
            client_public_id=dto.client_id,
            assignee_public_id=dto.assigned_to,
        )
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_lead_bulk_convert_failed")


@leads_router.get("/leads/{public_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_lead_get_failed")


@leads_router.delete("/leads/{public_id}", response_model=LeadDeleteRead)
def delete_lead(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> LeadDeleteRead | JSONResponse:
    try:
        return conversion_engine.delete_lead(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_lead_delete_failed")


@pipelines_router.post("/pipelines", response_model=PipelineDealRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineDealCreate,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> PipelineDealRead | JSONResponse:
    try:
        return pipeline_service.create_deal(db, actor, dto)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_pipeline_create_failed")


@pipelines_router.get("/pipelines", response_model=list[PipelineDealRead])
def list_pipelines(
    request: Request,
    stage: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[PipelineDealRead] | JSONResponse:
    try:
        return pipeline_service.list_deals(db, actor, stage=stage)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_pipeline_list_failed")


@pipelines_router.get("/pipelines/{public_id}", response_model=PipelineDealRead)
def get_pipeline(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> PipelineDealRead | JSONResponse:
    try:
        return pipeline_service.get_deal(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_pipeline_get_failed")


@pipelines_router.post("/pipelines/{public_id}/stage", response_model=StageTransitionRead)
def transition_pipeline_stage(
    request: Request,
    public_id: str,
    dto: StageTransitionRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> StageTransitionRead | JSONResponse:
    try:
        return conversion_engine.transition_stage(db, actor, public_id, dto.stage)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_pipeline_stage_change_failed")


@quotes_router.get("/quotes", response_model=list[QuoteRead])
def list_quotes(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[QuoteRead] | JSONResponse:
    try:
        return quote_service.list_quotes(db, actor, status=status_filter)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_quote_list_failed")


@quotes_router.get("/quotes/{public_id}", response_model=QuoteRead)
def get_quote(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuoteRead | JSONResponse:
    try:
        return quote_service.get_quote(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_quote_get_failed")


@quotes_router.post("/quotes/{public_id}/accept", response_model=QuoteAcceptanceRead)
def accept_quote(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuoteAcceptanceRead | JSONResponse:
    try:
        return conversion_engine.accept_quote(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_quote_accept_failed")


@quotes_router.post("/quotes/{public_id}/status", response_model=QuoteRead)
def set_quote_status(
    request: Request,
    public_id: str,
    dto: QuoteStatusRequest,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> QuoteRead | JSONResponse:
    try:
        return conversion_engine.set_quote_status(db, actor, public_id, dto.status)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_quote_status_change_failed")


@customers_router.get("/customers", response_model=list[CustomerRead])
def list_customers(
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> list[CustomerRead]:
    return customer_service.list_customers(db, actor)


@customers_router.get("/customers/{public_id}", response_model=CustomerRead)
def get_customer(
    request: Request,
    public_id: str,
    db: Session = Depends(get_db),
    actor: ActorContext = Depends(get_actor),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.get_customer(db, actor, public_id)
    except SalesError as exc:
        return sales_error_response(request, exc, "sales_customer_get_failed")
