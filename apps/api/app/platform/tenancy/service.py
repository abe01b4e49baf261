from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.errors import AllocationFailedError, ConflictError
from app.platform.security.context import ActorContext
from app.platform.security.resolver import ReferenceResolver, reference_resolver
from app.platform.sequences.service import SequenceAllocator, sequence_allocator
from app.platform.tenancy.models import Organization, User
from app.platform.tenancy.schemas import OrganizationCreate, OrganizationRead, UserCreate, UserRead


logger = logging.getLogger("app.sales.tenancy")


class TenancyService:
    def __init__(
        self,
        allocator: SequenceAllocator | None = None,
        resolver: ReferenceResolver | None = None,
    ) -> None:
        self.allocator = allocator or sequence_allocator
        self.resolver = resolver or reference_resolver

    def create_organization(self, session: Session, dto: OrganizationCreate) -> OrganizationRead:
        try:
            organization = Organization(
                public_id=self.allocator.allocate(session, "organization"),
                name=dto.name,
            )
            session.add(organization)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise

        logger.info("tenancy.organization_created", extra={"public_id": organization.public_id})
        return OrganizationRead.model_validate(organization)

    def create_user(self, session: Session, organization_public_id: str, dto: UserCreate) -> UserRead:
        organization_id = self.resolver.resolve_organization(session, organization_public_id)

        try:
            user = User(
                public_id=self.allocator.allocate(session, "user"),
                organization_id=organization_id,
                name=dto.name,
                email=str(dto.email).lower(),
                role=dto.role,
            )
            session.add(user)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("user email already exists", details={"email": str(dto.email)}) from exc

        audit.record(
            actor_user_id=user.public_id,
            organization_id=organization_public_id,
            entity_type="user",
            entity_id=user.public_id,
            action="create",
            before=None,
            after={"email": user.email, "role": user.role},
        )
        return self._to_read(user)

    def get_user(self, session: Session, actor: ActorContext, user_public_id: str) -> UserRead:
        user_id = self.resolver.resolve(session, "user", user_public_id, actor.organization_id)
        return self._to_read(session.get(User, user_id))

    def _to_read(self, user: User) -> UserRead:
        return UserRead(
            public_id=user.public_id,
            organization_id=user.organization.public_id,
            name=user.name,
            email=user.email,
            role=user.role,
            created_at=user.created_at,
        )


tenancy_service = TenancyService()
