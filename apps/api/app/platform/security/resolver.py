from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationFailedError
from app.metrics import observe_reference_miss


logger = logging.getLogger("app.sales.resolver")

_PUBLIC_REFERENCES: dict[str, Any] = {}
_ORGANIZATION_TYPE = "organization"


def register_public_reference(entity_type: str, model: Any) -> None:
    """Make ``model`` resolvable by ``entity_type``.

    Tenant-owned models need ``id``, ``public_id`` and ``organization_id``
    columns; the organization model itself only needs ``id`` and ``public_id``.
    """

    _PUBLIC_REFERENCES[entity_type] = model


def registered_entity_types() -> list[str]:
    return sorted(_PUBLIC_REFERENCES)


class ReferenceResolver:
    def resolve(
        self,
        session: Session,
        entity_type: str,
        public_id: str,
        organization_id: uuid.UUID,
    ) -> uuid.UUID:
        model = self._model_for(entity_type)
        if entity_type == _ORGANIZATION_TYPE:
            raise ValidationFailedError("organizations are resolved with resolve_organization")

        internal_id = session.scalar(
            select(model.id).where(and_(model.public_id == public_id, model.organization_id == organization_id))
        )
        if internal_id is None:
            self._miss(entity_type, public_id)
        return internal_id

    def resolve_many(
        self,
        session: Session,
        entity_type: str,
        public_ids: Sequence[str],
        organization_id: uuid.UUID,
    ) -> list[uuid.UUID]:
        return [self.resolve(session, entity_type, public_id, organization_id) for public_id in public_ids]

    def resolve_organization(self, session: Session, organization_public_id: str) -> uuid.UUID:
        model = self._model_for(_ORGANIZATION_TYPE)
        internal_id = session.scalar(select(model.id).where(model.public_id == organization_public_id))
        if internal_id is None:
            self._miss(_ORGANIZATION_TYPE, organization_public_id)
        return internal_id

    def _model_for(self, entity_type: str) -> Any:
        model = _PUBLIC_REFERENCES.get(entity_type)
        if model is None:
            raise ValidationFailedError("unknown entity type", details={"entity_type": entity_type})
        return model

    def _miss(self, entity_type: str, public_id: str) -> None:
        observe_reference_miss(entity_type)
        logger.info("reference.not_found", extra={"entity_type": entity_type, "public_id": public_id})
        # Absent and foreign-tenant identifiers must be indistinguishable.
        raise NotFoundError(f"{entity_type} not found", details={"entity_type": entity_type, "public_id": public_id})


reference_resolver = ReferenceResolver()
