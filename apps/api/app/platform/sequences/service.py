from __future__ import annotations

import logging

from sqlalchemy import Insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import AllocationFailedError, InternalError
from app.metrics import observe_allocation, observe_allocation_failure
from app.platform.sequences.formats import get_identifier_format
from app.platform.sequences.models import SequenceCounter
from app.platform.sequences.schemas import AllocatedIdentifierRead


logger = logging.getLogger("app.sales.sequences")

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SequenceAllocator:
    """Hands out monotonically increasing values from named counters.

    Each increment is a single upsert statement, so concurrent callers are
    serialized by the database row lock and never observe the same value.
    """

    def next(self, session: Session, counter_name: str) -> int:
        statement = self._upsert_statement(session, counter_name)
        try:
            value = session.execute(statement).scalar_one()
        except SQLAlchemyError as exc:
            observe_allocation_failure(counter_name)
            logger.warning(
                "sequence.allocation_failed",
                extra={"counter": counter_name, "error": str(exc)[:500]},
            )
            raise AllocationFailedError(
                "identifier allocation failed",
                details={"counter": counter_name},
            ) from exc

        observe_allocation(counter_name)
        logger.debug("sequence.allocated", extra={"counter": counter_name, "sequence": value})
        return int(value)

    def allocate(self, session: Session, entity_type: str) -> str:
        """Allocate and format a public identifier inside the caller's transaction."""

        identifier_format = get_identifier_format(entity_type)
        return identifier_format.render(self.next(session, identifier_format.counter_name))

    def _upsert_statement(self, session: Session, counter_name: str) -> Insert:
        dialect_name = session.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect_name)
        if insert is None:
            raise InternalError("unsupported database for sequence allocation", details={"dialect": dialect_name})

        return (
            insert(SequenceCounter)
            .values(name=counter_name, value=1)
            .on_conflict_do_update(
                index_elements=[SequenceCounter.name],
                set_={"value": SequenceCounter.value + 1},
            )
            .returning(SequenceCounter.value)
        )


sequence_allocator = SequenceAllocator()


class IdentifierService:
    def __init__(self, allocator: SequenceAllocator | None = None) -> None:
        self.allocator = allocator or sequence_allocator

    def allocate_id(self, session: Session, entity_type: str) -> AllocatedIdentifierRead:
        identifier_format = get_identifier_format(entity_type)
        try:
            sequence = self.allocator.next(session, identifier_format.counter_name)
            session.commit()
        except AllocationFailedError:
            session.rollback()
            raise

        public_id = identifier_format.render(sequence)
        logger.info(
            "sequence.identifier_issued",
            extra={"entity_type": identifier_format.entity_type, "public_id": public_id, "sequence": sequence},
        )
        return AllocatedIdentifierRead(
            entity_type=identifier_format.entity_type,
            counter_name=identifier_format.counter_name,
            public_id=public_id,
            sequence=sequence,
        )
