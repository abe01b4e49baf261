from app.platform.security.context import ActorContext
from app.platform.security.resolver import (
    ReferenceResolver,
    reference_resolver,
    register_public_reference,
    registered_entity_types,
)

__all__ = [
    "ActorContext",
    "ReferenceResolver",
    "reference_resolver",
    "register_public_reference",
    "registered_entity_types",
]
