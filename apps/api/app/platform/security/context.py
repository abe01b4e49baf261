from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class ActorContext:
    """Resolved caller of a sales operation.

    Internal references are only ever produced by the reference resolver, so
    holding an ``ActorContext`` means both the user and the organization exist
    and belong together.
    """

    user_id: uuid.UUID
    user_public_id: str
    organization_id: uuid.UUID
    organization_public_id: str
    correlation_id: str | None = None
