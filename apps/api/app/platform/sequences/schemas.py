from __future__ import annotations

from pydantic import BaseModel


class AllocatedIdentifierRead(BaseModel):
    entity_type: str
    counter_name: str
    public_id: str
    sequence: int
