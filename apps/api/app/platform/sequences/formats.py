from __future__ import annotations

from dataclasses import dataclass

from app.core.errors import ValidationFailedError


@dataclass(frozen=True, slots=True)
class IdentifierFormat:
    entity_type: str
    counter_name: str
    prefix: str
    width: int

    def render(self, sequence: int) -> str:
        return format_identifier(self.prefix, self.width, sequence)


def format_identifier(prefix: str, width: int, sequence: int) -> str:
    """Render ``sequence`` as ``prefix`` followed by a zero-padded number.

    Values wider than ``width`` are rendered in full rather than truncated, so
    identifiers stay unique once a counter outgrows its padding.
    """

    if width <= 0:
        raise ValidationFailedError("identifier width must be positive", details={"width": width})
    if sequence < 0:
        raise ValidationFailedError("sequence must not be negative", details={"sequence": sequence})
    return f"{prefix}{sequence:0{width}d}"


IDENTIFIER_FORMATS: dict[str, IdentifierFormat] = {
    item.entity_type: item
    for item in (
        IdentifierFormat("organization", "orgId", "ORG", 9),
        IdentifierFormat("user", "userId", "USR", 6),
        IdentifierFormat("client", "clientId", "CLT", 9),
        IdentifierFormat("lead", "leadId", "LED", 9),
        IdentifierFormat("pipeline", "pipelineId", "PIP", 9),
        IdentifierFormat("quote", "quoteId", "QT", 9),
        IdentifierFormat("customer", "customerId", "CUS", 9),
        IdentifierFormat("deal", "dealId", "DEA", 9),
        IdentifierFormat("project", "projectId", "PRJ", 9),
        IdentifierFormat("task", "taskId", "TSK", 9),
        IdentifierFormat("ai_insight", "aiInsightId", "AI", 9),
    )
}

_BY_COUNTER_NAME = {item.counter_name: item for item in IDENTIFIER_FORMATS.values()}


def get_identifier_format(key: str) -> IdentifierFormat:
    """Look up a format by entity type (``lead``) or counter name (``leadId``)."""

    found = IDENTIFIER_FORMATS.get(key) or _BY_COUNTER_NAME.get(key)
    if found is None:
        raise ValidationFailedError("unknown identifier type", details={"entity_type": key})
    return found
