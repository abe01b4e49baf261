from app.platform.sequences.formats import (
    IDENTIFIER_FORMATS,
    IdentifierFormat,
    format_identifier,
    get_identifier_format,
)
from app.platform.sequences.service import IdentifierService, SequenceAllocator, sequence_allocator

__all__ = [
    "IDENTIFIER_FORMATS",
    "IdentifierFormat",
    "IdentifierService",
    "SequenceAllocator",
    "format_identifier",
    "get_identifier_format",
    "sequence_allocator",
]
