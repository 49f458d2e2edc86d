"""Error taxonomy for the extraction-and-validation pipeline.

Only DocumentError aborts work, and only for the one document it concerns.
Every other kind is surfaced as data on the affected fact (a flag, a state or
a rejection reason).
"""

from enum import Enum


class ErrorKind(str, Enum):
    SECTION_MISSING = "section_missing"                      # degrade, marker on document
    EXTRACTION_AMBIGUOUS = "extraction_ambiguous"            # fact kept, low confidence
    STATISTICAL_PARSE_FAILURE = "statistical_parse_failure"  # result marked unavailable
    UNCITABLE = "uncitable"                                  # that fact rejected
    KNOWLEDGE_BASE_UNAVAILABLE = "knowledge_base_unavailable"  # neutral


class ClinicalDigestError(Exception):
    """Base class for pipeline errors."""


class DocumentError(ClinicalDigestError):
    """Missing or corrupt document at pipeline entry."""

    def __init__(self, reason: str, document_id: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.document_id = document_id


class KnowledgeBaseUnavailable(ClinicalDigestError):
    """The knowledge base could not be queried (absent, down or timed out)."""


class InvalidTransition(ClinicalDigestError, ValueError):
    """A verdict transition the gate state machine does not allow."""
