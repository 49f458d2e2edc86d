"""
clinical_digest/models.py — Document boundary models and pipeline records.

Input values (Document, DocumentMetadata, Section, KnowledgeEntry) are pydantic
models so a corrupt document is rejected at pipeline entry. Everything the
pipeline produces is a frozen dataclass: facts are never mutated, later stages
only wrap them in new records.
"""

import hashlib
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------
class SectionName(str, Enum):
    ABSTRACT = "abstract"
    METHODOLOGY = "methodology"
    RESULTS = "results"
    DISCUSSION = "discussion"
    CONCLUSIONS = "conclusions"
    LIMITATIONS = "limitations"


# Sections whose absence is recorded with an explicit marker.
REQUIRED_SECTIONS = (
    SectionName.ABSTRACT,
    SectionName.METHODOLOGY,
    SectionName.RESULTS,
    SectionName.DISCUSSION,
    SectionName.CONCLUSIONS,
)

# Canonical extraction order.
SECTION_ORDER = REQUIRED_SECTIONS + (SectionName.LIMITATIONS,)


class FactKind(str, Enum):
    FINDING = "finding"
    STATISTICAL_RESULT = "statistical_result"
    METHODOLOGY_DETAIL = "methodology_detail"
    LIMITATION = "limitation"


class ExtractionMethod(str, Enum):
    STATISTICAL_PATTERN = "statistical_pattern"   # regex over numeric reporting
    OUTCOME_PATTERN = "outcome_pattern"           # sentence-level outcome cues
    DESIGN_VOCABULARY = "design_vocabulary"       # closed methodology vocabulary
    LIMITATION_PATTERN = "limitation_pattern"     # explicit limitation phrasing
    DEFAULT_UNKNOWN = "default_unknown"           # field not found in text
    INFERRED_RULE = "inferred_rule"               # derived by the bias assessor


class StudyDesign(str, Enum):
    RCT = "RCT"
    COHORT = "cohort"
    CASE_CONTROL = "case-control"
    CROSS_SECTIONAL = "cross-sectional"
    OTHER = "other"
    UNKNOWN = "unknown"


class BiasType(str, Enum):
    SMALL_SAMPLE = "SmallSample"
    NO_CONTROL_GROUP = "NoControlGroup"
    FUNDING_CONFLICT = "FundingConflict"
    SELECTION_BIAS = "SelectionBias"
    OTHER = "Other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VerificationState(str, Enum):
    VERIFIED = "verified"              # checked, no conflict
    CONFLICT = "conflict"              # checked, contradicting entries found
    UNAVAILABLE = "unavailable"        # could not check
    NOT_APPLICABLE = "not_applicable"  # fact kind is not cross-referenced


class VerdictStatus(str, Enum):
    ACCEPTED = "Accepted"
    FLAGGED_FOR_REVIEW = "FlaggedForReview"
    REJECTED = "Rejected"


class ReasonCode(str, Enum):
    PASSED_ALL_CHECKS = "passed_all_checks"
    UNCITABLE = "uncitable"
    DOCUMENT_REJECTED = "document_rejected"
    REQUIRES_REVIEW = "requires_review"
    KNOWLEDGE_CONFLICT = "knowledge_conflict"
    UNACKNOWLEDGED_HIGH_BIAS = "unacknowledged_high_bias"
    HUMAN_ACCEPTED = "human_accepted"
    HUMAN_REJECTED = "human_rejected"
    ROLLBACK = "rollback"


UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Input boundary (pydantic)
# ---------------------------------------------------------------------------
class DocumentMetadata(BaseModel):
    """Bibliographic metadata supplied by the parsing stage."""
    model_config = ConfigDict(frozen=True)

    title: str = ""
    authors: List[str] = Field(default_factory=list)
    journal: Optional[str] = None
    publication_date: Optional[str] = None   # "2021-03-04", "2021-03" or "2021"
    doi: Optional[str] = None
    pmid: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    pages: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)

    @property
    def year(self) -> Optional[int]:
        if not self.publication_date:
            return None
        m = re.match(r"\s*(\d{4})", str(self.publication_date))
        return int(m.group(1)) if m else None


class Section(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: SectionName
    text: str
    offset: int = 0

    @field_validator("offset")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("section offset must be >= 0")
        return v


class Document(BaseModel):
    """An already-segmented clinical research document."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    metadata: DocumentMetadata
    sections: Dict[SectionName, Section] = Field(default_factory=dict)
    references: List[str] = Field(default_factory=list)
    privacy_rejected: bool = False

    @field_validator("sections", mode="before")
    @classmethod
    def _sections_from_text(cls, v: Any) -> Any:
        # Accept {"results": "text..."} as shorthand for a Section record.
        if isinstance(v, dict):
            out = {}
            for key, value in v.items():
                if isinstance(value, str):
                    value = {"name": key, "text": value}
                out[key] = value
            return out
        return v

    def section(self, name: SectionName) -> Optional[Section]:
        """Return the named section, or None if it is missing or blank."""
        sec = self.sections.get(name)
        if sec is None or not sec.text.strip():
            return None
        return sec

    def absent_sections(self) -> Tuple[SectionName, ...]:
        return tuple(name for name in REQUIRED_SECTIONS if self.section(name) is None)

    def full_text(self) -> str:
        parts = [self.section(n).text for n in SECTION_ORDER if self.section(n) is not None]
        return "\n\n".join(parts)


class KnowledgeEntry(BaseModel):
    """One claim held by the external knowledge base."""
    model_config = ConfigDict(frozen=True)

    entry_id: str
    claim: str
    direction: Optional[str] = None   # "increase" | "decrease" | "null"; inferred when absent
    source: str = ""


# ---------------------------------------------------------------------------
# Candidate facts (closed tagged variant)
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SourceSpan:
    section: SectionName
    start: int
    end: int

    def to_dict(self) -> dict:
        return {"section": self.section.value, "start": self.start, "end": self.end}


def make_fact_id(document_id: str, kind: FactKind, span: SourceSpan, content: str) -> str:
    """Stable identifier: same document text always yields the same ids."""
    raw = f"{document_id}|{kind.value}|{span.section.value}|{span.start}|{span.end}|{content}"
    return f"{kind.value[:4]}-{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:12]}"


@dataclass(frozen=True)
class Finding:
    fact_id: str
    content: str
    span: SourceSpan
    method: ExtractionMethod
    outcome_type: str = "unspecified"      # "primary" | "secondary" | "unspecified"
    direction: Optional[str] = None        # "increase" | "decrease" | "null"
    supported_by: Optional[str] = None     # fact_id of a StatisticalResult (not owned)
    ambiguous: bool = False
    kind: FactKind = field(default=FactKind.FINDING, init=False)


@dataclass(frozen=True)
class StatisticalResult:
    fact_id: str
    content: str
    span: SourceSpan
    method: ExtractionMethod
    stat_type: str                         # p_value | confidence_interval | effect_size | sample_size
    value: Optional[float] = None
    comparator: str = "="
    interval: Optional[Tuple[float, float]] = None
    label: Optional[str] = None            # HR, OR, RR, SMD, d, ...
    significance: bool = False
    available: bool = True
    ambiguous: bool = False
    kind: FactKind = field(default=FactKind.STATISTICAL_RESULT, init=False)


@dataclass(frozen=True)
class MethodologyDetail:
    fact_id: str
    content: str
    span: SourceSpan
    method: ExtractionMethod
    field_name: str
    value: str = UNKNOWN
    design: Optional[StudyDesign] = None
    ambiguous: bool = False
    kind: FactKind = field(default=FactKind.METHODOLOGY_DETAIL, init=False)

    @property
    def is_unknown(self) -> bool:
        return self.value == UNKNOWN


@dataclass(frozen=True)
class Limitation:
    fact_id: str
    content: str
    span: SourceSpan
    method: ExtractionMethod
    bias_type: BiasType = BiasType.OTHER
    explicitly_stated: bool = True
    ambiguous: bool = False
    # further bias types named by the same sentence
    also_names: Tuple[BiasType, ...] = ()
    kind: FactKind = field(default=FactKind.LIMITATION, init=False)

    def names(self, bias_type: BiasType) -> bool:
        return bias_type == self.bias_type or bias_type in self.also_names


CandidateFact = Union[Finding, StatisticalResult, MethodologyDetail, Limitation]
FACT_TYPES = (Finding, StatisticalResult, MethodologyDetail, Limitation)


def fact_to_dict(fact: CandidateFact) -> dict:
    d = {}
    for f in fields(fact):
        v = getattr(fact, f.name)
        if isinstance(v, Enum):
            v = v.value
        elif isinstance(v, SourceSpan):
            v = v.to_dict()
        elif isinstance(v, tuple):
            v = [x.value if isinstance(x, Enum) else x for x in v]
        d[f.name] = v
    return d


# ---------------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ConfidenceFactor:
    name: str
    weight: float          # signed contribution
    ambiguous: bool = False


@dataclass(frozen=True)
class ConfidenceAssessment:
    fact_id: str
    score: float
    factors: Tuple[ConfidenceFactor, ...]
    requires_review: bool
    review_reasons: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "score": self.score,
            "factors": [{"name": f.name, "weight": f.weight, "ambiguous": f.ambiguous}
                        for f in self.factors],
            "requires_review": self.requires_review,
            "review_reasons": list(self.review_reasons),
        }


@dataclass(frozen=True)
class BiasIndicator:
    bias_type: BiasType
    severity: Severity
    explicitly_stated: bool = False
    rationale: str = ""
    evidence_span: Optional[SourceSpan] = None
    corroborates: Optional[str] = None     # fact_id of the explicit Limitation

    def to_dict(self) -> dict:
        return {
            "bias_type": self.bias_type.value,
            "severity": self.severity.value,
            "explicitly_stated": self.explicitly_stated,
            "rationale": self.rationale,
            "evidence_span": self.evidence_span.to_dict() if self.evidence_span else None,
            "corroborates": self.corroborates,
        }


@dataclass(frozen=True)
class QualityScore:
    overall: float
    design_strength: float
    control_presence: float
    sample_adequacy: float
    statistical_rigor: float

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ConflictingEntry:
    entry: KnowledgeEntry
    similarity: float
    strength: float


@dataclass(frozen=True)
class ConflictReport:
    fact_id: str
    state: VerificationState
    conflicts: Tuple[ConflictingEntry, ...] = ()
    strength: float = 0.0
    detail: str = ""

    @property
    def unresolved(self) -> bool:
        return self.state == VerificationState.CONFLICT

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "state": self.state.value,
            "strength": self.strength,
            "detail": self.detail,
            "conflicts": [
                {"entry_id": c.entry.entry_id, "claim": c.entry.claim,
                 "similarity": c.similarity, "strength": c.strength}
                for c in self.conflicts
            ],
        }


@dataclass(frozen=True)
class Citation:
    style: str
    text: str
    complete: bool = True
    missing_fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvenanceRecord:
    fact_id: str
    document_id: str
    original_source: DocumentMetadata
    extracted_content: str
    extraction_method: ExtractionMethod
    span: SourceSpan
    timestamp: datetime
    citation: Citation
    version: int = 1
    supersedes: Optional[int] = None

    def corrected(self, **changes) -> "ProvenanceRecord":
        """Return a new version carrying the corrections; this record is untouched."""
        return replace(self, version=self.version + 1, supersedes=self.version, **changes)

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "document_id": self.document_id,
            "original_source": self.original_source.model_dump(),
            "extracted_content": self.extracted_content,
            "extraction_method": self.extraction_method.value,
            "span": self.span.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "citation": {"style": self.citation.style, "text": self.citation.text,
                         "complete": self.citation.complete,
                         "missing_fields": list(self.citation.missing_fields)},
            "version": self.version,
            "supersedes": self.supersedes,
        }


@dataclass(frozen=True)
class Rejection:
    """Binder outcome for an uncitable fact. Never serialized into output content."""
    fact_id: str
    reason: ReasonCode
    detail: str = ""
    truncated_excerpt: Optional[str] = None


@dataclass(frozen=True)
class ValidationVerdict:
    fact_id: str
    status: VerdictStatus
    reasons: FrozenSet[ReasonCode]
    version: int = 0
    reviewer: Optional[str] = None
    note: str = ""
    supersedes: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "status": self.status.value,
            "reasons": sorted(r.value for r in self.reasons),
            "version": self.version,
            "reviewer": self.reviewer,
            "note": self.note,
            "supersedes": self.supersedes,
        }


@dataclass(frozen=True)
class FactOutcome:
    fact: CandidateFact
    assessment: ConfidenceAssessment
    conflict: ConflictReport
    provenance: ProvenanceRecord
    verdict: ValidationVerdict

    def to_dict(self) -> dict:
        return {
            "fact": fact_to_dict(self.fact),
            "assessment": self.assessment.to_dict(),
            "conflict": self.conflict.to_dict(),
            "provenance": self.provenance.to_dict(),
            "verdict": self.verdict.to_dict(),
        }


@dataclass(frozen=True)
class RejectedFact:
    fact_id: str
    kind: FactKind
    reasons: FrozenSet[ReasonCode]
    detail: str = ""
