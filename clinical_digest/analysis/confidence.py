"""
Deterministic confidence scorer.

score = (w_method * reliability + w_backing * backing + w_section * section_weight)
        / (w_method + w_backing + w_section)  -  hedging penalty,  clipped to [0, 1]

All weights come from PipelineConfig.scoring. A fact requires review when the
score is below the review threshold, when a factor is ambiguous, when it is a
Finding without statistical support, or when another finding in the same
document makes the opposite claim.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping

from clinical_digest.config import PipelineConfig
from clinical_digest.models import (
    CandidateFact,
    ConfidenceAssessment,
    ConfidenceFactor,
    Document,
    Finding,
    Limitation,
    MethodologyDetail,
    StatisticalResult,
)
from clinical_digest.utils import count_hedges

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentContext:
    """Read-only view of one document shared by every per-fact assessment."""
    document: Document
    facts: Mapping[str, CandidateFact]
    conflicting_ids: FrozenSet[str]

    @classmethod
    def build(cls, document: Document, facts: Iterable[CandidateFact],
              config: PipelineConfig) -> "DocumentContext":
        by_id = {f.fact_id: f for f in facts}
        findings = [f for f in by_id.values() if isinstance(f, Finding)]
        return cls(
            document=document,
            facts=MappingProxyType(by_id),
            conflicting_ids=frozenset(find_internal_conflicts(findings, config)),
        )


def find_internal_conflicts(findings: List[Finding], config: PipelineConfig) -> List[str]:
    """Ids of findings that contradict another finding about the same claim."""
    conflicting = []
    for i, a in enumerate(findings):
        for b in findings[i + 1:]:
            if not a.direction or not b.direction or a.direction == b.direction:
                continue
            if config.similarity(a.content, b.content) >= config.similarity_floor:
                conflicting.extend([a.fact_id, b.fact_id])
    return sorted(set(conflicting))


def statistical_backing(fact: CandidateFact, context: DocumentContext) -> float:
    """Backing in [0, 1] for each fact variant."""
    if isinstance(fact, Finding):
        support = context.facts.get(fact.supported_by) if fact.supported_by else None
        return 1.0 if isinstance(support, StatisticalResult) and support.available else 0.0
    if isinstance(fact, StatisticalResult):
        return 1.0 if fact.available else 0.0
    if isinstance(fact, MethodologyDetail):
        return 0.0 if fact.is_unknown else 1.0
    if isinstance(fact, Limitation):
        return 1.0 if fact.explicitly_stated else 0.5
    raise TypeError(f"Unknown fact type: {type(fact).__name__}")


def has_statistical_support(fact: CandidateFact, context: DocumentContext) -> bool:
    return statistical_backing(fact, context) > 0.0


def score(fact: CandidateFact, context: DocumentContext, config: PipelineConfig) -> ConfidenceAssessment:
    """Assess one fact. Pure: depends only on the fact, the context and the config."""
    w = config.scoring
    total = w.method + w.statistical_backing + w.section
    reliability = w.method_reliability.get(fact.method, 0.5)
    backing = statistical_backing(fact, context)
    section_weight = w.section_weights.get(fact.span.section, 0.5)

    factors = [
        ConfidenceFactor("extraction_method", round(w.method * reliability / total, 4)),
        ConfidenceFactor("statistical_backing", round(w.statistical_backing * backing / total, 4)),
        ConfidenceFactor("section_origin", round(w.section * section_weight / total, 4)),
    ]
    hedges = count_hedges(fact.content)
    if hedges:
        penalty = min(hedges * w.hedge_penalty, w.max_hedge_penalty)
        factors.append(ConfidenceFactor("hedging", -round(penalty, 4)))
    if fact.ambiguous:
        factors.append(ConfidenceFactor("ambiguous", 0.0, ambiguous=True))

    value = round(min(1.0, max(0.0, sum(f.weight for f in factors))), 4)

    reasons = []
    if value < config.review_threshold:
        reasons.append("below_threshold")
    if any(f.ambiguous for f in factors):
        reasons.append("ambiguous")
    if isinstance(fact, Finding) and backing == 0.0:
        reasons.append("unsupported_finding")
    if fact.fact_id in context.conflicting_ids:
        reasons.append("in_document_conflict")

    return ConfidenceAssessment(
        fact_id=fact.fact_id,
        score=value,
        factors=tuple(factors),
        requires_review=bool(reasons),
        review_reasons=tuple(reasons),
    )


def score_all(facts: Iterable[CandidateFact], context: DocumentContext,
              config: PipelineConfig) -> List[ConfidenceAssessment]:
    assessments = [score(f, context, config) for f in facts]
    flagged = sum(1 for a in assessments if a.requires_review)
    logger.debug(f"[{context.document.id}] scored {len(assessments)} facts, {flagged} need review")
    return assessments
