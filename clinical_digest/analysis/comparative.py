"""
Cross-document comparison over completed pipeline results.

Pure reducer: reads each DocumentResult's outcomes, quality and bias
indicators; never re-runs a stage or touches a document's ledger for writing.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import numpy as np

from clinical_digest.config import PipelineConfig
from clinical_digest.models import BiasType, Finding, VerdictStatus

if TYPE_CHECKING:
    from clinical_digest.pipeline import DocumentResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentSnapshot:
    document_id: str
    quality: float
    accepted: int
    flagged: int
    rejected: int


@dataclass(frozen=True)
class CrossDocumentConflict:
    document_a: str
    fact_a: str
    document_b: str
    fact_b: str
    similarity: float
    directions: Tuple[str, str]


@dataclass(frozen=True)
class ComparativeSummary:
    documents: Tuple[DocumentSnapshot, ...]
    failed: Tuple[str, ...]
    rejected: Tuple[str, ...]
    mean_quality: Optional[float]
    quality_spread: Optional[float]
    shared_bias_types: Tuple[BiasType, ...]
    contradictions: Tuple[CrossDocumentConflict, ...]

    def to_dict(self) -> dict:
        return {
            "documents": [d.__dict__.copy() for d in self.documents],
            "failed": list(self.failed),
            "rejected": list(self.rejected),
            "mean_quality": self.mean_quality,
            "quality_spread": self.quality_spread,
            "shared_bias_types": [b.value for b in self.shared_bias_types],
            "contradictions": [
                {"document_a": c.document_a, "fact_a": c.fact_a,
                 "document_b": c.document_b, "fact_b": c.fact_b,
                 "similarity": c.similarity, "directions": list(c.directions)}
                for c in self.contradictions
            ],
        }


def _snapshot(result: DocumentResult) -> DocumentSnapshot:
    counts = Counter(v.status for v in result.ledger.current_verdicts())
    return DocumentSnapshot(
        document_id=result.document_id,
        quality=result.quality.overall if result.quality else 0.0,
        accepted=counts.get(VerdictStatus.ACCEPTED, 0),
        flagged=counts.get(VerdictStatus.FLAGGED_FOR_REVIEW, 0),
        rejected=counts.get(VerdictStatus.REJECTED, 0),
    )


def _accepted_findings(result: DocumentResult) -> List[Finding]:
    out = []
    for o in result.outcomes:
        if not isinstance(o.fact, Finding) or not o.fact.direction:
            continue
        if result.ledger.current(o.fact.fact_id).status == VerdictStatus.ACCEPTED:
            out.append(o.fact)
    return out


def compare_documents(results: Sequence[DocumentResult], config: PipelineConfig) -> ComparativeSummary:
    """Summarize quality and contradictions across independently processed documents."""
    completed = [r for r in results if r.status == "completed"]
    failed = tuple(r.document_id for r in results if r.status == "failed")
    rejected = tuple(r.document_id for r in results if r.status == "rejected")

    snapshots = tuple(_snapshot(r) for r in completed)
    qualities = np.array([s.quality for s in snapshots], dtype=float)
    mean_quality = round(float(qualities.mean()), 4) if qualities.size else None
    quality_spread = round(float(qualities.std()), 4) if qualities.size else None

    shared: Tuple[BiasType, ...] = ()
    if completed:
        common = set(BiasType)
        for r in completed:
            common &= {i.bias_type for i in r.bias_indicators}
        shared = tuple(b for b in BiasType if b in common)

    contradictions = []
    findings = [(r.document_id, _accepted_findings(r)) for r in completed]
    for i, (doc_a, fa) in enumerate(findings):
        for doc_b, fb in findings[i + 1:]:
            for a in fa:
                for b in fb:
                    if a.direction == b.direction:
                        continue
                    sim = config.similarity(a.content, b.content)
                    if sim >= config.similarity_floor:
                        contradictions.append(CrossDocumentConflict(
                            doc_a, a.fact_id, doc_b, b.fact_id, round(sim, 4), (a.direction, b.direction),
                        ))
    contradictions.sort(key=lambda c: -c.similarity)

    if contradictions:
        logger.info(f"Comparative analysis: {len(contradictions)} cross-document contradictions")
    return ComparativeSummary(
        documents=snapshots,
        failed=failed,
        rejected=rejected,
        mean_quality=mean_quality,
        quality_spread=quality_spread,
        shared_bias_types=shared,
        contradictions=tuple(contradictions),
    )
