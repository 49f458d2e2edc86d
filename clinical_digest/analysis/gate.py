"""
Validation gate: the single place where per-fact decisions are made.

    Start -> Rejected          uncitable fact, or the document was privacy-rejected
    Start -> FlaggedForReview  requires_review, an unresolved knowledge-base conflict,
                               or a high-severity bias the authors do not acknowledge
    Start -> Accepted          otherwise

A human reviewer may move FlaggedForReview to Accepted or Rejected. Every
decision is appended to a VerdictLedger; earlier verdicts are never
overwritten, which keeps an audit trail and allows rollback.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

from clinical_digest.errors import InvalidTransition
from clinical_digest.models import (
    BiasIndicator,
    CandidateFact,
    ConfidenceAssessment,
    ConflictReport,
    Finding,
    ProvenanceRecord,
    ReasonCode,
    Rejection,
    Severity,
    StatisticalResult,
    ValidationVerdict,
    VerdictStatus,
)

logger = logging.getLogger(__name__)

# Facts that carry a claim about the study's outcome; only these inherit
# the study-level high-bias flag.
CLAIM_FACTS = (Finding, StatisticalResult)


def unacknowledged_high_bias(indicators: Iterable[BiasIndicator]) -> List[BiasIndicator]:
    return [i for i in indicators if i.severity == Severity.HIGH and not i.explicitly_stated]


def decide(
    fact: CandidateFact,
    assessment: ConfidenceAssessment,
    conflict: ConflictReport,
    binding: Union[ProvenanceRecord, Rejection],
    indicators: Iterable[BiasIndicator] = (),
    document_rejected: bool = False,
) -> ValidationVerdict:
    """Initial verdict for one fact."""
    rejected = set()
    if isinstance(binding, Rejection):
        rejected.add(ReasonCode.UNCITABLE)
    if document_rejected:
        rejected.add(ReasonCode.DOCUMENT_REJECTED)
    if rejected:
        detail = binding.detail if isinstance(binding, Rejection) else "document rejected at privacy validation"
        return ValidationVerdict(fact.fact_id, VerdictStatus.REJECTED, frozenset(rejected), note=detail)

    flags = set()
    if assessment.requires_review:
        flags.add(ReasonCode.REQUIRES_REVIEW)
    if conflict.unresolved:
        flags.add(ReasonCode.KNOWLEDGE_CONFLICT)
    if isinstance(fact, CLAIM_FACTS) and unacknowledged_high_bias(indicators):
        flags.add(ReasonCode.UNACKNOWLEDGED_HIGH_BIAS)
    if flags:
        note = ", ".join(assessment.review_reasons)
        return ValidationVerdict(fact.fact_id, VerdictStatus.FLAGGED_FOR_REVIEW, frozenset(flags), note=note)

    return ValidationVerdict(fact.fact_id, VerdictStatus.ACCEPTED, frozenset({ReasonCode.PASSED_ALL_CHECKS}))


class VerdictLedger:
    """Append-only arena of verdicts, indexed by a monotonically increasing version.

    Usage:
        ledger = VerdictLedger()
        ledger.record(decide(...))
        ledger.review(fact_id, accept=True, reviewer="jdoe")
        ledger.rollback(fact_id)
    """

    def __init__(self):
        self._records: List[ValidationVerdict] = []
        self._by_fact: Dict[str, List[int]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, fact_id: str) -> bool:
        return fact_id in self._by_fact

    def _append(self, verdict: ValidationVerdict) -> ValidationVerdict:
        versions = self._by_fact.setdefault(verdict.fact_id, [])
        stored = ValidationVerdict(
            fact_id=verdict.fact_id,
            status=verdict.status,
            reasons=verdict.reasons,
            version=len(self._records),
            reviewer=verdict.reviewer,
            note=verdict.note,
            supersedes=versions[-1] if versions else None,
        )
        self._records.append(stored)
        versions.append(stored.version)
        return stored

    def record(self, verdict: ValidationVerdict) -> ValidationVerdict:
        """Store an initial gate verdict. A fact gets exactly one initial verdict."""
        if verdict.fact_id in self._by_fact:
            raise InvalidTransition(f"{verdict.fact_id} already has a verdict; use review()")
        return self._append(verdict)

    def current(self, fact_id: str) -> ValidationVerdict:
        versions = self._by_fact.get(fact_id)
        if not versions:
            raise KeyError(fact_id)
        return self._records[versions[-1]]

    def history(self, fact_id: str) -> List[ValidationVerdict]:
        return [self._records[v] for v in self._by_fact.get(fact_id, [])]

    def at_version(self, version: int) -> ValidationVerdict:
        return self._records[version]

    def current_verdicts(self) -> List[ValidationVerdict]:
        return [self._records[v[-1]] for v in self._by_fact.values()]

    def review(self, fact_id: str, accept: bool, reviewer: str, note: str = "") -> ValidationVerdict:
        """Human decision on a flagged fact; appends a new version."""
        current = self.current(fact_id)
        if current.status != VerdictStatus.FLAGGED_FOR_REVIEW:
            raise InvalidTransition(
                f"{fact_id} is {current.status.value}; only FlaggedForReview facts can be reviewed"
            )
        if not reviewer:
            raise InvalidTransition("a review needs a named reviewer")
        status = VerdictStatus.ACCEPTED if accept else VerdictStatus.REJECTED
        reason = ReasonCode.HUMAN_ACCEPTED if accept else ReasonCode.HUMAN_REJECTED
        verdict = self._append(ValidationVerdict(fact_id, status, frozenset({reason}),
                                                 reviewer=reviewer, note=note))
        logger.info(f"{fact_id}: {current.status.value} -> {status.value} by {reviewer}")
        return verdict

    def rollback(self, fact_id: str, reviewer: Optional[str] = None) -> ValidationVerdict:
        """Restore the state before the latest verdict by appending a copy of it."""
        history = self.history(fact_id)
        if len(history) < 2:
            raise InvalidTransition(f"{fact_id} has no earlier verdict to roll back to")
        previous = history[-2]
        verdict = self._append(ValidationVerdict(
            fact_id, previous.status, previous.reasons | {ReasonCode.ROLLBACK},
            reviewer=reviewer, note=f"rollback to version {previous.version}",
        ))
        logger.info(f"{fact_id}: rolled back to version {previous.version}")
        return verdict

    def to_list(self) -> List[dict]:
        return [v.to_dict() for v in self._records]
