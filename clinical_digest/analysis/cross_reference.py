"""
Cross-referencer: checks findings against the knowledge base.

An entry conflicts with a finding when its claim is similar enough
(similarity >= config.similarity_floor) and the two state opposite directions.
Strength of a conflict rescales similarity above the floor to [0, 1]:

    strength = (similarity - floor) / (1 - floor)

A lookup that times out or fails never rejects anything: the report is
"unavailable", which the gate treats as neutral.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Tuple

from clinical_digest.config import PipelineConfig
from clinical_digest.errors import KnowledgeBaseUnavailable
from clinical_digest.models import (
    CandidateFact,
    ConflictingEntry,
    ConflictReport,
    Finding,
    KnowledgeEntry,
    VerificationState,
)
from clinical_digest.utils import claim_direction

logger = logging.getLogger(__name__)


def entry_direction(entry: KnowledgeEntry) -> Optional[str]:
    if entry.direction:
        return entry.direction
    direction, _ = claim_direction(entry.claim)
    return direction


def find_conflicts(finding: Finding, entries: Iterable[KnowledgeEntry],
                   config: PipelineConfig) -> Tuple[ConflictingEntry, ...]:
    """Entries contradicting ``finding``, strongest first."""
    if not finding.direction:
        return ()
    floor = config.similarity_floor
    out: List[ConflictingEntry] = []
    for entry in entries:
        sim = config.similarity(finding.content, entry.claim)
        if sim < floor:
            continue
        other = entry_direction(entry)
        if not other or other == finding.direction:
            continue
        strength = (sim - floor) / (1.0 - floor)
        out.append(ConflictingEntry(entry=entry, similarity=round(sim, 4), strength=round(strength, 4)))
    out.sort(key=lambda c: (-c.strength, c.entry.entry_id))
    return tuple(out)


async def validate_against_knowledge_base(fact: CandidateFact, session,
                                          config: PipelineConfig) -> ConflictReport:
    """Compare one fact with the knowledge base through an open session.

    ``session`` may be None when no knowledge base is configured or it could
    not be opened.
    """
    if not isinstance(fact, Finding):
        return ConflictReport(fact.fact_id, VerificationState.NOT_APPLICABLE,
                              detail=f"{fact.kind.value} facts are not cross-referenced")
    if session is None:
        return ConflictReport(fact.fact_id, VerificationState.UNAVAILABLE,
                              detail="no knowledge base available")
    try:
        entries = await asyncio.wait_for(session.lookup(fact.content), timeout=config.kb_timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Knowledge base lookup timed out after {config.kb_timeout}s for {fact.fact_id}")
        return ConflictReport(fact.fact_id, VerificationState.UNAVAILABLE,
                              detail=f"lookup timed out after {config.kb_timeout}s")
    except KnowledgeBaseUnavailable as e:
        logger.warning(f"Knowledge base unavailable for {fact.fact_id}: {e}")
        return ConflictReport(fact.fact_id, VerificationState.UNAVAILABLE, detail=str(e))
    except Exception as e:
        logger.warning(f"Knowledge base lookup failed for {fact.fact_id}: {type(e).__name__}: {e}")
        return ConflictReport(fact.fact_id, VerificationState.UNAVAILABLE,
                              detail=f"lookup failed: {type(e).__name__}: {e}")

    conflicts = find_conflicts(fact, entries, config)
    if conflicts:
        return ConflictReport(
            fact.fact_id,
            VerificationState.CONFLICT,
            conflicts=conflicts,
            strength=conflicts[0].strength,
            detail=f"{len(conflicts)} contradicting knowledge base entr{'y' if len(conflicts) == 1 else 'ies'}",
        )
    detail = f"checked {len(entries)} candidate entries"
    if not fact.direction:
        detail += "; claim direction undetermined"
    return ConflictReport(fact.fact_id, VerificationState.VERIFIED, detail=detail)
