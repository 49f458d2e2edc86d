"""
Provenance and citation binder.

Every surviving fact gets exactly one ProvenanceRecord tying it to its
verbatim source span, extraction method, document metadata and a formatted
citation. A fact is UNCITABLE (and never reaches output) when:
  - its span does not map back into a present section,
  - the document metadata has no title to cite, or
  - it reproduces more than config.max_quote_words consecutive source words.
"""

import logging
from datetime import datetime
from typing import List, Union

from clinical_digest.analysis.citations import format_citation
from clinical_digest.config import PipelineConfig
from clinical_digest.models import (
    CandidateFact,
    Document,
    ProvenanceRecord,
    ReasonCode,
    Rejection,
)
from clinical_digest.utils import tokenize

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


def longest_verbatim_run(content: str, source: str) -> int:
    """Length in words of the longest run of ``content`` found verbatim in ``source``."""
    a, b = tokenize(content), tokenize(source)
    if not a or not b:
        return 0
    best = 0
    prev = [0] * (len(b) + 1)
    for i in range(1, len(a) + 1):
        cur = [0] * (len(b) + 1)
        ai = a[i - 1]
        for j in range(1, len(b) + 1):
            if ai == b[j - 1]:
                cur[j] = prev[j - 1] + 1
                if cur[j] > best:
                    best = cur[j]
        prev = cur
    return best


def truncate_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit]) + ELLIPSIS


def bind(
    fact: CandidateFact,
    document: Document,
    config: PipelineConfig,
    timestamp: datetime,
) -> Union[ProvenanceRecord, Rejection]:
    """Attach provenance and citation to ``fact`` or reject it as UNCITABLE."""
    section = document.section(fact.span.section)
    if section is None:
        return Rejection(fact.fact_id, ReasonCode.UNCITABLE,
                         detail=f"source section '{fact.span.section.value}' is absent")
    if not 0 <= fact.span.start <= fact.span.end <= len(section.text):
        return Rejection(fact.fact_id, ReasonCode.UNCITABLE,
                         detail=f"span {fact.span.start}-{fact.span.end} outside "
                                f"'{fact.span.section.value}' ({len(section.text)} chars)")
    if not document.metadata.title.strip():
        return Rejection(fact.fact_id, ReasonCode.UNCITABLE, detail="document metadata has no title")

    run = longest_verbatim_run(fact.content, section.text)
    if run > config.max_quote_words:
        logger.info(f"[{document.id}] {fact.fact_id} quotes {run} consecutive words; rejected")
        return Rejection(
            fact.fact_id,
            ReasonCode.UNCITABLE,
            detail=f"direct quotation of {run} consecutive words exceeds {config.max_quote_words}",
            truncated_excerpt=truncate_words(fact.content, config.max_quote_words),
        )

    return ProvenanceRecord(
        fact_id=fact.fact_id,
        document_id=document.id,
        original_source=document.metadata,
        extracted_content=section.text[fact.span.start:fact.span.end],
        extraction_method=fact.method,
        span=fact.span,
        timestamp=timestamp,
        citation=format_citation(document.metadata, config.citation_style),
    )


def bind_all(facts: List[CandidateFact], document: Document, config: PipelineConfig,
             timestamp: datetime) -> List[Union[ProvenanceRecord, Rejection]]:
    return [bind(f, document, config, timestamp) for f in facts]
