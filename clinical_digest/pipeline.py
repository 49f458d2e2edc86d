"""
Extraction-and-validation pipeline.

Each document runs in its own ProcessingContext through six stages, strictly
in order:

    1. Extractor            -> candidate facts
    2. Confidence scorer    -> ConfidenceAssessment per fact
    3. Bias/quality         -> BiasIndicators, inferred Limitations, QualityScore
    4. Cross-referencer     -> ConflictReport per fact (knowledge-base lookups run
                               concurrently, one session per document)
    5. Provenance binder    -> ProvenanceRecord or UNCITABLE Rejection
    6. Validation gate      -> ValidationVerdict, recorded in the document's ledger

Documents are processed concurrently; a missing/corrupt document or an
unexpected failure yields a `failed` DocumentResult for that document only.

Usage:
    python -m clinical_digest study.json --kb-path kb.db --style APA --output out.json
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from clinical_digest import config as settings
from clinical_digest.analysis.bias import (
    MethodologyProfile,
    assess_bias,
    assess_study_quality,
    infer_limitations,
)
from clinical_digest.analysis.comparative import compare_documents
from clinical_digest.analysis.confidence import DocumentContext, score
from clinical_digest.analysis.cross_reference import validate_against_knowledge_base
from clinical_digest.analysis.extractor import Extractor
from clinical_digest.analysis.gate import VerdictLedger, decide
from clinical_digest.analysis.knowledge_base import open_knowledge_source
from clinical_digest.analysis.provenance import bind
from clinical_digest.config import PipelineConfig
from clinical_digest.errors import DocumentError, ErrorKind
from clinical_digest.models import (
    BiasIndicator,
    CandidateFact,
    ConfidenceAssessment,
    ConflictReport,
    Document,
    FactOutcome,
    Limitation,
    QualityScore,
    ReasonCode,
    Rejection,
    RejectedFact,
    SectionName,
    StatisticalResult,
    VerdictStatus,
    VerificationState,
)

logger = logging.getLogger(__name__)

COMPLETED = "completed"
REJECTED = "rejected"
FAILED = "failed"


@dataclass
class DocumentResult:
    document_id: str
    status: str
    error: str = ""
    outcomes: List[FactOutcome] = field(default_factory=list)
    rejected: List[RejectedFact] = field(default_factory=list)
    absent_sections: Tuple[SectionName, ...] = ()
    bias_indicators: List[BiasIndicator] = field(default_factory=list)
    quality: Optional[QualityScore] = None
    ledger: VerdictLedger = field(default_factory=VerdictLedger)
    issues: Dict[str, int] = field(default_factory=dict)   # ErrorKind value -> count

    @classmethod
    def failed(cls, document_id: str, reason: str) -> "DocumentResult":
        return cls(document_id=document_id, status=FAILED, error=reason)

    def fact_ids(self) -> List[str]:
        return [o.fact.fact_id for o in self.outcomes]

    def by_status(self, status: VerdictStatus) -> List[FactOutcome]:
        """Outcomes whose current verdict (after any review) has ``status``."""
        return [o for o in self.outcomes if self.ledger.current(o.fact.fact_id).status == status]

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "error": self.error,
            "absent_sections": [s.value for s in self.absent_sections],
            "issues": dict(self.issues),
            "quality": self.quality.to_dict() if self.quality else None,
            "bias_indicators": [b.to_dict() for b in self.bias_indicators],
            "outcomes": [o.to_dict() for o in self.outcomes],
            "rejected": [
                {"fact_id": r.fact_id, "kind": r.kind.value,
                 "reasons": sorted(c.value for c in r.reasons), "detail": r.detail}
                for r in self.rejected
            ],
            "verdict_history": self.ledger.to_list(),
        }


@dataclass
class ProcessingContext:
    """All state of one document's run. Created per document, discarded after."""
    document: Document
    config: PipelineConfig
    timestamp: datetime
    facts: List[CandidateFact] = field(default_factory=list)
    context: Optional[DocumentContext] = None
    assessments: Dict[str, ConfidenceAssessment] = field(default_factory=dict)
    indicators: List[BiasIndicator] = field(default_factory=list)
    quality: Optional[QualityScore] = None
    conflicts: Dict[str, ConflictReport] = field(default_factory=dict)
    ledger: VerdictLedger = field(default_factory=VerdictLedger)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_document(raw: Any) -> Document:
    """Validate pipeline input; the only place a document-level error is raised."""
    if raw is None:
        raise DocumentError("missing document")
    if isinstance(raw, Document):
        return raw
    if not isinstance(raw, dict):
        raise DocumentError(f"unsupported document type: {type(raw).__name__}")
    try:
        return Document.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise DocumentError(f"corrupt document: {problems}", str(raw.get("id") or "")) from e


class DocumentPipeline:
    """Runs documents through the six stages with an explicit configuration."""

    def __init__(self, config: PipelineConfig = None, knowledge_source=None,
                 clock: Callable[[], datetime] = None):
        self.config = config or PipelineConfig()
        self.knowledge_source = knowledge_source
        self.clock = clock or _utc_now
        self.extractor = Extractor(self.config)

    async def process(self, raw: Union[Document, dict, None]) -> DocumentResult:
        try:
            document = load_document(raw)
        except DocumentError as e:
            logger.error(f"Document rejected at entry ({e.document_id or 'no id'}): {e.reason}")
            return DocumentResult.failed(e.document_id, e.reason)

        ctx = ProcessingContext(document=document, config=self.config, timestamp=self.clock())
        try:
            return await self._run(ctx)
        except Exception as e:
            # One document's failure never reaches the others in the batch.
            logger.exception(f"[{document.id}] pipeline failed")
            return DocumentResult.failed(document.id, f"{type(e).__name__}: {e}")

    async def process_batch(self, documents: Sequence[Union[Document, dict, None]]) -> List[DocumentResult]:
        """Process documents concurrently; results keep the input order."""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_documents)

        async def run_one(raw):
            async with semaphore:
                return await self.process(raw)

        results = await asyncio.gather(*(run_one(d) for d in documents))
        failed = sum(1 for r in results if r.status == FAILED)
        logger.info(f"Batch finished: {len(results)} documents, {failed} failed")
        return list(results)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _run(self, ctx: ProcessingContext) -> DocumentResult:
        document, config = ctx.document, ctx.config

        # 1. Extraction
        sequence = self.extractor.extract(document)
        ctx.facts = _unique(sequence)

        # 2. Confidence
        ctx.context = DocumentContext.build(document, ctx.facts, config)
        for fact in ctx.facts:
            ctx.assessments[fact.fact_id] = score(fact, ctx.context, config)

        # 3. Bias / quality
        profile = MethodologyProfile.from_facts(ctx.facts)
        explicit = [f for f in ctx.facts if isinstance(f, Limitation)]
        ctx.indicators = assess_bias(profile, document.full_text(), config, explicit, document)
        known = {f.fact_id for f in ctx.facts}
        for inferred in infer_limitations(ctx.indicators, document):
            if inferred.fact_id not in known:
                ctx.facts.append(inferred)
                ctx.assessments[inferred.fact_id] = score(inferred, ctx.context, config)
        ctx.quality = assess_study_quality(document, config, ctx.facts)

        # 4. Cross-reference
        await self._cross_reference(ctx)

        # 5 + 6. Provenance and gate
        outcomes, rejected = [], []
        for fact in ctx.facts:
            binding = bind(fact, document, config, ctx.timestamp)
            verdict = ctx.ledger.record(decide(
                fact,
                ctx.assessments[fact.fact_id],
                ctx.conflicts[fact.fact_id],
                binding,
                ctx.indicators,
                document_rejected=document.privacy_rejected,
            ))
            if verdict.status == VerdictStatus.REJECTED or isinstance(binding, Rejection):
                rejected.append(RejectedFact(fact.fact_id, fact.kind, verdict.reasons, verdict.note))
                continue
            outcomes.append(FactOutcome(
                fact=fact,
                assessment=ctx.assessments[fact.fact_id],
                conflict=ctx.conflicts[fact.fact_id],
                provenance=binding,
                verdict=verdict,
            ))

        status = REJECTED if document.privacy_rejected else COMPLETED
        flagged = sum(1 for o in outcomes if o.verdict.status == VerdictStatus.FLAGGED_FOR_REVIEW)
        logger.info(
            f"[{document.id}] {len(ctx.facts)} facts: {len(outcomes) - flagged} accepted, "
            f"{flagged} flagged, {len(rejected)} rejected (quality {ctx.quality.overall:.2f})"
        )
        return DocumentResult(
            document_id=document.id,
            status=status,
            outcomes=outcomes,
            rejected=rejected,
            absent_sections=sequence.absent_sections,
            bias_indicators=ctx.indicators,
            quality=ctx.quality,
            ledger=ctx.ledger,
            issues=_tally_issues(ctx, sequence.absent_sections, rejected),
        )

    async def _cross_reference(self, ctx: ProcessingContext) -> None:
        semaphore = asyncio.Semaphore(ctx.config.max_concurrent_lookups)

        async with AsyncExitStack() as stack:
            session = None
            # Privacy-rejected content is never sent to an external knowledge base.
            if self.knowledge_source is not None and not ctx.document.privacy_rejected:
                try:
                    session = await stack.enter_async_context(self.knowledge_source.session())
                except Exception as e:
                    logger.warning(f"[{ctx.document.id}] knowledge base unavailable: {e}")

            async def check(fact: CandidateFact) -> ConflictReport:
                async with semaphore:
                    return await validate_against_knowledge_base(fact, session, ctx.config)

            reports = await asyncio.gather(*(check(f) for f in ctx.facts))
        ctx.conflicts = {r.fact_id: r for r in reports}


def _tally_issues(ctx: ProcessingContext, absent: Sequence[SectionName],
                  rejected: Sequence[RejectedFact]) -> Dict[str, int]:
    """Count the non-fatal problems met while processing one document."""
    counts = {
        ErrorKind.SECTION_MISSING: len(absent),
        ErrorKind.EXTRACTION_AMBIGUOUS: sum(1 for f in ctx.facts if f.ambiguous),
        ErrorKind.STATISTICAL_PARSE_FAILURE: sum(
            1 for f in ctx.facts if isinstance(f, StatisticalResult) and not f.available
        ),
        ErrorKind.UNCITABLE: sum(1 for r in rejected if ReasonCode.UNCITABLE in r.reasons),
        ErrorKind.KNOWLEDGE_BASE_UNAVAILABLE: sum(
            1 for r in ctx.conflicts.values() if r.state == VerificationState.UNAVAILABLE
        ),
    }
    return {kind.value: n for kind, n in counts.items() if n}


def _unique(facts) -> List[CandidateFact]:
    seen, out = set(), []
    for f in facts:
        if f.fact_id not in seen:
            seen.add(f.fact_id)
            out.append(f)
    return out


# ──────────────────────────────────────────────────────────────
# Command line
# ──────────────────────────────────────────────────────────────

def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO):
    """Configure root logging: stderr (stdout carries the JSON results) plus an optional log file."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        prog="clinical_digest",
        description="Extract, score and validate facts from segmented clinical research documents.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m clinical_digest study.json
  python -m clinical_digest a.json b.json --kb-path kb.db --style Vancouver --output results.json

Environment variables:
  CD_REVIEW_THRESHOLD, CD_MIN_SAMPLE_SIZE, CD_MAX_QUOTE_WORDS, CD_SIMILARITY_FLOOR,
  CD_KB_TIMEOUT, CD_KB_PATH, CD_KB_URL, CD_CITATION_STYLE
        """
    )
    parser.add_argument('documents', nargs='+', type=Path,
                        help='JSON file(s), each holding one document or a list of documents')
    kb = parser.add_mutually_exclusive_group()
    kb.add_argument('--kb-path', type=str, default=settings.KB_PATH,
                    help='SQLite knowledge base file')
    kb.add_argument('--kb-url', type=str, default=settings.KB_URL,
                    help='Base URL of an HTTP knowledge base')
    parser.add_argument('--style', type=str, choices=['AMA', 'APA', 'Vancouver'],
                        help='Citation style (default: CD_CITATION_STYLE or AMA)')
    parser.add_argument('--output', type=Path, help='Write results JSON here instead of stdout')
    parser.add_argument('--log-file', type=Path, help='Also write logs to this file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def read_documents(paths: Sequence[Path]) -> List[Any]:
    docs: List[Any] = []
    for path in paths:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, list):
            docs.extend(data)
        else:
            docs.append(data)
    return docs


def main(argv=None) -> int:
    args = parse_arguments(argv)
    setup_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = PipelineConfig.from_env(citation_style=args.style)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    source = open_knowledge_source(
        kb_path="" if args.kb_url else args.kb_path,
        kb_url=args.kb_url,
        timeout=config.kb_timeout,
    )
    documents = read_documents(args.documents)
    logger.info(f"Processing {len(documents)} documents")

    pipeline = DocumentPipeline(config, knowledge_source=source)
    results = asyncio.run(pipeline.process_batch(documents))
    summary = compare_documents(results, config)

    payload = {
        "documents": [r.to_dict() for r in results],
        "comparison": summary.to_dict(),
    }
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if args.output:
        args.output.write_text(text, encoding="utf-8")
        logger.info(f"Results written to {args.output}")
    else:
        print(text)
    return 1 if any(r.status == FAILED for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
