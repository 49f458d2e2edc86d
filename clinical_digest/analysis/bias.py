"""
Bias and study-quality assessor.

Bias rules are pattern + threshold based:
- SmallSample:      sample size below config.min_sample_size; severity from
                    config.severity_scale(observed, required)
- NoControlGroup:   methodology states there is no control/comparison arm
- FundingConflict:  industry funding and/or declared competing interests
- SelectionBias:    convenience/volunteer/single-centre/retrospective sampling,
                    or explicitly non-randomized allocation
- Other:            open-label (unblinded) designs

When the document itself states the limitation (an explicit Limitation fact of
the same type), the indicator is marked explicitly_stated and only
corroborates that fact. Missing methodology details never raise: the related
quality sub-score drops to config.quality_floor.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from clinical_digest.analysis import statistics as stats
from clinical_digest.analysis.extractor import FUNDING_INDUSTRY_RE, Extractor
from clinical_digest.config import PipelineConfig
from clinical_digest.models import (
    UNKNOWN,
    BiasIndicator,
    BiasType,
    CandidateFact,
    Document,
    ExtractionMethod,
    FactKind,
    Finding,
    Limitation,
    MethodologyDetail,
    QualityScore,
    SECTION_ORDER,
    Severity,
    SourceSpan,
    StatisticalResult,
    StudyDesign,
    make_fact_id,
)

logger = logging.getLogger(__name__)

_COMPETING_INTERESTS = re.compile(
    r"(?:received|reports?|reported) (?:personal )?(?:fees|grants|honoraria)|\bemployees? of\b|"
    r"\bconsult(?:ant|ing) (?:for|to)\b|\bholds? (?:stock|shares|patents?)\b|"
    r"\bspeakers? bureau\b",
    re.IGNORECASE,
)
_SELECTION_PATTERNS = [
    re.compile(r"\bconvenience sampl\w*", re.IGNORECASE),
    re.compile(r"\bvolunteers?\b", re.IGNORECASE),
    re.compile(r"\bself-selected\b", re.IGNORECASE),
    re.compile(r"\bsingle[- ]cent(?:er|re)\b", re.IGNORECASE),
    re.compile(r"\bretrospective(?:ly)?\b", re.IGNORECASE),
]


@dataclass(frozen=True)
class MethodologyProfile:
    """Study-level methodology summary built from MethodologyDetail facts."""
    design: StudyDesign = StudyDesign.UNKNOWN
    sample_size: Optional[int] = None
    control_group: str = UNKNOWN
    blinding: str = UNKNOWN
    randomization: str = UNKNOWN
    funding_source: str = UNKNOWN
    spans: Dict[str, SourceSpan] = field(default_factory=dict)

    @classmethod
    def from_facts(cls, facts: Iterable[CandidateFact]) -> "MethodologyProfile":
        values: Dict[str, str] = {}
        spans: Dict[str, SourceSpan] = {}
        design = StudyDesign.UNKNOWN
        largest_n: Optional[StatisticalResult] = None
        for f in facts:
            if isinstance(f, MethodologyDetail):
                if f.field_name in values:
                    continue
                values[f.field_name] = f.value
                if not f.is_unknown:
                    spans[f.field_name] = f.span
                if f.field_name == "study_design" and f.design is not None:
                    design = f.design
            elif isinstance(f, StatisticalResult) and f.stat_type == stats.SAMPLE_SIZE and f.available:
                if largest_n is None or f.value > largest_n.value:
                    largest_n = f

        sample_size = None
        raw_n = values.get("sample_size", UNKNOWN)
        if raw_n != UNKNOWN:
            sample_size = int(raw_n)
        elif largest_n is not None:
            sample_size = int(largest_n.value)
            spans["sample_size"] = largest_n.span

        return cls(
            design=design,
            sample_size=sample_size,
            control_group=values.get("control_group", UNKNOWN),
            blinding=values.get("blinding", UNKNOWN),
            randomization=values.get("randomization", UNKNOWN),
            funding_source=values.get("funding_source", UNKNOWN),
            spans=spans,
        )


def _locate(document: Optional[Document], pattern: re.Pattern) -> Optional[SourceSpan]:
    """First match of ``pattern`` as a section-local span, if a document is given."""
    if document is None:
        return None
    for name in SECTION_ORDER:
        section = document.section(name)
        if section is None:
            continue
        m = pattern.search(section.text)
        if m:
            return SourceSpan(name, m.start(), m.end())
    return None


def assess_bias(
    methodology: MethodologyProfile,
    full_text: str,
    config: PipelineConfig,
    limitations: Sequence[Limitation] = (),
    document: Optional[Document] = None,
) -> List[BiasIndicator]:
    """Emit bias indicators for one study, ordered by bias type."""
    found: Dict[BiasType, BiasIndicator] = {}

    n = methodology.sample_size
    if n is not None and n < config.min_sample_size:
        found[BiasType.SMALL_SAMPLE] = BiasIndicator(
            bias_type=BiasType.SMALL_SAMPLE,
            severity=config.severity_scale(n, config.min_sample_size),
            rationale=f"Sample size {n} is below the minimum of {config.min_sample_size}",
            evidence_span=methodology.spans.get("sample_size"),
        )

    if methodology.control_group == "absent":
        found[BiasType.NO_CONTROL_GROUP] = BiasIndicator(
            bias_type=BiasType.NO_CONTROL_GROUP,
            severity=Severity.HIGH,
            rationale="No control or comparison group",
            evidence_span=methodology.spans.get("control_group"),
        )

    industry = methodology.funding_source == "industry" or bool(FUNDING_INDUSTRY_RE.search(full_text))
    competing = bool(_COMPETING_INTERESTS.search(full_text))
    if industry or competing:
        parts = []
        if industry:
            parts.append("industry funding")
        if competing:
            parts.append("declared competing interests")
        span = methodology.spans.get("funding_source") if methodology.funding_source == "industry" else None
        span = span or _locate(document, FUNDING_INDUSTRY_RE if industry else _COMPETING_INTERESTS)
        found[BiasType.FUNDING_CONFLICT] = BiasIndicator(
            bias_type=BiasType.FUNDING_CONFLICT,
            severity=Severity.HIGH if industry and competing else Severity.MEDIUM,
            rationale="Potential conflict: " + " and ".join(parts),
            evidence_span=span,
        )

    selection_hits = [p for p in _SELECTION_PATTERNS if p.search(full_text)]
    if selection_hits or methodology.randomization == "not randomized":
        severity = Severity.MEDIUM
        if methodology.randomization != "not randomized" and len(selection_hits) < 2:
            severity = Severity.LOW
        span = methodology.spans.get("randomization") if methodology.randomization == "not randomized" else None
        if span is None and selection_hits:
            span = _locate(document, selection_hits[0])
        found[BiasType.SELECTION_BIAS] = BiasIndicator(
            bias_type=BiasType.SELECTION_BIAS,
            severity=severity,
            rationale="Non-random or restricted participant selection",
            evidence_span=span,
        )

    if methodology.blinding == "open-label":
        found[BiasType.OTHER] = BiasIndicator(
            bias_type=BiasType.OTHER,
            severity=Severity.LOW,
            rationale="Open-label design: participants and assessors were not blinded",
            evidence_span=methodology.spans.get("blinding"),
        )

    indicators = []
    for bias_type in BiasType:
        explicit = next((l for l in limitations
                         if l.explicitly_stated and l.names(bias_type)), None)
        indicator = found.get(bias_type)
        if indicator is not None and explicit is not None:
            indicator = BiasIndicator(
                bias_type=indicator.bias_type,
                severity=indicator.severity,
                explicitly_stated=True,
                rationale=indicator.rationale,
                evidence_span=explicit.span,
                corroborates=explicit.fact_id,
            )
        elif indicator is None and explicit is not None:
            indicator = BiasIndicator(
                bias_type=bias_type,
                severity=Severity.LOW if bias_type == BiasType.OTHER else Severity.MEDIUM,
                explicitly_stated=True,
                rationale="Limitation stated by the authors",
                evidence_span=explicit.span,
                corroborates=explicit.fact_id,
            )
        if indicator is not None:
            indicators.append(indicator)
    return indicators


def infer_limitations(indicators: Iterable[BiasIndicator], document: Document) -> List[Limitation]:
    """Limitation facts for indicators the source text does not state itself."""
    out = []
    for ind in indicators:
        if ind.explicitly_stated or ind.evidence_span is None:
            continue
        content = f"Inferred limitation ({ind.severity.value} {ind.bias_type.value} risk): {ind.rationale}."
        out.append(Limitation(
            fact_id=make_fact_id(document.id, FactKind.LIMITATION, ind.evidence_span, content),
            content=content,
            span=ind.evidence_span,
            method=ExtractionMethod.INFERRED_RULE,
            bias_type=ind.bias_type,
            explicitly_stated=False,
        ))
    return out


def _supported(finding: Finding, by_id: Dict[str, CandidateFact]) -> bool:
    support = by_id.get(finding.supported_by) if finding.supported_by else None
    return isinstance(support, StatisticalResult) and support.available


def assess_study_quality(
    document: Document,
    config: PipelineConfig,
    facts: Optional[Sequence[CandidateFact]] = None,
) -> QualityScore:
    """Aggregate study quality into [0, 1] with its component sub-scores."""
    if facts is None:
        facts = list(Extractor(config).extract(document))
    profile = MethodologyProfile.from_facts(facts)
    floor = config.quality_floor
    qw = config.quality

    design_strength = qw.design_scores.get(profile.design, floor)
    control_presence = 1.0 if profile.control_group == "present" else floor

    n = profile.sample_size
    if n is None or n < config.min_sample_size:
        sample_adequacy = floor
    else:
        sample_adequacy = max(floor, min(1.0, n / config.adequate_sample_size))

    by_id = {f.fact_id: f for f in facts}
    findings = [f for f in facts if isinstance(f, Finding)]
    if findings:
        statistical_rigor = sum(1 for f in findings if _supported(f, by_id)) / len(findings)
    else:
        statistical_rigor = floor

    total = qw.design_strength + qw.control_presence + qw.sample_adequacy + qw.statistical_rigor
    overall = (
        qw.design_strength * design_strength
        + qw.control_presence * control_presence
        + qw.sample_adequacy * sample_adequacy
        + qw.statistical_rigor * statistical_rigor
    ) / total if total > 0 else floor

    score = QualityScore(
        overall=round(overall, 4),
        design_strength=round(design_strength, 4),
        control_presence=round(control_presence, 4),
        sample_adequacy=round(sample_adequacy, 4),
        statistical_rigor=round(statistical_rigor, 4),
    )
    logger.debug(f"[{document.id}] quality {score.overall:.2f} (design={profile.design.value}, n={n})")
    return score
