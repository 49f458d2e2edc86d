"""
Candidate-fact extractor.

Turns the segmented sections of a Document into typed candidate facts:
- Findings:            outcome sentences in abstract/results/discussion/conclusions
- StatisticalResults:  p-values, confidence intervals, effect sizes, sample sizes
- MethodologyDetails:  design (closed vocabulary), control, blinding, randomization,
                       follow-up, funding, sample size — "unknown" when not found
- Limitations:         explicit limitation phrasing (inferred ones come from bias.py)

Extraction is deterministic keyword/pattern matching, so re-running it on the
same text yields the same facts, ids and order.
"""

import logging
import re
from typing import Iterator, List, Optional, Tuple

from clinical_digest.analysis import statistics as stats
from clinical_digest.config import PipelineConfig
from clinical_digest.models import (
    UNKNOWN,
    BiasType,
    CandidateFact,
    Document,
    ExtractionMethod,
    FactKind,
    Finding,
    Limitation,
    MethodologyDetail,
    Section,
    SectionName,
    SECTION_ORDER,
    SourceSpan,
    StatisticalResult,
    StudyDesign,
    make_fact_id,
)
from clinical_digest.utils import claim_direction, split_sentences

logger = logging.getLogger(__name__)

FINDING_SECTIONS = {
    SectionName.ABSTRACT, SectionName.RESULTS, SectionName.DISCUSSION, SectionName.CONCLUSIONS,
}
SUPPORTING_STAT_TYPES = (stats.P_VALUE, stats.CONFIDENCE_INTERVAL, stats.EFFECT_SIZE)

_FINDING_CUES = re.compile(
    r"\b(?:significant(?:ly)?|reduc(?:ed|tion)|increas(?:ed|e in)|improv(?:ed|ement)|"
    r"decreas(?:ed|e in)|associated with|no (?:significant )?difference|"
    r"primary (?:outcome|end ?point)|secondary (?:outcome|end ?point)|resulted in|led to|"
    r"lower|higher|effective(?:ness)?|efficacy|superior|inferior|outperformed)\b",
    re.IGNORECASE,
)
_CITATION_MARK = re.compile(r"\s*\[\d+(?:\s*[,–-]\s*\d+)*\]")
_STAT_PARENTHETICAL = re.compile(r"\s*\([^()]*(?:\b[Pp]\s*[<=>≤≥]|\bCI\b|%)[^()]*\)")

# --- Limitations ---
_LIMITATION_CUES = re.compile(
    r"\b(?:limitations?|limited by|small sample|sample size (?:was )?(?:small|limited)|"
    r"underpowered|lack(?:ed)? (?:of )?(?:a )?control|no control group|uncontrolled|"
    r"not randomi[sz]ed|non-randomi[sz]ed|generali[sz]ab\w*|interpreted with caution|"
    r"single[- ]cent(?:er|re)|selection bias|convenience sample|funded by|"
    r"conflicts? of interest|short follow[- ]up|self-report\w*|open[- ]label|retrospective)",
    re.IGNORECASE,
)
_LIMITATION_TYPES: List[Tuple[BiasType, re.Pattern]] = [
    (BiasType.SMALL_SAMPLE, re.compile(
        r"small sample|sample size (?:was )?(?:small|limited)|underpowered|few participants",
        re.IGNORECASE)),
    (BiasType.NO_CONTROL_GROUP, re.compile(
        r"(?:lack(?:ed)?|absence) of (?:a )?control|no control group|uncontrolled|single[- ]arm",
        re.IGNORECASE)),
    (BiasType.FUNDING_CONFLICT, re.compile(
        r"funded by|sponsor|conflicts? of interest|industry", re.IGNORECASE)),
    (BiasType.SELECTION_BIAS, re.compile(
        r"selection bias|convenience sample|single[- ]cent(?:er|re)|volunteer|self-selected|"
        r"not randomi[sz]ed|non-randomi[sz]ed", re.IGNORECASE)),
]

# --- Methodology vocabulary (priority order) ---
_DESIGN_PATTERNS: List[Tuple[StudyDesign, re.Pattern]] = [
    (StudyDesign.RCT, re.compile(
        r"(?<!non-)(?<!non )(?<!not )\brandomi[sz]ed(?: controlled| clinical| placebo-controlled)? trial|"
        r"\bRCT\b|randomly (?:assigned|allocated)|(?<!non-)(?<!not )\brandomi[sz]ed to\b",
        re.IGNORECASE)),
    (StudyDesign.COHORT, re.compile(r"\bcohort\b|prospectively followed|longitudinal study",
                                    re.IGNORECASE)),
    (StudyDesign.CASE_CONTROL, re.compile(r"\bcase[- ]control\b", re.IGNORECASE)),
    (StudyDesign.CROSS_SECTIONAL, re.compile(r"\bcross[- ]sectional\b|\bsurvey\b", re.IGNORECASE)),
    (StudyDesign.OTHER, re.compile(
        r"\bcase series\b|\bcase report\b|\bpilot study\b|\bsingle[- ]arm\b|\bpre-post\b|"
        r"\bbefore[- ]and[- ]after\b|\bqualitative\b", re.IGNORECASE)),
]
_CONTROL_ABSENT = re.compile(
    r"\bno control group\b|\bwithout (?:a )?control\b|\buncontrolled\b|\bsingle[- ]arm\b|"
    r"\bdid not include a control\b|\bno comparison group\b", re.IGNORECASE)
_CONTROL_PRESENT = re.compile(
    r"\bplacebo\b|\bcontrol group\b|\bcontrols\b|\busual care\b|\bstandard care\b|\bsham\b|"
    r"\bcomparator\b", re.IGNORECASE)
_BLINDING = [
    ("triple-blind", re.compile(r"\btriple[- ]blind(?:ed)?\b", re.IGNORECASE)),
    ("double-blind", re.compile(r"\bdouble[- ]blind(?:ed)?\b", re.IGNORECASE)),
    ("single-blind", re.compile(r"\bsingle[- ]blind(?:ed)?\b", re.IGNORECASE)),
    ("open-label", re.compile(r"\bopen[- ]label\b|\bunblinded\b|\bnot blinded\b", re.IGNORECASE)),
]
_NOT_RANDOMIZED = re.compile(r"\bnon-?randomi[sz]ed\b|\bnot randomi[sz]ed\b", re.IGNORECASE)
_RANDOMIZED = re.compile(r"\brandomi[sz]ed\b|\brandomly\b|\brandomi[sz]ation\b", re.IGNORECASE)
_FOLLOW_UP = re.compile(
    r"follow(?:ed)?[- ]up (?:period )?(?:of |for |was |lasted )?"
    r"(?P<a>\d+(?:\.\d+)?\s*(?:days?|weeks?|months?|years?))|"
    r"(?P<b>\d+)[- ](?:day|week|month|year) follow[- ]up",
    re.IGNORECASE,
)
_FUNDING_NONE = re.compile(r"received no (?:specific )?funding|\bno funding\b|\bunfunded\b",
                           re.IGNORECASE)
FUNDING_INDUSTRY_RE = re.compile(
    r"(?:funded|sponsored|supported) by [^.]*?(?:pharma\w*|inc\b|ltd\b|corporation|company|"
    r"industry|laboratories)", re.IGNORECASE)
FUNDING_PUBLIC_RE = re.compile(
    r"(?:funded|sponsored|supported) by [^.]*?(?:national institutes?|\bNIH\b|grant|foundation|"
    r"council|ministry|government|university|public)", re.IGNORECASE)

METHODOLOGY_FIELDS = (
    "study_design", "sample_size", "control_group", "blinding",
    "randomization", "follow_up", "funding_source",
)


class FactSequence:
    """Lazy, finite, restartable sequence of one document's candidate facts.

    Each iteration re-runs extraction from the section text, so two passes
    yield identical facts in identical order.
    """

    def __init__(self, extractor: "Extractor", document: Document):
        self._extractor = extractor
        self._document = document

    def __iter__(self) -> Iterator[CandidateFact]:
        return self._extractor.iter_facts(self._document)

    @property
    def document_id(self) -> str:
        return self._document.id

    @property
    def absent_sections(self) -> Tuple[SectionName, ...]:
        return self._document.absent_sections()


class Extractor:
    """Pattern-based candidate fact extractor."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def extract(self, document: Document) -> FactSequence:
        absent = document.absent_sections()
        if absent:
            logger.info(f"[{document.id}] sections absent: {', '.join(s.value for s in absent)}")
        return FactSequence(self, document)

    def iter_facts(self, document: Document) -> Iterator[CandidateFact]:
        methodology = document.section(SectionName.METHODOLOGY)
        for name in SECTION_ORDER:
            section = document.section(name)
            if section is None:
                continue
            if name == SectionName.METHODOLOGY or (
                name == SectionName.ABSTRACT and methodology is None
            ):
                yield from self._methodology_facts(document, section)
            yield from self._sentence_facts(document, section)

    # ------------------------------------------------------------------
    # Sentence-level facts
    # ------------------------------------------------------------------
    def _sentence_facts(self, document: Document, section: Section) -> Iterator[CandidateFact]:
        sentences = split_sentences(section.text)
        for idx, (start, end, sentence) in enumerate(sentences):
            results = self._statistics(document, section, start, sentence)
            yield from results

            if section.name in FINDING_SECTIONS and _FINDING_CUES.search(sentence):
                support = _first_support(results)
                if support is None and idx + 1 < len(sentences):
                    n_start, _, n_sentence = sentences[idx + 1]
                    if not _FINDING_CUES.search(n_sentence):
                        support = _first_support(
                            self._statistics(document, section, n_start, n_sentence)
                        )
                yield self._finding(document, section, start, end, sentence, support)

            if _is_limitation(section.name, sentence):
                yield self._limitation(document, section, start, end, sentence)

    def _statistics(
        self, document: Document, section: Section, offset: int, sentence: str
    ) -> List[StatisticalResult]:
        out = []
        for m in stats.parse_statistics(sentence, alpha=self.config.significance_level):
            span = SourceSpan(section.name, offset + m.start, offset + m.end)
            content = m.raw.strip()
            if not m.available:
                logger.debug(f"[{document.id}] unreadable {m.stat_type} in {section.name.value}: {content!r}")
            out.append(StatisticalResult(
                fact_id=make_fact_id(document.id, FactKind.STATISTICAL_RESULT, span, content),
                content=content,
                span=span,
                method=ExtractionMethod.STATISTICAL_PATTERN,
                stat_type=m.stat_type,
                value=m.value,
                comparator=m.comparator,
                interval=m.interval,
                label=m.label,
                significance=m.significance,
                available=m.available,
            ))
        return out

    def _finding(
        self, document: Document, section: Section, start: int, end: int,
        sentence: str, support: Optional[StatisticalResult],
    ) -> Finding:
        content = reformulate(sentence)
        direction, ambiguous = claim_direction(content)
        lowered = sentence.lower()
        if "primary" in lowered:
            outcome_type = "primary"
        elif "secondary" in lowered:
            outcome_type = "secondary"
        else:
            outcome_type = "unspecified"
        span = SourceSpan(section.name, start, end)
        return Finding(
            fact_id=make_fact_id(document.id, FactKind.FINDING, span, content),
            content=content,
            span=span,
            method=ExtractionMethod.OUTCOME_PATTERN,
            outcome_type=outcome_type,
            direction=direction,
            supported_by=support.fact_id if support else None,
            ambiguous=ambiguous,
        )

    def _limitation(
        self, document: Document, section: Section, start: int, end: int, sentence: str
    ) -> Limitation:
        span = SourceSpan(section.name, start, end)
        content = reformulate(sentence)
        bias_type, *others = classify_limitation(sentence)
        return Limitation(
            fact_id=make_fact_id(document.id, FactKind.LIMITATION, span, content),
            content=content,
            span=span,
            method=ExtractionMethod.LIMITATION_PATTERN,
            bias_type=bias_type,
            explicitly_stated=True,
            also_names=tuple(others),
        )

    # ------------------------------------------------------------------
    # Methodology
    # ------------------------------------------------------------------
    def _methodology_facts(self, document: Document, section: Section) -> Iterator[MethodologyDetail]:
        text = section.text
        design, design_match, ambiguous = classify_design(text)
        found = {
            "study_design": (design.value, design_match) if design_match else None,
            "sample_size": self._sample_size(text),
            "control_group": _control_group(text),
            "blinding": _first_labelled(_BLINDING, text),
            "randomization": _randomization(text),
            "follow_up": _follow_up(text),
            "funding_source": _funding(text),
        }
        for field_name in METHODOLOGY_FIELDS:
            hit = found[field_name]
            label = field_name.replace("_", " ").capitalize()
            if hit is None:
                span = SourceSpan(section.name, 0, 0)
                value = UNKNOWN
                method = ExtractionMethod.DEFAULT_UNKNOWN
            else:
                value, (s, e) = hit
                span = SourceSpan(section.name, s, e)
                method = ExtractionMethod.DESIGN_VOCABULARY
            content = f"{label}: {value}"
            yield MethodologyDetail(
                fact_id=make_fact_id(document.id, FactKind.METHODOLOGY_DETAIL, span, content),
                content=content,
                span=span,
                method=method,
                field_name=field_name,
                value=value,
                design=design if field_name == "study_design" else None,
                ambiguous=ambiguous if field_name == "study_design" else False,
            )

    def _sample_size(self, text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
        for s_start, _, sentence in split_sentences(text):
            for m in stats.parse_statistics(sentence, alpha=self.config.significance_level):
                if m.stat_type == stats.SAMPLE_SIZE and m.available:
                    return str(int(m.value)), (s_start + m.start, s_start + m.end)
        return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def reformulate(sentence: str) -> str:
    """Light synthesis: drop bracket citations and statistical parentheticals."""
    text = _CITATION_MARK.sub("", sentence)
    text = _STAT_PARENTHETICAL.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"\s+([.,;:])", r"\1", text)
    return text or sentence.strip()


def _first_support(results: List[StatisticalResult]) -> Optional[StatisticalResult]:
    for r in results:
        if r.available and r.stat_type in SUPPORTING_STAT_TYPES:
            return r
    return None


def _is_limitation(section: SectionName, sentence: str) -> bool:
    if section == SectionName.LIMITATIONS:
        return True
    if section == SectionName.DISCUSSION:
        return bool(_LIMITATION_CUES.search(sentence))
    return False


def classify_limitation(sentence: str) -> Tuple[BiasType, ...]:
    """Every bias type a limitation sentence names, in vocabulary order."""
    named = tuple(bias_type for bias_type, pattern in _LIMITATION_TYPES if pattern.search(sentence))
    return named or (BiasType.OTHER,)


def classify_design(text: str) -> Tuple[StudyDesign, Optional[Tuple[int, int]], bool]:
    """Return (design, match span, ambiguous) from the closed design vocabulary.

    The highest-priority design wins; more than one matching design marks the
    classification ambiguous.
    """
    hits = []
    for design, pattern in _DESIGN_PATTERNS:
        m = pattern.search(text)
        if m:
            hits.append((design, (m.start(), m.end())))
    if not hits:
        return StudyDesign.UNKNOWN, None, False
    design, span = hits[0]
    return design, span, len(hits) > 1


def _control_group(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    m = _CONTROL_ABSENT.search(text)
    if m:
        return "absent", (m.start(), m.end())
    m = _CONTROL_PRESENT.search(text)
    if m:
        return "present", (m.start(), m.end())
    return None


def _first_labelled(patterns, text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    for label, pattern in patterns:
        m = pattern.search(text)
        if m:
            return label, (m.start(), m.end())
    return None


def _randomization(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    m = _NOT_RANDOMIZED.search(text)
    if m:
        return "not randomized", (m.start(), m.end())
    m = _RANDOMIZED.search(text)
    if m:
        return "randomized", (m.start(), m.end())
    return None


def _follow_up(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    m = _FOLLOW_UP.search(text)
    if not m:
        return None
    if m.group("a"):
        value = re.sub(r"\s+", " ", m.group("a"))
    else:
        unit = re.search(r"(day|week|month|year)", m.group(0), re.IGNORECASE).group(1).lower()
        value = f"{m.group('b')} {unit}s"
    return value, (m.start(), m.end())


def _funding(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    for label, pattern in (("none", _FUNDING_NONE), ("industry", FUNDING_INDUSTRY_RE),
                           ("public", FUNDING_PUBLIC_RE)):
        m = pattern.search(text)
        if m:
            return label, (m.start(), m.end())
    return None
