"""
Deterministic statistical-reporting parser.
No model involvement — regular expressions and arithmetic only.

Detects, within one sentence:
- p-values            (p = 0.04, P<.001, p ≤ 0.05)
- confidence intervals (95% CI 0.61-0.89, 95% CI: 1.2 to 3.4) as (low, high)
- effect sizes        (HR 0.76, OR=1.5, SMD 0.43, d = 0.3, hazard ratio 0.8)
- sample sizes        (n = 120, 1,204 participants)

A value that is reported but cannot be read (p > 1, a reversed interval, a
malformed number) is returned with available=False instead of being dropped,
so the surrounding finding survives.
"""

import re
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from clinical_digest.utils import safe_float, safe_int

P_VALUE = "p_value"
CONFIDENCE_INTERVAL = "confidence_interval"
EFFECT_SIZE = "effect_size"
SAMPLE_SIZE = "sample_size"

RATIO_LABELS = {"HR", "OR", "RR", "IRR", "aHR", "aOR", "hazard ratio", "odds ratio",
                "risk ratio", "relative risk", "rate ratio"}

_P_VALUE_RE = re.compile(
    r"(?<![A-Za-z])[Pp](?:\s*-?\s*value)?\s*(?P<cmp><=|>=|≤|≥|<|>|=)\s*(?P<val>[^\s,;)\]]+)"
)
_CI_RE = re.compile(
    r"(?P<level>\d{2}(?:\.\d+)?)\s*%\s*(?:CI|C\.I\.|confidence interval)\s*[:,=]?\s*[\[(]?\s*"
    r"(?P<low>-?\d*\.?\d+)\s*(?:-|–|—|to|,)\s*(?P<high>-?\d*\.?\d+)\s*[\])]?",
    re.IGNORECASE,
)
_EFFECT_ABBR_RE = re.compile(
    r"\b(?P<label>aHR|aOR|HR|OR|RR|IRR|SMD|MD|WMD)\s*(?:=|:|of)?\s*(?P<val>-?\d*\.?\d+)"
)
_EFFECT_LETTER_RE = re.compile(
    r"(?:\bCohen'?s\s+|\bHedges'?\s+)?\b(?P<label>d|g|r)\s*=\s*(?P<val>-?\d*\.?\d+)"
)
_EFFECT_NAME_RE = re.compile(
    r"\b(?P<label>hazard ratio|odds ratio|risk ratio|relative risk|rate ratio|"
    r"standardi[sz]ed mean difference|mean difference)\s*(?:\(\w+\))?\s*(?:=|:|of|was)?\s*"
    r"(?P<val>-?\d*\.?\d+)",
    re.IGNORECASE,
)
_SAMPLE_N_RE = re.compile(r"\b[nN]\s*=\s*(?P<val>\d[\d,]*)")
_SAMPLE_WORD_RE = re.compile(
    r"\b(?P<val>\d[\d,]*)\s+"
    r"(?:(?!(?:seconds?|minutes?|hours?|days?|weeks?|months?|years?)\b)\w+\s+)?"
    r"(?:participants|patients|subjects|adults|children|individuals|"
    r"women|men|volunteers|infants|respondents|people)\b",
    re.IGNORECASE,
)

_CMP_NORMAL = {"≤": "<=", "≥": ">="}


@dataclass(frozen=True)
class StatMatch:
    """One statistic found in a sentence; offsets are sentence-local."""
    stat_type: str
    start: int
    end: int
    raw: str
    value: Optional[float] = None
    comparator: str = "="
    interval: Optional[Tuple[float, float]] = None
    label: Optional[str] = None
    significance: bool = False
    available: bool = True


def p_value_significant(value: Optional[float], comparator: str, alpha: float = 0.05) -> bool:
    """p < alpha is significant; "p < 0.05" counts, "p = 0.05" does not."""
    if value is None:
        return False
    if comparator in ("<", "<="):
        return value <= alpha
    if comparator == "=":
        return value < alpha
    return False


def null_value_for(label: Optional[str]) -> float:
    """Null effect: 1.0 for ratio measures, 0.0 for differences."""
    if label and (label in RATIO_LABELS or label.lower() in RATIO_LABELS):
        return 1.0
    return 0.0


def interval_excludes_null(interval: Tuple[float, float], label: Optional[str]) -> bool:
    low, high = interval
    null = null_value_for(label)
    return high < null or low > null


def _parse_p_values(sentence: str, alpha: float) -> List[StatMatch]:
    out = []
    for m in _P_VALUE_RE.finditer(sentence):
        raw_val = m.group("val").rstrip(".")
        end = m.start("val") + len(raw_val)
        cmp = _CMP_NORMAL.get(m.group("cmp"), m.group("cmp"))
        value = safe_float(raw_val)
        available = value is not None and 0.0 <= value <= 1.0
        out.append(StatMatch(
            stat_type=P_VALUE, start=m.start(), end=end, raw=sentence[m.start():end],
            value=value if available else None, comparator=cmp,
            significance=p_value_significant(value, cmp, alpha) if available else False,
            available=available,
        ))
    return out


def _parse_effects(sentence: str) -> List[StatMatch]:
    out = []
    for regex in (_EFFECT_ABBR_RE, _EFFECT_NAME_RE, _EFFECT_LETTER_RE):
        for m in regex.finditer(sentence):
            value = safe_float(m.group("val"))
            out.append(StatMatch(
                stat_type=EFFECT_SIZE, start=m.start(), end=m.end(), raw=m.group(0),
                value=value, label=m.group("label"), available=value is not None,
            ))
    return out


def _nearest_effect_label(effects: List[StatMatch], position: int) -> Optional[str]:
    before = [e for e in effects if e.end <= position]
    return before[-1].label if before else None


def _parse_intervals(sentence: str, effects: List[StatMatch]) -> List[StatMatch]:
    out = []
    for m in _CI_RE.finditer(sentence):
        low, high = safe_float(m.group("low")), safe_float(m.group("high"))
        label = _nearest_effect_label(effects, m.start())
        if low is None or high is None or low > high:
            out.append(StatMatch(
                stat_type=CONFIDENCE_INTERVAL, start=m.start(), end=m.end(), raw=m.group(0),
                label=label, available=False,
            ))
            continue
        interval = (low, high)
        out.append(StatMatch(
            stat_type=CONFIDENCE_INTERVAL, start=m.start(), end=m.end(), raw=m.group(0),
            value=safe_float(m.group("level")), interval=interval, label=label,
            significance=interval_excludes_null(interval, label),
        ))
    return out


def _parse_sample_sizes(sentence: str) -> List[StatMatch]:
    out = []
    for regex in (_SAMPLE_N_RE, _SAMPLE_WORD_RE):
        for m in regex.finditer(sentence):
            n = safe_int(m.group("val"))
            out.append(StatMatch(
                stat_type=SAMPLE_SIZE, start=m.start(), end=m.end(), raw=m.group(0),
                value=float(n) if n is not None else None, available=n is not None and n > 0,
            ))
    return out


def _drop_overlaps(matches: List[StatMatch]) -> List[StatMatch]:
    kept: List[StatMatch] = []
    for m in sorted(matches, key=lambda s: (s.start, -(s.end - s.start))):
        if any(m.start < k.end and k.start < m.end for k in kept):
            continue
        kept.append(m)
    return kept


def parse_statistics(sentence: str, alpha: float = 0.05) -> List[StatMatch]:
    """Return every statistic reported in ``sentence``, ordered by position.

    An effect size followed by a confidence interval inherits the interval's
    significance.
    """
    effects = _drop_overlaps(_parse_effects(sentence))
    intervals = _parse_intervals(sentence, effects)
    resolved = []
    for e in effects:
        following = [c for c in intervals if c.start >= e.end and c.available]
        if following:
            ci = following[0]
            e = replace(e, significance=ci.significance)
        resolved.append(e)
    matches = _parse_p_values(sentence, alpha) + intervals + resolved + _parse_sample_sizes(sentence)
    return _drop_overlaps(matches)
