"""Shared text helpers for clinical_digest: sentences, tokens, claim direction."""
import re
from typing import List, Optional, Tuple

STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "in", "on", "for", "to", "with", "by",
    "at", "from", "as", "is", "are", "was", "were", "be", "been", "being", "that",
    "this", "these", "those", "it", "its", "than", "then", "there", "their",
    "which", "who", "whom", "we", "our", "not", "no", "did", "does", "do",
    "has", "have", "had", "but", "also", "after", "before", "between", "among",
    "during", "into", "over", "under", "vs", "versus", "compared", "group",
    "groups", "study", "patients", "participants",
}

_WORD_RE = re.compile(r"[a-z0-9]+(?:[-'.][a-z0-9]+)*")

# Split after terminal punctuation when the next sentence opens with a capital,
# digit or bracket.
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9(\[])")
_ABBREVIATIONS = ("e.g.", "i.e.", "vs.", "et al.", "approx.", "Fig.", "ca.")

_NULL_CUES = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bno (?:statistically )?significant (?:difference|effect|change|association|improvement|reduction)",
        r"\bnot (?:statistically )?significant(?:ly)?\b",
        r"\bdid not (?:differ|improve|reduce|increase|decrease|change|affect|lower)",
        r"\bno (?:effect|difference|association|benefit)\b",
        r"\bnot associated with\b",
        r"\bsimilar (?:between|in|across)\b",
        r"\bwas not (?:associated|different)\b",
    )
]
_INCREASE_CUES = re.compile(
    r"\b(?:increas(?:e|ed|es|ing)|higher|greater|elevat(?:ed|ion)|improv(?:e|ed|es|ement)|"
    r"rais(?:e|ed)|enhanc(?:e|ed)|gain(?:s|ed)?)\b",
    re.IGNORECASE,
)
_DECREASE_CUES = re.compile(
    r"\b(?:reduc(?:e|ed|es|tion|ing)|decreas(?:e|ed|es|ing)|lower(?:ed)?|declin(?:e|ed)|"
    r"fewer|less|attenuat(?:e|ed)|diminish(?:ed)?)\b",
    re.IGNORECASE,
)

HEDGING_MARKERS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bmay\b", r"\bmight\b", r"\bcould\b", r"\bsuggest(?:s|ed|ing)?\b",
        r"\bpossibl[ey]\b", r"\bpotentially\b", r"\bappears? to\b", r"\blikely\b",
        r"\bunclear\b", r"\bpreliminary\b", r"\btrend(?:ed)? toward\b",
    )
]


def tokenize(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def content_tokens(text: str) -> List[str]:
    """Lowercased tokens without stopwords or bare numbers."""
    return [t for t in tokenize(text) if t not in STOPWORDS and not _is_number(t)]


def _is_number(token: str) -> bool:
    try:
        float(token)
        return True
    except ValueError:
        return False


def split_sentences(text: str) -> List[Tuple[int, int, str]]:
    """Split text into (start, end, sentence) triples with offsets into ``text``."""
    spans: List[Tuple[int, int, str]] = []
    start = 0
    for m in _SENTENCE_BOUNDARY.finditer(text):
        head = text[start:m.start()]
        if head.endswith(_ABBREVIATIONS):
            continue
        _append_span(text, start, m.start(), spans)
        start = m.end()
    _append_span(text, start, len(text), spans)
    return spans


def _append_span(text: str, start: int, end: int, spans: list) -> None:
    chunk = text[start:end]
    stripped = chunk.strip()
    if not stripped:
        return
    lead = len(chunk) - len(chunk.lstrip())
    s = start + lead
    spans.append((s, s + len(stripped), stripped))


def count_hedges(text: str) -> int:
    return sum(len(p.findall(text)) for p in HEDGING_MARKERS)


def claim_direction(text: str) -> Tuple[Optional[str], bool]:
    """Classify the direction of a claim.

    Returns (direction, ambiguous) where direction is "increase", "decrease",
    "null" or None. Null-effect phrasing wins over directional verbs; an equal
    count of increase and decrease cues is ambiguous.
    """
    if any(p.search(text) for p in _NULL_CUES):
        return "null", False
    up = len(_INCREASE_CUES.findall(text))
    down = len(_DECREASE_CUES.findall(text))
    if up == 0 and down == 0:
        return None, False
    if up == down:
        return None, True
    return ("increase" if up > down else "decrease"), False


def safe_float(v):
    """Safely convert value to float, returning None on failure."""
    if v is None or v == "null":
        return None
    try:
        return float(str(v).replace(",", ""))
    except (ValueError, TypeError):
        return None


def safe_int(v):
    """Safely convert value to int, returning None on failure."""
    f = safe_float(v)
    return int(f) if f is not None else None
