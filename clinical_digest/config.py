"""Centralized configuration for the clinical_digest pipeline.

Module-level values are the environment-derived defaults. Stages never read
them directly: every stage call receives an explicit PipelineConfig.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from dotenv import load_dotenv

from clinical_digest.analysis.citations import normalize_style
from clinical_digest.analysis.severity import BandedSeverity, SeverityScale
from clinical_digest.analysis.similarity import SimilarityStrategy, TokenCosineSimilarity
from clinical_digest.models import ExtractionMethod, SectionName, StudyDesign

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


# --- Gate / scoring thresholds ---
REVIEW_THRESHOLD = _env_float("CD_REVIEW_THRESHOLD", 0.6)
SIMILARITY_FLOOR = _env_float("CD_SIMILARITY_FLOOR", 0.35)

# --- Study quality ---
MIN_SAMPLE_SIZE = _env_int("CD_MIN_SAMPLE_SIZE", 30)
ADEQUATE_SAMPLE_SIZE = _env_int("CD_ADEQUATE_SAMPLE_SIZE", 100)

# --- Citation integrity ---
MAX_QUOTE_WORDS = _env_int("CD_MAX_QUOTE_WORDS", 30)
CITATION_STYLE = os.environ.get("CD_CITATION_STYLE", "AMA")

# --- Knowledge base ---
KB_URL = os.environ.get("CD_KB_URL", "")
KB_PATH = os.environ.get("CD_KB_PATH", "")
KB_TIMEOUT = _env_float("CD_KB_TIMEOUT", 5.0)   # seconds per lookup

# --- Concurrency ---
MAX_CONCURRENT_DOCUMENTS = _env_int("CD_MAX_CONCURRENT_DOCUMENTS", 4)
MAX_CONCURRENT_LOOKUPS = _env_int("CD_MAX_CONCURRENT_LOOKUPS", 10)


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the confidence scorer. Score = weighted sum / total weight."""
    method: float = 0.35
    statistical_backing: float = 0.30
    section: float = 0.25
    hedge_penalty: float = 0.08          # per hedging marker
    max_hedge_penalty: float = 0.24
    method_reliability: Dict[ExtractionMethod, float] = field(default_factory=lambda: {
        ExtractionMethod.STATISTICAL_PATTERN: 0.9,
        ExtractionMethod.DESIGN_VOCABULARY: 0.85,
        ExtractionMethod.LIMITATION_PATTERN: 0.8,
        ExtractionMethod.OUTCOME_PATTERN: 0.7,
        ExtractionMethod.INFERRED_RULE: 0.6,
        ExtractionMethod.DEFAULT_UNKNOWN: 0.3,
    })
    section_weights: Dict[SectionName, float] = field(default_factory=lambda: {
        SectionName.RESULTS: 1.0,
        SectionName.METHODOLOGY: 0.9,
        SectionName.LIMITATIONS: 0.85,
        SectionName.CONCLUSIONS: 0.75,
        SectionName.DISCUSSION: 0.7,
        SectionName.ABSTRACT: 0.5,
    })

    def __post_init__(self):
        if self.method + self.statistical_backing + self.section <= 0:
            raise ValueError("scoring weights must sum to a positive total")


@dataclass(frozen=True)
class QualityWeights:
    design_strength: float = 0.3
    control_presence: float = 0.2
    sample_adequacy: float = 0.25
    statistical_rigor: float = 0.25
    design_scores: Dict[StudyDesign, float] = field(default_factory=lambda: {
        StudyDesign.RCT: 1.0,
        StudyDesign.COHORT: 0.7,
        StudyDesign.CASE_CONTROL: 0.55,
        StudyDesign.CROSS_SECTIONAL: 0.4,
        StudyDesign.OTHER: 0.3,
    })


@dataclass(frozen=True)
class PipelineConfig:
    """Every threshold, weight and strategy the pipeline stages use."""
    review_threshold: float = REVIEW_THRESHOLD
    min_sample_size: int = MIN_SAMPLE_SIZE
    adequate_sample_size: int = ADEQUATE_SAMPLE_SIZE
    max_quote_words: int = MAX_QUOTE_WORDS
    similarity_floor: float = SIMILARITY_FLOOR
    kb_timeout: float = KB_TIMEOUT
    max_concurrent_documents: int = MAX_CONCURRENT_DOCUMENTS
    max_concurrent_lookups: int = MAX_CONCURRENT_LOOKUPS
    citation_style: str = CITATION_STYLE
    quality_floor: float = 0.0
    significance_level: float = 0.05
    scoring: ScoringWeights = field(default_factory=ScoringWeights)
    quality: QualityWeights = field(default_factory=QualityWeights)
    similarity: SimilarityStrategy = field(default_factory=TokenCosineSimilarity)
    severity_scale: SeverityScale = field(default_factory=BandedSeverity)

    def __post_init__(self):
        if not 0.0 <= self.review_threshold <= 1.0:
            raise ValueError(f"review_threshold must be in [0, 1], got {self.review_threshold}")
        if not 0.0 <= self.similarity_floor < 1.0:
            raise ValueError(f"similarity_floor must be in [0, 1), got {self.similarity_floor}")
        if self.max_quote_words < 1:
            raise ValueError("max_quote_words must be >= 1")
        if self.min_sample_size < 1:
            raise ValueError("min_sample_size must be >= 1")
        if self.adequate_sample_size < self.min_sample_size:
            raise ValueError(
                f"adequate_sample_size ({self.adequate_sample_size}) must be >= "
                f"min_sample_size ({self.min_sample_size})"
            )
        if self.max_concurrent_documents < 1 or self.max_concurrent_lookups < 1:
            raise ValueError("concurrency limits must be >= 1")
        object.__setattr__(self, "citation_style", normalize_style(self.citation_style))

    def with_overrides(self, **changes) -> "PipelineConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, citation_style: Optional[str] = None) -> "PipelineConfig":
        """Build a config from the current environment (re-read, not cached)."""
        return cls(
            review_threshold=_env_float("CD_REVIEW_THRESHOLD", 0.6),
            min_sample_size=_env_int("CD_MIN_SAMPLE_SIZE", 30),
            adequate_sample_size=_env_int("CD_ADEQUATE_SAMPLE_SIZE", 100),
            max_quote_words=_env_int("CD_MAX_QUOTE_WORDS", 30),
            similarity_floor=_env_float("CD_SIMILARITY_FLOOR", 0.35),
            kb_timeout=_env_float("CD_KB_TIMEOUT", 5.0),
            max_concurrent_documents=_env_int("CD_MAX_CONCURRENT_DOCUMENTS", 4),
            max_concurrent_lookups=_env_int("CD_MAX_CONCURRENT_LOOKUPS", 10),
            citation_style=citation_style or os.environ.get("CD_CITATION_STYLE", "AMA"),
        )
