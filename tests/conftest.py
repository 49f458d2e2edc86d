"""Shared pytest fixtures for the clinical_digest test suite."""

from datetime import datetime, timezone

import pytest

from clinical_digest.config import PipelineConfig
from clinical_digest.models import Document

FIXED_TIME = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clear_env_vars(monkeypatch):
    """Keep a developer's CD_* settings out of the tests."""
    for name in ("CD_REVIEW_THRESHOLD", "CD_MIN_SAMPLE_SIZE", "CD_ADEQUATE_SAMPLE_SIZE", "CD_MAX_QUOTE_WORDS",
                 "CD_SIMILARITY_FLOOR", "CD_KB_TIMEOUT", "CD_KB_URL", "CD_KB_PATH",
                 "CD_CITATION_STYLE", "CD_MAX_CONCURRENT_DOCUMENTS", "CD_MAX_CONCURRENT_LOOKUPS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config():
    return PipelineConfig(
        review_threshold=0.6,
        min_sample_size=30,
        adequate_sample_size=100,
        max_quote_words=30,
        similarity_floor=0.35,
        kb_timeout=1.0,
        citation_style="AMA",
    )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TIME


@pytest.fixture
def metadata():
    return {
        "title": "Mindfulness training for chronic insomnia: a pilot study",
        "authors": ["Jane Smith", "Ali Khan"],
        "journal": "Journal of Sleep Research",
        "publication_date": "2021-05-04",
        "doi": "10.1000/jsr.2021.001",
        "pmid": "12345678",
        "volume": "30",
        "issue": "2",
        "pages": "101-108",
        "keywords": ["insomnia", "mindfulness"],
    }


def small_study_dict(doc_id="small-1", metadata=None,
                     stated="The small sample and absence of a control group limit the conclusions."):
    """Sample size 12, no control group, p = 0.04; ``stated`` is the limitation the authors admit."""
    return {
        "id": doc_id,
        "metadata": metadata or {
            "title": "Mindfulness training for chronic insomnia: a pilot study",
            "authors": ["Jane Smith", "Ali Khan"],
            "journal": "Journal of Sleep Research",
            "publication_date": "2021-05-04",
        },
        "sections": {
            "abstract": (
                "This pilot study evaluated a mindfulness program in 12 adults with chronic insomnia. "
                "Sleep quality improved significantly after eight weeks (p = 0.04)."
            ),
            "methodology": (
                "We conducted a single-arm pilot study with no control group. "
                "Twelve participants were enrolled (n = 12). "
                "Sleep quality was assessed at baseline and after eight weeks."
            ),
            "results": (
                "Sleep quality scores improved significantly from baseline to week eight (p = 0.04). "
                "Mean sleep latency decreased by 14 minutes."
            ),
            "discussion": (
                "These preliminary results suggest that mindfulness may improve sleep quality. " + stated
            ),
            "conclusions": (
                "Mindfulness training was associated with improved sleep quality in this small sample."
            ),
        },
    }


def rct_dict(doc_id="rct-1", verb="reduced", change="reduction in", sign=-1):
    """A well-reported randomized trial; ``verb``/``change``/``sign`` set the effect direction."""
    md = f"{sign * 8.2:.1f}"
    low, high = sorted((sign * 10.1, sign * 6.3))
    return {
        "id": doc_id,
        "metadata": {
            "title": "Drug X for hypertension: a randomized placebo-controlled trial",
            "authors": ["Maria Garcia", "Wei Chen", "Tom Brown"],
            "journal": "Hypertension Research",
            "publication_date": "2022",
            "volume": "45",
            "issue": "3",
            "pages": "200-210",
        },
        "sections": {
            "abstract": (
                f"In this randomized trial of 240 adults with hypertension, drug X significantly "
                f"{verb} systolic blood pressure compared with placebo (p < 0.001)."
            ),
            "methodology": (
                "This was a randomized, double-blind, placebo-controlled trial conducted at 12 hospitals. "
                "A total of 240 patients were randomly assigned to drug X or placebo. "
                "Patients were followed up for 12 months. "
                "The trial was funded by the National Institutes of Health."
            ),
            "results": (
                f"The primary outcome, systolic blood pressure, was significantly {verb} in the drug X "
                f"group compared with placebo (mean difference {md} mmHg, 95% CI {low:.1f} to {high:.1f}; "
                f"p < 0.001)."
            ),
            "discussion": "Adverse events were similar between groups.",
            "conclusions": f"Drug X produced a clinically meaningful {change} systolic blood pressure.",
        },
    }


@pytest.fixture
def small_study():
    return Document.model_validate(small_study_dict())


@pytest.fixture
def rct_study():
    return Document.model_validate(rct_dict())


@pytest.fixture
def opposite_rct_study():
    return Document.model_validate(rct_dict("rct-2", verb="increased", change="increase in", sign=1))
