"""
Tests for the pluggable similarity and severity strategies.
"""

import pytest

from clinical_digest.analysis.confidence import find_internal_conflicts
from clinical_digest.analysis.similarity import JaccardSimilarity, TokenCosineSimilarity
from clinical_digest.models import ExtractionMethod, Finding, SectionName, SourceSpan


@pytest.fixture(params=[TokenCosineSimilarity(), JaccardSimilarity()], ids=["cosine", "jaccard"])
def strategy(request):
    return request.param


class TestStrategies:

    def test_identical_claims(self, strategy):
        assert strategy("Statins reduce LDL cholesterol", "statins reduce LDL cholesterol") == pytest.approx(1.0)

    def test_disjoint_claims(self, strategy):
        assert strategy("Statins reduce cholesterol", "Exercise improves sleep") == 0.0

    def test_symmetric_and_bounded(self, strategy):
        a = "Drug X reduced systolic blood pressure"
        b = "Drug X increases blood pressure in older adults"
        assert strategy(a, b) == pytest.approx(strategy(b, a))
        assert 0.0 < strategy(a, b) < 1.0

    def test_stopwords_ignored(self, strategy):
        assert strategy("the effect of the drug", "drug effect") == pytest.approx(1.0)

    def test_cosine_counts_repetition(self):
        cosine = TokenCosineSimilarity()
        assert cosine("pain pain relief", "pain relief") == pytest.approx(3 / (5 ** 0.5 * 2 ** 0.5))

    def test_jaccard_value(self):
        assert JaccardSimilarity()("pain relief fast", "pain relief slow") == pytest.approx(0.5)


def test_strategy_is_swappable(config):
    a = Finding("a", "Drug X reduced pain scores", SourceSpan(SectionName.RESULTS, 0, 1),
                ExtractionMethod.OUTCOME_PATTERN, direction="decrease")
    b = Finding("b", "Drug X increased pain scores in older adults", SourceSpan(SectionName.RESULTS, 2, 3),
                ExtractionMethod.OUTCOME_PATTERN, direction="increase")
    assert find_internal_conflicts([a, b], config) == ["a", "b"]

    never = config.with_overrides(similarity=lambda x, y: 0.0)
    assert find_internal_conflicts([a, b], never) == []
