"""
Unit tests for analysis/statistics.py — regex parsing of reported statistics.
"""

import pytest

from clinical_digest.analysis.statistics import (
    CONFIDENCE_INTERVAL,
    EFFECT_SIZE,
    P_VALUE,
    SAMPLE_SIZE,
    interval_excludes_null,
    null_value_for,
    p_value_significant,
    parse_statistics,
)


def _only(sentence, stat_type):
    matches = [m for m in parse_statistics(sentence) if m.stat_type == stat_type]
    assert len(matches) == 1, matches
    return matches[0]


class TestPValues:

    def test_equals_below_alpha(self):
        m = _only("Sleep quality improved (p = 0.04).", P_VALUE)
        assert m.value == pytest.approx(0.04)
        assert m.comparator == "="
        assert m.significance is True
        assert m.available is True

    def test_leading_dot_and_less_than(self):
        m = _only("Mortality was lower (P<.001).", P_VALUE)
        assert m.value == pytest.approx(0.001)
        assert m.comparator == "<"
        assert m.significance is True

    def test_exactly_alpha_is_not_significant(self):
        assert p_value_significant(0.05, "=") is False
        assert p_value_significant(0.05, "<") is True
        assert p_value_significant(0.2, ">") is False

    def test_unicode_comparator(self):
        m = _only("No difference was found (p ≥ 0.20).", P_VALUE)
        assert m.comparator == ">="
        assert m.significance is False

    def test_out_of_range_marked_unavailable(self):
        m = _only("The effect was reported (p = 1.7).", P_VALUE)
        assert m.available is False
        assert m.value is None
        assert m.significance is False

    def test_words_containing_p_are_ignored(self):
        assert parse_statistics("The placebo group improved steadily.") == []


class TestIntervalsAndEffects:

    def test_ratio_with_interval_excluding_one(self):
        matches = parse_statistics("Risk fell (HR 0.76, 95% CI 0.61-0.89).")
        effect = next(m for m in matches if m.stat_type == EFFECT_SIZE)
        ci = next(m for m in matches if m.stat_type == CONFIDENCE_INTERVAL)
        assert effect.label == "HR"
        assert effect.value == pytest.approx(0.76)
        assert ci.interval == (pytest.approx(0.61), pytest.approx(0.89))
        assert ci.significance is True
        assert effect.significance is True

    def test_ratio_interval_spanning_one(self):
        matches = parse_statistics("Risk was similar (HR 0.9, 95% CI 0.7 to 1.2).")
        ci = next(m for m in matches if m.stat_type == CONFIDENCE_INTERVAL)
        assert ci.significance is False

    def test_difference_interval_uses_zero_as_null(self):
        matches = parse_statistics("BP fell (mean difference -8.2 mmHg, 95% CI -10.1 to -6.3).")
        ci = next(m for m in matches if m.stat_type == CONFIDENCE_INTERVAL)
        assert ci.label == "mean difference"
        assert ci.interval == (pytest.approx(-10.1), pytest.approx(-6.3))
        assert ci.significance is True

    def test_reversed_interval_unavailable(self):
        m = _only("Odds were lower (95% CI 0.89-0.61).", CONFIDENCE_INTERVAL)
        assert m.available is False
        assert m.interval is None

    def test_cohens_d(self):
        m = _only("The effect was moderate (Cohen's d = 0.45).", EFFECT_SIZE)
        assert m.label == "d"
        assert m.value == pytest.approx(0.45)

    def test_null_values(self):
        assert null_value_for("OR") == 1.0
        assert null_value_for("hazard ratio") == 1.0
        assert null_value_for("SMD") == 0.0
        assert null_value_for(None) == 0.0
        assert interval_excludes_null((1.1, 2.0), "RR") is True
        assert interval_excludes_null((-0.2, 0.4), "MD") is False


class TestSampleSizes:

    def test_n_equals_with_thousands_separator(self):
        m = _only("A total of n = 1,204 were screened.", SAMPLE_SIZE)
        assert m.value == 1204

    def test_count_of_participants(self):
        m = _only("We enrolled 240 adult patients.", SAMPLE_SIZE)
        assert m.value == 240

    @pytest.mark.parametrize("sentence", [
        "After 12 months participants reported better sleep.",
        "Within 3 weeks patients had recovered.",
        "For 2 years women were followed in clinic.",
    ])
    def test_durations_are_not_sample_sizes(self, sentence):
        assert [m for m in parse_statistics(sentence) if m.stat_type == SAMPLE_SIZE] == []

    def test_results_are_ordered_by_position(self):
        matches = parse_statistics("In 88 patients the odds were higher (OR 1.5, 95% CI 1.1-2.0; p = 0.01).")
        starts = [m.start for m in matches]
        assert starts == sorted(starts)
        assert [m.stat_type for m in matches] == [SAMPLE_SIZE, EFFECT_SIZE, CONFIDENCE_INTERVAL, P_VALUE]
