"""
Tests for analysis/comparative.py — cross-document comparison.
"""

import asyncio

import pytest

from clinical_digest.analysis.comparative import compare_documents
from clinical_digest.models import BiasType, VerdictStatus
from clinical_digest.pipeline import DocumentPipeline

from conftest import rct_dict, small_study_dict


def _process(config, documents):
    return asyncio.run(DocumentPipeline(config).process_batch(documents))


class TestCompareDocuments:

    def test_opposite_trials_contradict(self, config, rct_study, opposite_rct_study):
        results = _process(config, [rct_study, opposite_rct_study])
        summary = compare_documents(results, config)

        assert summary.contradictions
        top = summary.contradictions[0]
        assert (top.document_a, top.document_b) == ("rct-1", "rct-2")
        assert top.directions == ("decrease", "increase")
        assert top.similarity >= config.similarity_floor
        similarities = [c.similarity for c in summary.contradictions]
        assert similarities == sorted(similarities, reverse=True)

    def test_same_direction_trials_agree(self, config, rct_study):
        other = rct_study.model_copy(update={"id": "rct-copy"})
        summary = compare_documents(_process(config, [rct_study, other]), config)
        assert summary.contradictions == ()

    def test_failed_documents_listed(self, config, rct_study):
        results = _process(config, [rct_study, None])
        summary = compare_documents(results, config)
        assert [d.document_id for d in summary.documents] == ["rct-1"]
        assert summary.failed == ("",)
        assert summary.rejected == ()

    def test_privacy_rejected_documents_listed_apart(self, config, rct_study):
        withheld = rct_dict("rct-withheld")
        withheld["privacy_rejected"] = True
        summary = compare_documents(_process(config, [rct_study, withheld, None]), config)
        assert summary.rejected == ("rct-withheld",)
        assert summary.failed == ("",)
        assert summary.to_dict()["rejected"] == ["rct-withheld"]

    def test_quality_statistics(self, config, rct_study):
        results = _process(config, [rct_study, small_study_dict()])
        summary = compare_documents(results, config)
        qualities = [r.quality.overall for r in results]

        assert summary.mean_quality == pytest.approx(sum(qualities) / 2, abs=1e-4)
        assert summary.quality_spread == pytest.approx(abs(qualities[0] - qualities[1]) / 2, abs=1e-4)

    def test_snapshot_counts_follow_current_verdicts(self, config):
        results = _process(config, [small_study_dict()])
        before = compare_documents(results, config).documents[0]

        target = results[0].by_status(VerdictStatus.FLAGGED_FOR_REVIEW)[0].fact.fact_id
        results[0].ledger.review(target, accept=True, reviewer="jdoe")
        after = compare_documents(results, config).documents[0]

        assert after.accepted == before.accepted + 1
        assert after.flagged == before.flagged - 1

    def test_shared_bias_types(self, config):
        results = _process(config, [small_study_dict("a"), small_study_dict("b")])
        summary = compare_documents(results, config)
        assert BiasType.NO_CONTROL_GROUP in summary.shared_bias_types

    def test_empty(self, config):
        summary = compare_documents([], config)
        assert summary.mean_quality is None
        assert summary.to_dict()["documents"] == []
