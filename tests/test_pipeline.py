"""
End-to-end tests for pipeline.py — stage ordering, isolation and the CLI.
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from clinical_digest.analysis.knowledge_base import StaticKnowledgeBase
from clinical_digest.errors import DocumentError
from clinical_digest.models import (
    BiasType,
    ExtractionMethod,
    Finding,
    Limitation,
    ReasonCode,
    SectionName,
    Severity,
    StatisticalResult,
    VerdictStatus,
    VerificationState,
)
from clinical_digest.pipeline import (
    COMPLETED,
    FAILED,
    REJECTED,
    DocumentPipeline,
    load_document,
    main,
)

from conftest import rct_dict, small_study_dict

CONFLICTING_ENTRY = {
    "entry_id": "kb-1",
    "claim": "Drug X increases systolic blood pressure",
    "direction": "increase",
    "source": "Example meta-analysis 2020",
}


class _SlowSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def lookup(self, claim):
        await asyncio.sleep(1)
        return []


class _SlowKnowledgeBase:
    def session(self):
        return _SlowSession()


class _ResetSession(_SlowSession):
    async def lookup(self, claim):
        raise ConnectionError("kb socket reset")


class _ResetKnowledgeBase:
    def session(self):
        return _ResetSession()


class _UnopenableKnowledgeBase:
    def session(self):
        raise OSError("disk I/O error")


class _CountingKnowledgeBase(StaticKnowledgeBase):
    def __init__(self, entries=()):
        super().__init__(entries)
        self.sessions = 0

    def session(self):
        self.sessions += 1
        return super().session()


def _run(pipeline, raw):
    return asyncio.run(pipeline.process(raw))


def _results_finding(result):
    return next(o for o in result.outcomes
                if isinstance(o.fact, Finding) and o.fact.span.section == SectionName.RESULTS)


def _p_values(result):
    return [o for o in result.outcomes
            if isinstance(o.fact, StatisticalResult) and o.fact.stat_type == "p_value"]


def _inferred(result):
    return [o.fact for o in result.outcomes
            if isinstance(o.fact, Limitation) and o.fact.method == ExtractionMethod.INFERRED_RULE]


class TestScenarioStudy:
    """Sample of 12, no control group, p = 0.04."""

    @pytest.fixture
    def result(self, config, fixed_clock):
        return _run(DocumentPipeline(config, clock=fixed_clock), small_study_dict())

    def test_completed(self, result):
        assert result.status == COMPLETED
        assert result.absent_sections == ()
        assert result.error == ""

    def test_small_sample_indicator(self, result):
        by_type = {i.bias_type: i for i in result.bias_indicators}
        assert by_type[BiasType.SMALL_SAMPLE].severity == Severity.HIGH
        assert by_type[BiasType.NO_CONTROL_GROUP].severity == Severity.HIGH

    def test_sample_adequacy_at_floor(self, result, config):
        assert result.quality.sample_adequacy == config.quality_floor

    def test_p_value_parsed(self, result):
        p_values = _p_values(result)
        assert p_values
        for o in p_values:
            assert o.fact.value == pytest.approx(0.04)
            assert o.fact.significance is True

    def test_both_high_biases_acknowledged_by_one_sentence(self, result):
        by_type = {i.bias_type: i for i in result.bias_indicators}
        assert by_type[BiasType.SMALL_SAMPLE].explicitly_stated
        assert by_type[BiasType.NO_CONTROL_GROUP].explicitly_stated
        for o in _p_values(result):
            assert ReasonCode.UNACKNOWLEDGED_HIGH_BIAS not in o.verdict.reasons

    def test_unsupported_finding_flagged(self, result):
        unsupported = [o for o in result.outcomes
                       if isinstance(o.fact, Finding) and o.fact.supported_by is None]
        assert unsupported
        for o in unsupported:
            assert o.assessment.requires_review
            assert o.verdict.status == VerdictStatus.FLAGGED_FOR_REVIEW

    def test_no_limitation_inferred_when_all_are_stated(self, result):
        assert _inferred(result) == []

    def test_every_outcome_has_provenance(self, result, metadata):
        for o in result.outcomes:
            assert o.provenance.fact_id == o.fact.fact_id
            assert o.provenance.document_id == "small-1"
            assert o.provenance.original_source.title == metadata["title"]

    def test_no_knowledge_base_means_unavailable(self, result):
        states = {o.conflict.state for o in result.outcomes if isinstance(o.fact, Finding)}
        assert states == {VerificationState.UNAVAILABLE}
        assert result.issues["knowledge_base_unavailable"] == len(
            [o for o in result.outcomes if isinstance(o.fact, Finding)]
        )

    def test_human_review(self, result):
        flagged = result.by_status(VerdictStatus.FLAGGED_FOR_REVIEW)
        target = flagged[0].fact.fact_id
        result.ledger.review(target, accept=True, reviewer="jdoe")
        assert target in [o.fact.fact_id for o in result.by_status(VerdictStatus.ACCEPTED)]
        assert target not in [o.fact.fact_id for o in result.by_status(VerdictStatus.FLAGGED_FOR_REVIEW)]


class TestPartlyAcknowledgedStudy:
    """Only the small sample is admitted; the missing control group is not."""

    @pytest.fixture
    def result(self, config):
        raw = small_study_dict("small-3", stated="The small sample limits the conclusions.")
        return _run(DocumentPipeline(config), raw)

    def test_inferred_limitation_present(self, result):
        assert [l.bias_type for l in _inferred(result)] == [BiasType.NO_CONTROL_GROUP]

    def test_p_value_flagged_for_unacknowledged_bias(self, result):
        p_values = _p_values(result)
        assert p_values
        for o in p_values:
            assert o.verdict.status == VerdictStatus.FLAGGED_FOR_REVIEW
            assert ReasonCode.UNACKNOWLEDGED_HIGH_BIAS in o.verdict.reasons


class TestKnowledgeBase:

    def test_rct_finding_accepted_without_kb(self, config, rct_study):
        result = _run(DocumentPipeline(config), rct_study)
        assert result.bias_indicators == []
        assert _results_finding(result).verdict.status == VerdictStatus.ACCEPTED

    def test_conflict_flags_finding(self, config, rct_study):
        pipeline = DocumentPipeline(config, knowledge_source=StaticKnowledgeBase([CONFLICTING_ENTRY]))
        outcome = _results_finding(_run(pipeline, rct_study))
        assert outcome.conflict.state == VerificationState.CONFLICT
        assert outcome.conflict.conflicts[0].entry.entry_id == "kb-1"
        assert outcome.verdict.status == VerdictStatus.FLAGGED_FOR_REVIEW
        assert ReasonCode.KNOWLEDGE_CONFLICT in outcome.verdict.reasons

    def test_timeout_is_never_a_rejection(self, config, rct_study):
        cfg = config.with_overrides(kb_timeout=0.01)
        result = _run(DocumentPipeline(cfg, knowledge_source=_SlowKnowledgeBase()), rct_study)
        outcome = _results_finding(result)
        assert outcome.conflict.state == VerificationState.UNAVAILABLE
        assert outcome.verdict.status == VerdictStatus.ACCEPTED
        assert result.rejected == []

    def test_lookup_error_degrades_only_the_fact(self, config, rct_study):
        result = _run(DocumentPipeline(config, knowledge_source=_ResetKnowledgeBase()), rct_study)
        assert result.status == COMPLETED
        outcome = _results_finding(result)
        assert outcome.conflict.state == VerificationState.UNAVAILABLE
        assert "ConnectionError" in outcome.conflict.detail
        assert outcome.verdict.status == VerdictStatus.ACCEPTED

    def test_session_that_cannot_open_degrades(self, config, rct_study):
        result = _run(DocumentPipeline(config, knowledge_source=_UnopenableKnowledgeBase()), rct_study)
        assert result.status == COMPLETED
        assert _results_finding(result).conflict.state == VerificationState.UNAVAILABLE

    def test_privacy_rejected_document(self, config):
        source = _CountingKnowledgeBase([CONFLICTING_ENTRY])
        raw = rct_dict()
        raw["privacy_rejected"] = True
        result = _run(DocumentPipeline(config, knowledge_source=source), raw)

        assert result.status == REJECTED
        assert result.outcomes == []
        assert result.rejected
        assert all(ReasonCode.DOCUMENT_REJECTED in r.reasons for r in result.rejected)
        assert source.sessions == 0


class TestDocumentErrors:

    def test_missing_document(self, config):
        result = _run(DocumentPipeline(config), None)
        assert result.status == FAILED
        assert result.error == "missing document"

    def test_corrupt_document(self, config):
        result = _run(DocumentPipeline(config), {"id": "bad-1", "metadata": "not a mapping"})
        assert result.status == FAILED
        assert result.document_id == "bad-1"
        assert result.error.startswith("corrupt document")

    def test_load_document_rejects_other_types(self):
        with pytest.raises(DocumentError):
            load_document(["not", "a", "document"])

    def test_missing_sections_degrade(self, config):
        raw = small_study_dict("partial-1")
        del raw["sections"]["methodology"]
        del raw["sections"]["discussion"]
        result = _run(DocumentPipeline(config), raw)
        assert result.status == COMPLETED
        assert result.absent_sections == (SectionName.METHODOLOGY, SectionName.DISCUSSION)
        assert result.issues["section_missing"] == 2


class TestBatch:

    def test_batch_isolation_and_order(self, config):
        pipeline = DocumentPipeline(config)
        results = asyncio.run(pipeline.process_batch([small_study_dict(), None, rct_dict()]))

        assert [r.status for r in results] == [COMPLETED, FAILED, COMPLETED]
        small, _, rct = results
        assert small.document_id == "small-1" and rct.document_id == "rct-1"
        assert not set(small.fact_ids()) & set(rct.fact_ids())
        assert small.ledger is not rct.ledger
        for r in (small, rct):
            assert all(o.provenance.document_id == r.document_id for o in r.outcomes)

    def test_extraction_failure_fails_only_that_document(self, config):
        pipeline = DocumentPipeline(config)
        original = pipeline.extractor.iter_facts

        def flaky(document):
            if document.id == "small-2":
                raise RuntimeError("extractor crashed")
            return original(document)

        with patch.object(pipeline.extractor, "iter_facts", side_effect=flaky):
            results = asyncio.run(pipeline.process_batch([small_study_dict("small-2"), rct_dict()]))

        assert results[0].status == FAILED
        assert results[0].error == "RuntimeError: extractor crashed"
        assert results[1].status == COMPLETED
        assert results[1].outcomes

    def test_idempotent(self, config, fixed_clock):
        pipeline = DocumentPipeline(config, clock=fixed_clock)
        first = _run(pipeline, small_study_dict())
        second = _run(pipeline, small_study_dict())
        assert first.to_dict() == second.to_dict()

    def test_results_are_json_serializable(self, config, fixed_clock):
        result = _run(DocumentPipeline(config, clock=fixed_clock), rct_dict())
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["status"] == COMPLETED
        assert payload["outcomes"][0]["provenance"]["timestamp"] == "2024-01-15T12:00:00+00:00"


class TestCommandLine:

    def test_main_writes_results(self, tmp_path):
        src = tmp_path / "docs.json"
        src.write_text(json.dumps([small_study_dict(), rct_dict()]), encoding="utf-8")
        out = tmp_path / "out.json"

        assert main([str(src), "--output", str(out), "--style", "Vancouver"]) == 0

        payload = json.loads(out.read_text(encoding="utf-8"))
        assert [d["document_id"] for d in payload["documents"]] == ["small-1", "rct-1"]
        assert payload["comparison"]["failed"] == []
        citation = payload["documents"][0]["outcomes"][0]["provenance"]["citation"]
        assert citation["style"] == "Vancouver"

    def test_main_rejects_bad_configuration(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CD_CITATION_STYLE", "Harvard")
        src = tmp_path / "docs.json"
        src.write_text(json.dumps([rct_dict()]), encoding="utf-8")
        out = tmp_path / "out.json"
        assert main([str(src), "--output", str(out)]) == 2
        assert not out.exists()

    def test_main_reports_failure(self, tmp_path):
        src = tmp_path / "docs.json"
        src.write_text(json.dumps([small_study_dict(), None]), encoding="utf-8")
        assert main([str(src), "--output", str(tmp_path / "out.json")]) == 1
