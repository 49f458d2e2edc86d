"""
Tests for analysis/provenance.py — provenance binding and quotation limits.
"""

from clinical_digest.analysis.provenance import bind, bind_all, longest_verbatim_run, truncate_words
from clinical_digest.models import (
    Document,
    ExtractionMethod,
    Finding,
    ProvenanceRecord,
    ReasonCode,
    Rejection,
    SectionName,
    SourceSpan,
)

from conftest import FIXED_TIME

WORDS = [f"word{i}" for i in range(40)]
RESULTS_TEXT = " ".join(WORDS) + "."


def _document(metadata, **sections):
    return Document.model_validate({
        "id": "doc-1",
        "metadata": metadata,
        "sections": sections or {"results": RESULTS_TEXT},
    })


def _fact(content, start=0, end=None, section=SectionName.RESULTS):
    return Finding(
        fact_id="find-1",
        content=content,
        span=SourceSpan(section, start, len(RESULTS_TEXT) if end is None else end),
        method=ExtractionMethod.OUTCOME_PATTERN,
    )


class TestQuotationLimit:

    def test_run_at_limit_is_accepted(self, config, metadata):
        fact = _fact(" ".join(WORDS[:30]))
        record = bind(fact, _document(metadata), config, FIXED_TIME)
        assert isinstance(record, ProvenanceRecord)

    def test_run_over_limit_is_rejected_with_excerpt(self, config, metadata):
        fact = _fact(" ".join(WORDS[:31]))
        rejection = bind(fact, _document(metadata), config, FIXED_TIME)
        assert isinstance(rejection, Rejection)
        assert rejection.reason == ReasonCode.UNCITABLE
        assert "31 consecutive words" in rejection.detail
        assert rejection.truncated_excerpt == " ".join(WORDS[:30]) + "…"

    def test_limit_is_configurable(self, config, metadata):
        fact = _fact(" ".join(WORDS[:12]))
        cfg = config.with_overrides(max_quote_words=10)
        assert isinstance(bind(fact, _document(metadata), cfg, FIXED_TIME), Rejection)

    def test_longest_verbatim_run(self):
        assert longest_verbatim_run("alpha beta gamma delta", "x alpha beta gamma y delta") == 3
        assert longest_verbatim_run("", "anything") == 0
        assert longest_verbatim_run("Pain Decreased", "pain decreased markedly") == 2

    def test_truncate_words(self):
        assert truncate_words("one two three", 5) == "one two three"
        assert truncate_words("one two three", 2) == "one two…"


class TestBinding:

    def test_record_fields(self, config, metadata):
        fact = _fact("word0 word1 increased", start=0, end=11)
        record = bind(fact, _document(metadata), config, FIXED_TIME)

        assert record.fact_id == "find-1"
        assert record.document_id == "doc-1"
        assert record.extracted_content == "word0 word1"
        assert record.extraction_method == ExtractionMethod.OUTCOME_PATTERN
        assert record.timestamp == FIXED_TIME
        assert record.original_source.title == metadata["title"]
        assert record.citation.style == "AMA"
        assert record.citation.complete
        assert record.version == 1 and record.supersedes is None

    def test_corrected_record_is_a_new_version(self, config, metadata):
        record = bind(_fact("word0", end=5), _document(metadata), config, FIXED_TIME)
        fixed = record.corrected(extracted_content="word0 word1")
        assert fixed.version == 2
        assert fixed.supersedes == 1
        assert record.extracted_content == "word0"

    def test_absent_section_is_uncitable(self, config, metadata):
        fact = _fact("word0", section=SectionName.DISCUSSION)
        rejection = bind(fact, _document(metadata), config, FIXED_TIME)
        assert isinstance(rejection, Rejection)
        assert "absent" in rejection.detail

    def test_span_outside_section_is_uncitable(self, config, metadata):
        fact = _fact("word0", start=5, end=len(RESULTS_TEXT) + 10)
        rejection = bind(fact, _document(metadata), config, FIXED_TIME)
        assert isinstance(rejection, Rejection)
        assert rejection.truncated_excerpt is None

    def test_missing_title_is_uncitable(self, config, metadata):
        metadata["title"] = "  "
        rejection = bind(_fact("word0", end=5), _document(metadata), config, FIXED_TIME)
        assert isinstance(rejection, Rejection)
        assert rejection.detail == "document metadata has no title"

    def test_incomplete_metadata_still_cites(self, config, metadata):
        del metadata["journal"]
        record = bind(_fact("word0", end=5), _document(metadata), config, FIXED_TIME)
        assert isinstance(record, ProvenanceRecord)
        assert record.citation.complete is False
        assert record.citation.missing_fields == ("journal",)

    def test_citation_style_follows_config(self, config, metadata):
        cfg = config.with_overrides(citation_style="APA")
        record = bind(_fact("word0", end=5), _document(metadata), cfg, FIXED_TIME)
        assert record.citation.style == "APA"

    def test_bind_all_preserves_order(self, config, metadata):
        facts = [_fact("word0", end=5), _fact("word0", section=SectionName.ABSTRACT)]
        out = bind_all(facts, _document(metadata), config, FIXED_TIME)
        assert [type(o) for o in out] == [ProvenanceRecord, Rejection]
