"""Tests for merging per-unit results into one review."""

from reviewagent.aggregator import aggregate_results
from reviewagent.models.agent_schemas import TokenUsage, UnitResult
from tests.conftest import make_finding


def ok(filename, chunk_index=None, summary="", findings=(), tokens=10):
    return UnitResult(
        filename=filename,
        chunk_index=chunk_index,
        summary=summary,
        findings=list(findings),
        usage=TokenUsage(prompt_tokens=tokens, completion_tokens=0, total_tokens=tokens),
    )


def failed(filename, chunk_index=None):
    return UnitResult(filename=filename, chunk_index=chunk_index, failed=True, error="ModelContractError: bad")


def test_partial_when_one_chunk_fails():
    finding = make_finding()
    review = aggregate_results([ok("src/app.py", 0, "first half", [finding]), failed("src/app.py", 1)])

    assert review is not None
    assert review.findings == [finding]
    assert review.coverage == "partial"
    assert review.is_partial
    assert review.failed_units == ["src/app.py#chunk1"]


def test_no_review_when_every_unit_fails():
    assert aggregate_results([failed("a.py"), failed("b.py")]) is None
    assert aggregate_results([]) is None


def test_clean_review_is_not_no_review():
    review = aggregate_results([ok("a.py", summary="nothing to report")])
    assert review is not None
    assert review.findings == []
    assert review.risk_score == 0
    assert review.coverage == "full"


def test_duplicates_across_chunks_collapse_to_first():
    first = make_finding(title="first")
    repeat = make_finding(title="second wording, same identity")
    review = aggregate_results([ok("src/app.py", 0, findings=[first]), ok("src/app.py", 1, findings=[repeat])])

    assert review.findings == [first]
    assert review.risk_score == 20


def test_same_description_on_other_line_is_kept():
    review = aggregate_results([ok("a.py", findings=[make_finding(line=1), make_finding(line=2)])])
    assert len(review.findings) == 2


def test_summaries_joined_in_chunk_order_and_empty_skipped():
    review = aggregate_results([
        ok("a.py", 1, "second"),
        ok("b.py", None, "   "),
        ok("a.py", 0, "first"),
    ])
    assert review.summary == "first\n\nsecond"


def test_usage_summed_over_successful_units_only():
    review = aggregate_results([ok("a.py", tokens=100), failed("b.py"), ok("c.py", tokens=50)])
    assert review.usage.total_tokens == 150


def test_risk_score_recomputed_from_findings():
    findings = [make_finding(line=i, severity="critical") for i in range(4)]
    review = aggregate_results([ok("a.py", findings=findings)])
    assert review.risk_score == 100
