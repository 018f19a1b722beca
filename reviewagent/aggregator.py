"""Merge per-unit review results into a single review."""

import logging
from typing import Optional, Sequence

from reviewagent.models.agent_schemas import (
    AggregatedReview,
    ReviewFinding,
    TokenUsage,
    UnitResult,
)
from reviewagent.scoring import calculate_risk_score

logger = logging.getLogger(__name__)


def _unit_label(result: UnitResult) -> str:
    if result.chunk_index is None:
        return result.filename
    return f"{result.filename}#chunk{result.chunk_index}"


def _stitch_order(results: Sequence[UnitResult]) -> list[UnitResult]:
    """Keep the input order of files, but put chunks of one file in ascending order."""
    first_seen: dict[str, int] = {}
    for position, result in enumerate(results):
        first_seen.setdefault(result.filename, position)
    return sorted(
        results,
        key=lambda r: (first_seen[r.filename], r.chunk_index if r.chunk_index is not None else -1),
    )


def _dedup_findings(findings: list[ReviewFinding]) -> list[ReviewFinding]:
    """Drop repeats of the same (file, line, description), keeping the first."""
    seen: set[tuple] = set()
    deduped: list[ReviewFinding] = []
    for finding in findings:
        if finding.identity in seen:
            continue
        seen.add(finding.identity)
        deduped.append(finding)
    return deduped


def aggregate_results(results: Sequence[UnitResult]) -> Optional[AggregatedReview]:
    """
    Build one review from the ordered per-unit results.

    Returns ``None`` when no unit succeeded: that is "no review produced",
    which callers must not confuse with a clean review.
    """
    ordered = _stitch_order(results)
    succeeded = [r for r in ordered if not r.failed]
    failed = [r for r in ordered if r.failed]

    if not succeeded:
        logger.warning("No review produced: all %d review units failed", len(results))
        return None

    summaries = [r.summary.strip() for r in succeeded if r.summary and r.summary.strip()]
    findings = _dedup_findings([f for r in succeeded for f in r.findings])

    usage = TokenUsage()
    for result in succeeded:
        usage = usage + result.usage

    review = AggregatedReview(
        summary="\n\n".join(summaries),
        findings=findings,
        risk_score=calculate_risk_score(findings),
        usage=usage,
        coverage="partial" if failed else "full",
        failed_units=[_unit_label(r) for r in failed],
    )
    logger.info(
        "Aggregated %d/%d units: %d findings, risk %d, coverage %s",
        len(succeeded), len(results), len(findings), review.risk_score, review.coverage,
    )
    return review
