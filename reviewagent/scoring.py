"""Deterministic risk scoring.

The score attached to a review is always computed here from its findings.
Whatever number the model returns is ignored.
"""

from typing import Iterable

from reviewagent.models.agent_schemas import ReviewFinding

SEVERITY_WEIGHTS = {
    "critical": 40,
    "high": 20,
    "medium": 10,
    "low": 5,
}
DEFAULT_WEIGHT = 5
MAX_RISK_SCORE = 100


def calculate_risk_score(findings: Iterable[ReviewFinding]) -> int:
    """Sum of severity weights, capped at 100. Order of findings does not matter."""
    total = sum(
        SEVERITY_WEIGHTS.get(str(finding.severity).lower(), DEFAULT_WEIGHT)
        for finding in findings
    )
    return min(total, MAX_RISK_SCORE)
