from collections import defaultdict
from typing import Any, Iterable, Optional

from common.diff_parser import added_line_numbers
from reviewagent.config import config
from reviewagent.models.agent_schemas import AggregatedReview, PolicyDecision, ReviewFinding

# ── Helpers ───────────────────────────────────────────────────────────────────

_SEV_LABEL = {
    "critical": "🔴 Critical",
    "high":     "🟠 High",
    "medium":   "🟡 Medium",
    "low":      "🟢 Low",
}
_SEV_ORDER = ["critical", "high", "medium", "low"]

# GitHub rejects review bodies over 65 536 characters.
_MAX_BODY_CHARS = 60_000


def _risk_label(score: int) -> str:
    if score >= 70:
        return "🔴 High"
    if score >= 30:
        return "🟡 Medium"
    return "🟢 Low"


def _location(finding: ReviewFinding) -> str:
    if finding.line is not None:
        return f"`{finding.file}:{finding.line}`"
    return f"`{finding.file}`"


def _render_finding(finding: ReviewFinding) -> list[str]:
    lines = [f"- **{finding.title or finding.category}** {_location(finding)} _({finding.category})_"]
    lines.append(f"  {finding.description}")
    if finding.suggestion:
        lines.append(f"  > **Suggestion**: {finding.suggestion}")
    return lines


def render_inline_comment(finding: ReviewFinding) -> str:
    """Body of a line-anchored review comment."""
    sev = _SEV_LABEL.get(finding.severity, finding.severity.capitalize())
    parts = [f"_⚠️ {sev} · {finding.category}_", "", f"**{finding.title}**", "", finding.description]
    if finding.suggestion:
        parts.extend(["", f"> **Suggestion**: {finding.suggestion}"])
    return "\n".join(parts)


def split_inline_findings(
    findings: Iterable[ReviewFinding],
    files_metadata: Optional[list[dict[str, Any]]],
) -> tuple[list[dict[str, Any]], list[ReviewFinding]]:
    """
    Turn findings anchored to an added line into inline review comments.

    GitHub only accepts comments on lines that are part of the diff, so a
    finding whose line is not an added line of its file's patch stays in the
    review body. Returns ``(comments, body_findings)``.
    """
    added_by_file: dict[str, set[int]] = {}
    for meta in files_metadata or []:
        if meta.get("filename") and meta.get("patch"):
            added_by_file[meta["filename"]] = added_line_numbers(meta["patch"])

    comments: list[dict[str, Any]] = []
    body_findings: list[ReviewFinding] = []
    for finding in findings:
        if finding.line is not None and finding.line in added_by_file.get(finding.file, set()):
            comments.append({
                "path": finding.file,
                "line": finding.line,
                "side": "RIGHT",
                "body": render_inline_comment(finding),
            })
        else:
            body_findings.append(finding)
    return comments, body_findings


# ── Public API ────────────────────────────────────────────────────────────────

def format_review_body(
    review: AggregatedReview,
    decision: PolicyDecision,
    pr_number: int,
    body_findings: Optional[list[ReviewFinding]] = None,
) -> str:
    """Format an aggregated review into the GitHub review body.

    ``body_findings`` are the findings that could not be posted inline; all
    findings are listed when it is omitted.
    """
    listed = review.findings if body_findings is None else body_findings
    inline_count = len(review.findings) - len(listed)
    parts: list[str] = []

    # ── Header ────────────────────────────────────────────────────────────────
    parts.append("## 🛡️ GitGuard AI Code Review")
    parts.append("")
    parts.append(f"**PR**: #{pr_number} | **Model**: {config.review_model}")
    parts.append("")
    parts.append(
        f"**Risk score**: {review.risk_score}/100 ({_risk_label(review.risk_score)})"
        f" | **Status**: {'⛔ Blocked' if decision.is_blocked else '💬 Commented'}"
    )
    parts.append("")

    if decision.is_blocked:
        parts.append(f"> [!CAUTION]\n> **Merge blocked by policy**: {decision.reason}")
        parts.append("")

    if review.is_partial:
        parts.append(
            f"> [!WARNING]\n> **Partial review**: {len(review.failed_units)} part(s) could not be"
            f" reviewed: {', '.join(f'`{u}`' for u in review.failed_units)}"
        )
        parts.append("")

    parts.append("---")
    parts.append("")

    # ── Summary ───────────────────────────────────────────────────────────────
    if review.summary:
        parts.append("<details open>")
        parts.append("<summary>📋 Summary</summary>")
        parts.append("")
        parts.append(review.summary)
        parts.append("")
        parts.append("</details>")
        parts.append("")

    # ── Findings grouped by severity ─────────────────────────────────────────
    if not review.findings:
        parts.append("✅ **No issues found. The code looks good!**")
        parts.append("")
    else:
        by_severity: dict[str, list[ReviewFinding]] = defaultdict(list)
        for finding in listed:
            by_severity[finding.severity].append(finding)

        for severity in _SEV_ORDER:
            group = by_severity.get(severity)
            if not group:
                continue
            open_attr = " open" if severity in ("critical", "high") else ""
            parts.append(f"<details{open_attr}>")
            parts.append(f"<summary>{_SEV_LABEL[severity]} ({len(group)})</summary>")
            parts.append("")
            for finding in sorted(group, key=lambda f: (f.file, f.line or 0)):
                parts.extend(_render_finding(finding))
            parts.append("")
            parts.append("</details>")
            parts.append("")

        if inline_count:
            parts.append(f"_{inline_count} finding(s) posted as inline comments._")
            parts.append("")

    # ── Stats ─────────────────────────────────────────────────────────────────
    parts.append("---")
    parts.append("")
    parts.append(
        f"**Issues**: {len(review.findings)} | **Coverage**: {review.coverage}"
        f" | **Tokens**: {review.usage.total_tokens}"
    )
    parts.append("")
    parts.append(f"*🤖 Generated by GitGuard | Powered by {config.review_model}*")

    body = "\n".join(parts)
    if len(body) > _MAX_BODY_CHARS:
        body = body[:_MAX_BODY_CHARS] + "\n\n*... (truncated, review exceeds GitHub's size limit)*"
    return body
