"""System prompt and per-file prompt builder for the GitGuard reviewer."""

import logging
from typing import List, Optional

from common.diff_parser import FileChange
from common.firebase_models import RepoSettings
from common.job_models import PRData
from common.token_budget import chunk_content, estimate_tokens, prioritize_files, validate_prompt_tokens
from reviewagent.models.agent_schemas import PromptUnit

logger = logging.getLogger(__name__)

REVIEW_SYSTEM_PROMPT = """\
You are GitGuard, an expert security researcher and code reviewer. Analyze the \
code changes you are given and report only issues you can verify from them.

The code shown is the added and surrounding context lines of a pull request \
diff. Deleted code is not shown and must not be reviewed.

Return a single JSON object with EXACTLY this structure:
{
  "summary": "High-level summary of the changes and their overall health",
  "risk_score": <number between 0 and 100>,
  "issues": [
    {
      "file": "path/of/the/file",
      "line": <line number in the new file, or null>,
      "category": "bug|security|performance|quality|best-practice",
      "severity": "low|medium|high|critical",
      "title": "Short title",
      "description": "Detailed explanation of the problem and its impact",
      "suggestion": "How to fix it"
    }
  ]
}

Output rules:
1. Return ONLY valid JSON. No markdown, no code fences, no preamble, no postscript.
2. Use an empty "issues" list when nothing is wrong.
3. One issue per problem per line. Never group separate occurrences.
4. Use "security" only for exploitable weaknesses (injection, leaked credentials, \
broken access control, unsafe deserialization, weak cryptography).
"""

_STRICT_MODE_RULES = (
    "Strict mode is enabled for this repository: also report maintainability "
    "problems, missing error handling and missing input validation."
)
_IGNORE_STYLING_RULES = "Do not report formatting, naming or other purely stylistic issues."
_IGNORE_LINTER_RULES = "Do not report issues a standard linter would catch (unused imports, line length)."


def _review_rules(settings: Optional[RepoSettings]) -> List[str]:
    if settings is None:
        return []
    rules = []
    if settings.strict_mode:
        rules.append(_STRICT_MODE_RULES)
    if settings.ignore_styling:
        rules.append(_IGNORE_STYLING_RULES)
    if settings.ignore_linter:
        rules.append(_IGNORE_LINTER_RULES)
    return rules


def _render_header(
    pr: PRData,
    file: FileChange,
    rules: List[str],
    chunk_index: Optional[int],
    total_chunks: int,
) -> str:
    lines = [
        f"## PR #{pr.pull_request_number} in {pr.repository}: {pr.title}",
        "",
        f"### File: `{file.filename}` ({file.language})",
    ]
    if file.status:
        lines.append(f"*Status: {file.status}, +{file.additions or 0} / -{file.deletions or 0}*")
    if chunk_index is not None:
        lines.append(f"*Part {chunk_index + 1} of {total_chunks} of this file's changes.*")
    if file.warnings:
        lines.append("")
        lines.append("**Pre-scan warnings** (verify and report if real):")
        lines.extend(f"- {warning}" for warning in file.warnings)
    if rules:
        lines.append("")
        lines.append("**Review rules:**")
        lines.extend(f"- {rule}" for rule in rules)
    lines.append("")
    return "\n".join(lines)


def _render_body(language: str, content: str) -> str:
    fence_lang = "" if language == "unknown" else language
    return f"```{fence_lang}\n{content}\n```\n"


def build_prompt_units(
    pr: PRData,
    files: List[FileChange],
    settings: Optional[RepoSettings],
    max_tokens: int,
) -> List[PromptUnit]:
    """
    Turn cleaned file changes into bounded review requests.

    Files are ordered highest-risk first. A file whose content does not fit in
    the budget left after its header is split into ordered chunks.
    """
    rules = _review_rules(settings)
    units: List[PromptUnit] = []

    for file in prioritize_files(files):
        # Budget for the longest possible "Part n of m" label.
        header_tokens = estimate_tokens(_render_header(pr, file, rules, 998, 999))
        body_overhead = estimate_tokens(_render_body(file.language, ""))
        content_budget = max(max_tokens - header_tokens - body_overhead, 1)

        chunks = chunk_content(file.changes, content_budget)
        total = len(chunks)
        for index, chunk in enumerate(chunks):
            chunk_index = index if total > 1 else None
            prompt = _render_header(pr, file, rules, chunk_index, total) + _render_body(file.language, chunk)
            check = validate_prompt_tokens(prompt, max_tokens)
            if not check["is_valid"]:
                logger.warning(
                    "Prompt for %s is over budget: %d > %d tokens",
                    file.filename, check["estimated_tokens"], max_tokens,
                )
            units.append(
                PromptUnit(
                    filename=file.filename,
                    prompt=prompt,
                    chunk_index=chunk_index,
                    total_chunks=total,
                    estimated_tokens=check["estimated_tokens"],
                )
            )

    logger.info("Built %d prompt units for %d files", len(units), len(files))
    return units
