"""Token budgeting and file prioritization for review prompts.

Token counts are estimated from character counts; no tokenizer is loaded.
"""

import logging
import math
from typing import List

from common.diff_parser import FileChange

logger = logging.getLogger(__name__)

# Conservative: 1 token ~ 4 characters
TOKENS_PER_CHAR = 0.25

_SENSITIVE_NAME_PARTS = ("env", "config", "secret", "credential", "auth", "password")
_CORE_DIRS = ("src", "lib", "app", "core")
_SECURITY_KEYWORDS = ("password", "secret", "token", "api_key", "auth", "credential")


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def _is_under_core_dir(filename: str) -> bool:
    segments = filename.split("/")[:-1]
    return any(segment in _CORE_DIRS for segment in segments)


def calculate_file_risk(file: FileChange) -> int:
    """
    Heuristic 0-100 score used only to order files for review.

    This is not the review risk score; that one is computed from findings.
    """
    risk = 0
    filename = file.filename.lower()
    changes = file.changes or ""

    if any(part in filename for part in _SENSITIVE_NAME_PARTS):
        risk += 50

    if _is_under_core_dir(filename):
        risk += 20

    change_size = len(changes)
    if change_size > 10000:
        risk += 20
    elif change_size > 5000:
        risk += 10
    elif change_size > 1000:
        risk += 5

    lowered = changes.lower()
    if any(keyword in lowered for keyword in _SECURITY_KEYWORDS):
        risk += 15

    return min(risk, 100)


def prioritize_files(files: List[FileChange]) -> List[FileChange]:
    """Order files highest-risk first. Ties keep their original order."""
    return sorted(files, key=calculate_file_risk, reverse=True)


def chunk_content(content: str, max_tokens: int) -> List[str]:
    """
    Split content into sequential chunks that each fit within ``max_tokens``.

    Lines are never reordered. A single line that is larger than the budget
    on its own is cut by character count.
    """
    if not content or not content.strip():
        return []
    if max_tokens <= 0:
        raise ValueError(f"max_tokens must be positive, got {max_tokens}")

    if estimate_tokens(content) <= max_tokens:
        return [content]

    max_chars = max(int(max_tokens / TOKENS_PER_CHAR), 1)
    chunks: List[str] = []
    current: List[str] = []
    current_chars = 0

    for line in content.split("\n"):
        line_tokens = estimate_tokens(line)

        if line_tokens > max_tokens:
            if current:
                chunks.append("\n".join(current))
                current, current_chars = [], 0
            chunks.extend(line[i:i + max_chars] for i in range(0, len(line), max_chars))
            continue

        # joining a line to a non-empty chunk costs one newline character
        candidate_chars = current_chars + len(line) + (1 if current else 0)
        if current and math.ceil(candidate_chars * TOKENS_PER_CHAR) > max_tokens:
            chunks.append("\n".join(current))
            current, current_chars = [line], len(line)
        else:
            current.append(line)
            current_chars = candidate_chars

    if current:
        chunks.append("\n".join(current))

    logger.debug("Split %d chars into %d chunks (max %d tokens)", len(content), len(chunks), max_tokens)
    return chunks


def validate_prompt_tokens(prompt: str, max_tokens: int) -> dict:
    estimated = estimate_tokens(prompt)
    return {
        "is_valid": estimated <= max_tokens,
        "estimated_tokens": estimated,
        "max_tokens": max_tokens,
    }
