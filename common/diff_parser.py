"""
Diff sanitizer
==============
Turns a raw unified diff into per-file change sets that are safe and cheap to
send to the reviewer model:

  1. Split the diff on ``diff --git`` boundaries
  2. Keep only added lines (plus the context that follows them)
  3. Detect the language from the file extension
  4. Flag content that looks like a leaked secret
"""

import logging
import re
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


UNKNOWN_LANGUAGE = "unknown"

_EXT_TO_LANG = {
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript", ".cjs": "javascript",
    ".ts": "typescript", ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".cpp": "cpp", ".cc": "cpp", ".hpp": "cpp",
    ".c": "c", ".h": "c",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".sh": "bash", ".bash": "bash",
    ".sql": "sql",
    ".html": "html",
    ".css": "css", ".scss": "css",
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml", ".yml": "yaml",
    ".md": "markdown",
    ".vue": "vue",
    ".svelte": "svelte",
}

_SECRET_PATTERNS = [
    re.compile(r"(api[_-]?key|apikey)\s*[:=]\s*['\"]?[a-zA-Z0-9]{20,}", re.IGNORECASE),
    re.compile(r"(secret|password|passwd|pwd)\s*[:=]\s*['\"]?[a-zA-Z0-9]{10,}", re.IGNORECASE),
    re.compile(r"(token|bearer)\s*[:=]\s*['\"]?[a-zA-Z0-9]{20,}", re.IGNORECASE),
    re.compile(r"(aws[_-]?access[_-]?key|aws[_-]?secret)", re.IGNORECASE),
    re.compile(r"(private[_-]?key|ssh[_-]?key|-----BEGIN [A-Z ]*PRIVATE KEY-----)", re.IGNORECASE),
]

SECRET_WARNING = "Potential secret or token detected in diff"

_DIFF_HEADER = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")


class FileChange(BaseModel):
    """Reviewable changes of a single file."""

    filename: str
    language: str = UNKNOWN_LANGUAGE
    changes: str
    status: Optional[str] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)


class SanitizedDiff(BaseModel):
    files: List[FileChange] = Field(default_factory=list)
    total_files: int = 0
    total_changes: int = 0


def detect_language(filename: str) -> str:
    """Map a file path to a language name, or ``"unknown"``."""
    return _EXT_TO_LANG.get(PurePosixPath(filename).suffix.lower(), UNKNOWN_LANGUAGE)


def scan_for_secrets(content: str) -> List[str]:
    """Return warnings for content that looks like it contains credentials.

    Matching is heuristic; at most one warning is produced per file.
    """
    for pattern in _SECRET_PATTERNS:
        if pattern.search(content):
            return [SECRET_WARNING]
    return []


def split_diff_by_file(diff_text: str) -> Dict[str, str]:
    """
    Split a unified diff into per-file diff chunks.

    Args:
        diff_text: Full unified diff string

    Returns:
        Dict mapping file_path (the ``b/`` side) -> that file's diff text
    """
    files: Dict[str, str] = {}
    current_file = None
    current_lines: List[str] = []

    for line in diff_text.splitlines():
        diff_header = _DIFF_HEADER.match(line)
        if diff_header:
            if current_file and current_lines:
                files[current_file] = "\n".join(current_lines)
            current_file = diff_header.group(2)
            current_lines = [line]
            continue

        if current_file is not None:
            current_lines.append(line)

    if current_file and current_lines:
        files[current_file] = "\n".join(current_lines)

    return files


def clean_file_patch(patch: str) -> str:
    """
    Strip diff metadata from a single file's patch.

    Keeps added lines and the unchanged context that follows an added line,
    with their one-character marker removed. File headers, hunk headers,
    deleted lines and ``\\ No newline`` markers are dropped.
    """
    if not patch:
        return ""

    cleaned: List[str] = []
    in_hunk = False

    for line in patch.splitlines():
        if line.startswith("@@"):
            in_hunk = True
            continue
        # File headers only precede the first hunk; inside a hunk "+++x" is an added "++x".
        if not in_hunk:
            continue

        if line.startswith("+"):
            cleaned.append(line[1:])
        elif line.startswith(" ") and cleaned:
            # Context is kept from the first added line on, including later deletion-only hunks.
            cleaned.append(line[1:])
        # deletions and "\ No newline at end of file" carry nothing reviewable

    return "\n".join(cleaned).strip("\n")


def sanitize_diff(raw_diff: str, files_metadata: Optional[List[dict]] = None) -> SanitizedDiff:
    """
    Clean and structure a pull request diff for review.

    Args:
        raw_diff: Raw unified diff from the GitHub API
        files_metadata: Optional PR file list (``filename``, ``status``,
            ``additions``, ``deletions``) merged into the result by filename

    Returns:
        SanitizedDiff. An empty or unparseable diff yields zero files.
    """
    if not raw_diff or not raw_diff.strip():
        logger.warning("Empty diff received")
        return SanitizedDiff()

    metadata = {f.get("filename"): f for f in (files_metadata or [])}
    cleaned_files: List[FileChange] = []
    total_changes = 0

    for filename, file_diff in split_diff_by_file(raw_diff).items():
        changes = clean_file_patch(file_diff)
        if not changes.strip():
            continue

        warnings = scan_for_secrets(changes)
        if warnings:
            logger.warning("Diff validation warnings for %s: %s", filename, warnings)

        meta = metadata.get(filename, {})
        cleaned_files.append(
            FileChange(
                filename=filename,
                language=detect_language(filename),
                changes=changes,
                status=meta.get("status"),
                additions=meta.get("additions"),
                deletions=meta.get("deletions"),
                warnings=warnings,
            )
        )
        total_changes += len(changes.encode("utf-8"))

    logger.info(
        "Diff cleaned: %d files, %d bytes of reviewable changes",
        len(cleaned_files), total_changes,
    )
    return SanitizedDiff(
        files=cleaned_files,
        total_files=len(cleaned_files),
        total_changes=total_changes,
    )


def added_line_numbers(patch: str) -> set[int]:
    """New-file line numbers of the ``+`` lines in a patch.

    These are the only lines GitHub accepts as anchors for ``side=RIGHT``
    review comments on added code.
    """
    lines: set[int] = set()
    new_line = 0
    in_hunk = False

    for line in patch.splitlines():
        hunk_match = _HUNK_HEADER.match(line)
        if hunk_match:
            new_line = int(hunk_match.group(1))
            in_hunk = True
            continue
        if not in_hunk:
            continue
        if line.startswith("+"):
            lines.add(new_line)
            new_line += 1
        elif line.startswith("-") or line.startswith("\\"):
            continue
        else:
            new_line += 1

    return lines
