"""Pydantic models for the review pipeline."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Category = Literal["bug", "security", "performance", "quality", "best-practice"]
Severity = Literal["low", "medium", "high", "critical"]

_CATEGORY_ALIASES = {
    "best practice": "best-practice",
    "best_practice": "best-practice",
    "bestpractice": "best-practice",
}
_SEVERITIES = {"low", "medium", "high", "critical"}
_CATEGORIES = {"bug", "security", "performance", "quality", "best-practice"}


class ReviewFinding(BaseModel):
    """One issue reported against a file (and optionally a line)."""

    file: str
    line: Optional[int] = None
    category: Category = "quality"
    severity: Severity = "low"
    title: str = ""
    description: str
    suggestion: str = ""

    @property
    def identity(self) -> tuple[str, Optional[int], str]:
        return (self.file, self.line, self.description)


class ModelIssue(BaseModel):
    """An issue as emitted by the model, before it is trusted.

    Accepts both the ``category``/``description`` and the ``type``/``message``
    spellings of the contract.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    file: str = Field(min_length=1)
    line: Optional[int] = None
    category: Optional[str] = None
    type_: Optional[str] = Field(default=None, alias="type")
    severity: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None
    suggested_fix: Optional[str] = None

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value):
        if value in (None, "", "null"):
            return None
        if isinstance(value, bool):
            raise ValueError("line must be an integer")
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return value

    @model_validator(mode="after")
    def _require_description(self) -> "ModelIssue":
        if not (self.description or self.message or "").strip():
            raise ValueError("issue needs a description or message")
        return self

    def to_finding(self) -> ReviewFinding:
        category = (self.type_ or self.category or "quality").strip().lower()
        category = _CATEGORY_ALIASES.get(category, category)
        if category not in _CATEGORIES:
            category = "quality"
        severity = (self.severity or "low").strip().lower()
        if severity not in _SEVERITIES:
            severity = "low"
        description = (self.description or self.message or "").strip()
        return ReviewFinding(
            file=self.file,
            line=self.line if self.line and self.line > 0 else None,
            category=category,
            severity=severity,
            title=(self.title or description[:80]).strip(),
            description=description,
            suggestion=(self.suggestion or self.suggested_fix or "").strip(),
        )


class ModelReview(BaseModel):
    """Top-level JSON object the model must return."""

    model_config = ConfigDict(extra="ignore")

    summary: str
    # Parsed so a malformed value is a contract violation; never used.
    risk_score: Optional[float] = None
    issues: list[ModelIssue]


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class PromptUnit(BaseModel):
    """One bounded review request. Chunks of a file keep ascending ``chunk_index``."""

    filename: str
    prompt: str
    chunk_index: Optional[int] = None
    total_chunks: int = 1
    estimated_tokens: int = 0


class UnitResult(BaseModel):
    """Outcome of reviewing one PromptUnit."""

    filename: str
    chunk_index: Optional[int] = None
    failed: bool = False
    error: Optional[str] = None
    summary: str = ""
    findings: list[ReviewFinding] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)


class AggregatedReview(BaseModel):
    summary: str
    findings: list[ReviewFinding] = Field(default_factory=list)
    risk_score: int = Field(ge=0, le=100)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    coverage: Literal["full", "partial"] = "full"
    failed_units: list[str] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.coverage == "partial"


class Policy(BaseModel):
    """Per-repository blocking thresholds."""

    block_risk_threshold: int = 80
    block_on_high_severity_security: bool = True
    max_issue_count: Optional[int] = None


class PolicyDecision(BaseModel):
    is_blocked: bool = False
    reason: str = ""
