"""Tests for prompt unit construction."""

from common.diff_parser import FileChange
from common.firebase_models import RepoSettings
from common.token_budget import estimate_tokens
from reviewagent.prompts import REVIEW_SYSTEM_PROMPT, build_prompt_units
from tests.conftest import make_pr


def test_one_unit_per_small_file_in_priority_order():
    files = [
        FileChange(filename="README.md", language="markdown", changes="hello"),
        FileChange(filename="config/secrets.py", language="python", changes="KEY = get()"),
    ]
    units = build_prompt_units(make_pr(), files, None, max_tokens=5000)

    assert [u.filename for u in units] == ["config/secrets.py", "README.md"]
    assert all(u.chunk_index is None and u.total_chunks == 1 for u in units)
    assert "### File: `config/secrets.py` (python)" in units[0].prompt
    assert "```python\nKEY = get()\n```" in units[0].prompt
    assert "PR #7 in acme/widgets" in units[0].prompt


def test_large_file_is_chunked_in_order_within_budget():
    content = "\n".join(f"value_{i} = compute({i})" for i in range(400))
    files = [FileChange(filename="src/big.py", language="python", changes=content)]

    units = build_prompt_units(make_pr(), files, None, max_tokens=400)

    assert len(units) > 1
    assert [u.chunk_index for u in units] == list(range(len(units)))
    assert all(u.total_chunks == len(units) for u in units)
    assert all(u.estimated_tokens <= 400 for u in units)
    assert f"Part 1 of {len(units)}" in units[0].prompt
    assert "value_0 = compute(0)" in units[0].prompt
    assert "value_399 = compute(399)" in units[-1].prompt


def test_repo_settings_add_review_rules():
    files = [FileChange(filename="a.py", language="python", changes="x = 1")]
    settings = RepoSettings(strict_mode=True, ignore_styling=True)

    prompt = build_prompt_units(make_pr(), files, settings, max_tokens=5000)[0].prompt

    assert "Strict mode is enabled" in prompt
    assert "purely stylistic" in prompt
    assert "standard linter" not in prompt


def test_secret_warnings_are_surfaced_to_the_model():
    files = [FileChange(filename="a.py", language="python", changes="x = 1", warnings=["Potential secret"])]
    prompt = build_prompt_units(make_pr(), files, None, max_tokens=5000)[0].prompt
    assert "- Potential secret" in prompt


def test_unknown_language_gets_a_plain_fence():
    files = [FileChange(filename="Makefile", changes="all:\n\techo hi")]
    prompt = build_prompt_units(make_pr(), files, None, max_tokens=5000)[0].prompt
    assert "```\nall:" in prompt


def test_system_prompt_demands_bare_json():
    assert "Return ONLY valid JSON" in REVIEW_SYSTEM_PROMPT
    assert estimate_tokens(REVIEW_SYSTEM_PROMPT) < 1000


def test_unit_over_budget_is_logged(caplog):
    warnings = [f"Possible hardcoded secret on line {i}" for i in range(40)]
    files = [FileChange(filename="src/app.py", language="python", changes="x = 1", warnings=warnings)]

    with caplog.at_level("WARNING", logger="reviewagent.prompts"):
        units = build_prompt_units(make_pr(), files, None, max_tokens=100)

    assert units
    assert all(u.estimated_tokens > 100 for u in units)
    assert "over budget" in caplog.text
