import pytest

from conveyor.prompts import (
    DONE_MARKER,
    PLAN_OPEN,
    SUMMARY_OPEN,
    PromptContractError,
    PromptOptions,
    build_plan_prompt,
    build_prompt,
)


def test_v2_prompt_carries_plan_and_progress() -> None:
    prompt = build_prompt(
        PromptOptions(
            id=3,
            title="Add login",
            description="Email and password",
            plan="1. form\n2. session",
            progress_context="[2] Setup\nproject scaffolded",
        )
    )

    assert "ID: 3" in prompt
    assert "Title: Add login" in prompt
    assert "1. form\n2. session" in prompt
    assert "project scaffolded" in prompt
    assert DONE_MARKER in prompt
    assert SUMMARY_OPEN in prompt
    assert "node_modules" in prompt


def test_v1_prompt_omits_plan_and_progress() -> None:
    prompt = build_prompt(
        PromptOptions(id=0, title="A", plan="secret plan", progress_context="notes"),
        version=1,
    )

    assert "ID: 0" in prompt
    assert "secret plan" not in prompt
    assert "## PROGRESS" not in prompt
    assert DONE_MARKER in prompt


def test_prompt_accepts_id_zero() -> None:
    assert "ID: 0" in build_prompt(PromptOptions(id=0, title="First"))


@pytest.mark.parametrize(
    ("options", "version", "match"),
    [
        (PromptOptions(id=None, title="A"), 2, "id is required"),
        (PromptOptions(id=1, title=""), 2, "title is required"),
        (PromptOptions(id=1, title="A"), 9, "Unknown prompt version"),
    ],
)
def test_prompt_contract_violations(options: PromptOptions, version: int, match: str) -> None:
    with pytest.raises(PromptContractError, match=match):
        build_prompt(options, version=version)


def test_plan_prompt_embeds_backlog_and_wrapper() -> None:
    prompt = build_plan_prompt('[{"id": 0, "title": "A"}]\n')

    assert '[{"id": 0, "title": "A"}]' in prompt
    assert PLAN_OPEN in prompt
    assert "READ-ONLY" in prompt


def test_plan_prompt_requires_backlog() -> None:
    with pytest.raises(PromptContractError):
        build_plan_prompt("   ")
