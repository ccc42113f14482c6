"""Instruction text handed to the coding agent.

Execution prompts come from a single versioned template. Version 1 carries
the task fields only. Version 2 adds the task plan and the accumulated
progress log so later tasks can build on earlier summaries.
"""

from __future__ import annotations

from dataclasses import dataclass

DONE_MARKER = "<status>done</status>"
SUMMARY_OPEN = "<summary>"
SUMMARY_CLOSE = "</summary>"
PLAN_OPEN = "<plan_json>"
PLAN_CLOSE = "</plan_json>"

PROMPT_VERSION = 2

IGNORED_DIRECTORIES = (
    "node_modules",
    "dist",
    "build",
    "out",
    "coverage",
    "target",
    "bin",
    "obj",
    "__pycache__",
    ".venv",
    "venv",
    "env",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
    ".eggs",
    "site-packages",
    "vendor",
    ".bundle",
    "pkg",
    "_build",
    "deps",
    "dist-newstyle",
    ".stack-work",
    ".dart_tool",
    ".gradle",
    ".idea",
    ".vscode",
    ".git",
)


class PromptContractError(ValueError):
    """Raised when a prompt is requested without its required fields."""


@dataclass(slots=True)
class PromptOptions:
    id: int | None
    title: str
    description: str = ""
    plan: str | None = None
    progress_context: str | None = None


def _protocol_section() -> str:
    ignored = ", ".join(IGNORED_DIRECTORIES)
    return f"""## INSTRUCTIONS
- Analyze the requirement thoroughly.
- You have full permission to read and modify files and to run commands.
- Make all decisions autonomously. Do NOT ask for clarification or permission.
- Never wait for user confirmation. Make reasonable assumptions and proceed.
- Never read large or ignorable directories such as: {ignored}.
- Implement the requirement completely.

## COMPLETION
When the requirement is fully implemented and working, respond with exactly:
{DONE_MARKER}
Then optionally summarize key decisions and important notes as plain text
(no code, no commands) between these tags:
{SUMMARY_OPEN}
...
{SUMMARY_CLOSE}"""


def _render_v1(options: PromptOptions) -> str:
    return f"""You are an autonomous coding agent. You must complete the following requirement.

## REQUIREMENT
ID: {options.id}
Title: {options.title}
Description: {options.description}

{_protocol_section()}

Begin implementation now."""


def _render_v2(options: PromptOptions) -> str:
    plan = options.plan or ""
    progress = options.progress_context or ""
    return f"""You are an autonomous coding agent. You must complete the following requirement.

## REQUIREMENT
ID: {options.id}
Title: {options.title}
Description: {options.description}
Plan:
{plan}

## PROGRESS
Notes from previous iterations. Empty on the first run.
{progress}

{_protocol_section()}
- Follow the provided plan, refining it into concrete steps before you start.

Begin implementation now."""


_TEMPLATES = {1: _render_v1, 2: _render_v2}


def build_prompt(options: PromptOptions, version: int = PROMPT_VERSION) -> str:
    if options.id is None:
        raise PromptContractError("Task id is required to build a prompt.")
    if not options.title:
        raise PromptContractError("Task title is required to build a prompt.")
    render = _TEMPLATES.get(version)
    if render is None:
        raise PromptContractError(f"Unknown prompt version: {version}")
    return render(options)


def build_plan_prompt(backlog_text: str) -> str:
    if not backlog_text or not backlog_text.strip():
        raise PromptContractError("Backlog content is required to build a planning prompt.")
    return f"""You are a software architect and planning specialist. Explore the codebase
and create a step by step implementation plan for every backlog item below.

=== READ-ONLY MODE: NO FILE MODIFICATIONS ===
You must not create, edit or delete any file. Only read-only commands such as
ls, grep, find, cat, head, tail, git status, git log and git diff are allowed.

## PROCESS
1. Understand the backlog as a whole, but plan each item individually.
2. Explore existing patterns, conventions and architecture. An empty directory
   means a fresh project.
3. Give extra attention to files referenced by an item or attached to it.
4. Describe the implementation steps, their order and the expected risks.

## BACKLOG (JSON)
{backlog_text.strip()}

## REQUIRED OUTPUT
Finish with a single JSON object keyed by backlog item id, whose values are the
plan text for that item, wrapped in {PLAN_OPEN} tags:
{PLAN_OPEN}
{{"0": "plan details for item 0", "1": "plan details for item 1"}}
{PLAN_CLOSE}"""
