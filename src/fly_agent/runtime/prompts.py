"""Task prompt template sent to the agent runtime."""

from __future__ import annotations

_TASK_PROMPT_TEMPLATE = """\
# Task: {title}

## Description
{description}

## Instructions
1. Analyze the codebase to understand the current structure
2. Implement the requested changes
3. Ensure code quality and follow existing patterns
4. Do not create unnecessary files or make unrelated changes

Please proceed with the implementation."""


def build_task_prompt(title: str, description: str) -> str:
    return _TASK_PROMPT_TEMPLATE.format(title=title, description=description)
