"""Prompts sent to the agent and the completion token it answers with."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

COMPLETION_TOKEN = "<promise>COMPLETE</promise>"

DEFAULT_PROMPT = f"""You are working on a software project. Read PRD.md for the full plan and progress.txt for completed tasks.
Pick the next uncompleted task from PRD.md, implement it, then append a line to progress.txt in the format:
  [DONE] <task description>
When ALL tasks in PRD.md are complete, output the token: {COMPLETION_TOKEN}"""

DEFAULT_PLAN_PROMPT = (
    "Review the codebase in this directory. All tasks in PRD.md have been completed "
    "(see progress.txt). Your job is to review the code for weaknesses, missing features, "
    "or further improvements, then REWRITE the Tasks section in PRD.md with a fresh list of "
    "at least 5 unchecked improvement tasks in the format '- [ ] task description'. "
    "Replace the existing task list entirely with the new one. "
    "Do not modify progress.txt or check off any boxes."
)


def load_agent_prompt(prompt_file: Path) -> str:
    """Return the contents of ``prompt_file`` if present, else the default prompt."""
    if prompt_file.is_file():
        text = prompt_file.read_text(encoding="utf-8").strip()
        if text:
            logger.info(f"Using prompt from {prompt_file.name}")
            return text
    return DEFAULT_PROMPT


def plan_prompt(override: Optional[str] = None) -> str:
    return override or DEFAULT_PLAN_PROMPT


def signals_completion(output: str) -> bool:
    return COMPLETION_TOKEN in output
