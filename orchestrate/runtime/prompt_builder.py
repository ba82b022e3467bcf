"""
prompt_builder.py - Compose the instruction text sent to an executor.

The composed prompt has up to four sections, in this order:

    # Skills            one "## <name>" heading + body per fragment
    # Task              the caller's free-text prompt
    # Reference Files   "- <path>" per reference file
    # Report            the report-writing directive

Empty sections are omitted. The assembled text is passed through
apply_template_vars exactly once, so placeholders inside fragment bodies and
reference paths resolve from the same variable mapping.

compose_prompt is a pure function of PromptParams: no clock, no environment
and no filesystem access, so identical inputs give byte-identical output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import UsageError
from .fragments import Fragment
from .templates import apply_template_vars
from .types import DetailLevel

DETAIL_GUIDES: Dict[str, str] = {
    DetailLevel.BRIEF.value: (
        "Keep the report concise. Focus on: what was done, pass/fail status, any blockers."
    ),
    DetailLevel.STANDARD.value: (
        "Include: what was done, key decisions made, files created/modified, "
        "verification results, and any issues or blockers."
    ),
    DetailLevel.DETAILED.value: (
        "Be thorough: what was done, reasoning behind decisions, all files touched "
        "with descriptions, full verification results, issues found, and "
        "recommendations for next steps."
    ),
}


@dataclass(frozen=True)
class PromptParams:
    """Inputs to compose_prompt.

    Attributes:
        fragments: Loaded fragments, in injection order.
        prompt: Free-text task prompt.
        reference_files: Paths listed in the reference-files section.
        variables: Template variables applied once to the whole text.
        report_path: Path the executor is told to write its report to.
        detail: Report detail level.
    """

    fragments: Tuple[Fragment, ...] = ()
    prompt: str = ""
    reference_files: Tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    report_path: str = ""
    detail: str = DetailLevel.STANDARD.value


def validate_detail(detail: str) -> str:
    """Return the normalized detail level or raise UsageError."""
    normalized = (detail or "").strip().lower()
    if normalized not in DETAIL_GUIDES:
        raise UsageError("Invalid detail level", value=detail, accepted=DetailLevel.values())
    return normalized


def build_report_instruction(report_path: str, detail: str) -> str:
    """Build the report-writing directive for ``report_path``."""
    guide = DETAIL_GUIDES[validate_detail(detail)]
    return (
        "# Report\n"
        "\n"
        f"**IMPORTANT - As your FINAL action**, write a report of your work to: `{report_path}`\n"
        "\n"
        f"{guide}\n"
        "\n"
        "Use plain markdown. This file is read by the orchestrator to understand "
        "what you did without parsing verbose logs.\n"
    )


# Matches the path written by build_report_instruction
REPORT_DIRECTIVE_PATTERN = re.compile(r"write a report of your work to: `([^`\n]+)`")


def find_report_path(text: str) -> Optional[str]:
    """Return the report path named by the last report directive in ``text``."""
    matches = REPORT_DIRECTIVE_PATTERN.findall(text)
    return matches[-1] if matches else None


def _fragments_section(fragments: Sequence[Fragment]) -> str:
    parts: List[str] = ["# Skills\n"]
    for fragment in fragments:
        body = fragment.body.strip("\n")
        parts.append(f"\n## {fragment.name}\n\n{body}\n")
    return "".join(parts)


def _reference_section(reference_files: Sequence[str]) -> str:
    lines = "".join(f"- {path}\n" for path in reference_files)
    return f"# Reference Files\n\n{lines}"


def compose_prompt(params: PromptParams) -> str:
    """Assemble the full prompt text.

    Args:
        params: Composition inputs.

    Returns:
        The composed prompt, template-substituted once.
    """
    sections: List[str] = []

    if params.fragments:
        sections.append(_fragments_section(params.fragments))

    task = params.prompt.strip("\n")
    if task.strip():
        sections.append(f"# Task\n\n{task}\n")

    if params.reference_files:
        sections.append(_reference_section(params.reference_files))

    if params.report_path:
        sections.append(build_report_instruction(params.report_path, params.detail))

    composed = "\n".join(sections)
    return apply_template_vars(composed, params.variables)
