"""Prompt templates for single-rule evaluations."""

from __future__ import annotations

from typing import Sequence

from .schema import RuleDefinition

SYSTEM_PROMPT = (
    "You are a code quality checker. Analyze code changes against the threadline guidelines. "
    "Be precise - only flag actual violations. Return only valid JSON, no other text."
)

JSON_RESPONSE_INSTRUCTION = (
    "Return JSON only with this exact structure:\n"
    "{\n"
    '  "status": "compliant" | "attention" | "not_relevant",\n'
    '  "reasoning": "brief explanation",\n'
    '  "file_references": [paths of files that need attention, taken from Changed Files]\n'
    "}"
)

STATUS_GUIDE = (
    "Status meanings:\n"
    '- "compliant": Code follows THIS threadline\'s guidelines, no violations found (even if other issues exist)\n'
    '- "attention": Code DIRECTLY violates THIS threadline\'s specific guidelines\n'
    '- "not_relevant": This threadline doesn\'t apply to these files/changes '
    "(e.g., wrong file type, no matching code patterns)"
)


def render_context_files(context: dict[str, str]) -> str:
    """Format context file contents as delimited blocks."""
    if not context:
        return ""
    blocks = [f"--- {path} ---\n{content}" for path, content in context.items()]
    return "Context Files:\n\n" + "\n\n".join(blocks)


def build_rule_prompt(rule: RuleDefinition, diff: str, files: Sequence[str]) -> str:
    """Return the user prompt asking the model to judge ``diff`` against ``rule`` only."""
    sections = [
        f"You are a code quality checker focused EXCLUSIVELY on: {rule.id}",
        (
            "CRITICAL: You must ONLY check for violations of THIS SPECIFIC threadline. "
            "Do NOT flag other code quality issues, style problems, or unrelated concerns. "
            "If the code does not violate THIS threadline's specific rules, return \"compliant\" "
            "even if other issues exist."
        ),
        f"Threadline Guidelines:\n{rule.body}",
    ]
    context_block = render_context_files(rule.context_content)
    if context_block:
        sections.append(context_block)
    sections.append(f"Code Changes:\n{diff}")
    sections.append("Changed Files:\n" + "\n".join(files))
    sections.append(
        "Review the code changes AGAINST ONLY THE THREADLINE GUIDELINES ABOVE.\n\n"
        "IMPORTANT:\n"
        "- Only flag violations of the specific rules defined in this threadline\n"
        "- Ignore all other code quality issues, style problems, or unrelated concerns\n"
        "- If the threadline concern is not violated, return \"compliant\" regardless of other issues\n"
        "- Only return \"attention\" if there is a DIRECT violation of this threadline's rules\n"
        "- When returning \"attention\", list every affected file in file_references"
    )
    sections.append(JSON_RESPONSE_INSTRUCTION)
    sections.append(STATUS_GUIDE)
    return "\n\n".join(sections)


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "STATUS_GUIDE",
    "SYSTEM_PROMPT",
    "build_rule_prompt",
    "render_context_files",
]
