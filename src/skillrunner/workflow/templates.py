"""Prompt template rendering and phase message assembly.

Templates use ``{{ .input }}`` or ``{{ input }}`` for the request text and
``{{ .phases.<id> }}`` or ``{{ .<id> }}`` for a dependency's output.
Placeholders that do not resolve are left verbatim.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from skillrunner.providers.base import Message

# Pattern for {{ variable }} substitution, with an optional leading dot
_VAR_PATTERN = re.compile(r"\{\{\s*\.?([\w-]+(?:\.[\w-]+)*)\s*\}\}")

MEMORY_HEADER = "Project Memory:\n\n"
CONTEXT_HEADER = "Context from previous phases:\n\n"
CONTEXT_SEPARATOR = "\n\n---\n\n"


def build_context(request: str, outputs: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Build the variables available to a prompt template.

    Args:
        request: The original request text.
        outputs: Outputs of completed phases keyed by phase id.

    Returns:
        Context with ``input``, ``_input``, ``phases`` and one top-level
        entry per phase id.
    """
    phases = dict(outputs or {})
    context: dict[str, Any] = {key: value for key, value in phases.items()}
    context["phases"] = phases
    context["input"] = request
    context["_input"] = request
    return context


def _resolve_variable(path: str, context: Mapping[str, Any]) -> str | None:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None
    return value if isinstance(value, str) else str(value)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{ var }}`` placeholders from ``context``.

    Args:
        template: Template text.
        context: Variables; dotted paths walk nested dictionaries.

    Returns:
        Rendered text with unresolved placeholders left unchanged.
    """

    def _replace(match: re.Match[str]) -> str:
        value = _resolve_variable(match.group(1), context)
        return match.group(0) if value is None else value

    return _VAR_PATTERN.sub(_replace, template)


def estimation_prompt(prompt_template: str, request: str, memory: str = "") -> str:
    """Text whose token count approximates a phase's prompt at planning time.

    Dependency outputs are unknown before execution, so only the request
    and the memory text are substituted.
    """
    rendered = render_template(prompt_template, build_context(request))
    if memory:
        return f"{MEMORY_HEADER}{memory}\n\n{rendered}"
    return rendered


def build_messages(
    prompt: str,
    request: str,
    dependency_outputs: Mapping[str, str],
    memory: str = "",
) -> list[Message]:
    """Assemble the messages sent to a provider for one phase.

    Order: the memory system message (if any), a context system message
    listing the original input and each dependency's output (if the phase
    has dependencies), then the rendered prompt as the user message.
    """
    messages: list[Message] = []
    if memory:
        messages.append({"role": "system", "content": MEMORY_HEADER + memory})

    if dependency_outputs:
        parts = [f"Original Input:\n{request}"] if request else []
        parts.extend(
            f"Previous Phase ({phase_id}):\n{output}"
            for phase_id, output in dependency_outputs.items()
            if output
        )
        if parts:
            messages.append(
                {"role": "system", "content": CONTEXT_HEADER + CONTEXT_SEPARATOR.join(parts)}
            )

    messages.append({"role": "user", "content": prompt})
    return messages
