"""
Prompt building for ralph-loop iterations.

Renders task prompts from a built-in or user-supplied template and falls
back to a minimal hardcoded format when rendering fails.
"""

import re
from pathlib import Path

from .config import LoopConfig
from .contracts import PromptRenderer, PromptResult
from .logging import get_logger
from .task import TrackerTask

logger = get_logger("prompt")

COMPLETION_SIGNAL = "<promise>COMPLETE</promise>"

DEFAULT_TEMPLATE = """## Task
**ID**: {{taskId}}
**Title**: {{taskTitle}}
{{#if epicId}}
**Epic**: {{epicId}}{{#if epicTitle}} - {{epicTitle}}{{/if}}
{{/if}}

{{#if taskDescription}}
## Description
{{taskDescription}}
{{/if}}

{{#if labels}}
**Labels**: {{labels}}
{{/if}}

{{#if dependsOn}}
**Dependencies**: {{dependsOn}}
{{/if}}

## Instructions
Complete the task described above. When finished, signal completion with:
<promise>COMPLETE</promise>
"""

# {{#if name}}...{{/if}}; innermost blocks first so nesting resolves
_IF_BLOCK = re.compile(r"\{\{#if (\w+)\}\}((?:(?!\{\{#if ).)*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}|\$\{(\w+)\}")


def render_template(template: str, variables: dict[str, str]) -> str:
    """Render template with variable substitution.

    Supports {{VARIABLE}} and ${VARIABLE} placeholders plus
    {{#if VARIABLE}}...{{/if}} sections that are dropped when the
    variable is empty.

    Args:
        template: Template string with placeholders
        variables: Dict of variable names to values

    Returns:
        Rendered template string.
    """
    result = template
    while True:
        expanded = _IF_BLOCK.sub(
            lambda m: m.group(2) if variables.get(m.group(1)) else "",
            result,
        )
        if expanded == result:
            break
        result = expanded

    # Single pass so substituted values are never re-scanned
    result = _PLACEHOLDER.sub(lambda m: variables.get(m.group(1) or m.group(2), ""), result)
    # Collapse blank runs left behind by dropped sections
    return re.sub(r"\n{3,}", "\n\n", result).strip() + "\n"


def build_template_variables(task: TrackerTask, epic: TrackerTask | None = None) -> dict[str, str]:
    """Flatten a task (and its epic) into template variables."""
    return {
        "taskId": task.id,
        "taskTitle": task.title,
        "taskDescription": task.description,
        "taskStatus": task.status,
        "labels": ", ".join(task.labels),
        "dependsOn": ", ".join(task.depends_on),
        "priority": "" if task.priority is None else str(task.priority),
        "taskType": task.type or "",
        "epicId": epic.id if epic else (task.parent_id or ""),
        "epicTitle": epic.title if epic else "",
    }


class TemplatePromptRenderer:
    """Renders prompts from a template file or the built-in default."""

    def render_prompt(
        self,
        task: TrackerTask,
        config: LoopConfig,
        epic: TrackerTask | None = None,
    ) -> PromptResult:
        template_path = config.prompt_template
        if template_path is None:
            template = DEFAULT_TEMPLATE
            source = "builtin:default"
        else:
            try:
                template = load_prompt_template(template_path)
            except OSError as e:
                return PromptResult(
                    success=False,
                    error=f"Cannot read prompt template {template_path}: {e}",
                    source=f"file:{template_path}",
                )
            source = f"file:{template_path}"

        prompt = render_template(template, build_template_variables(task, epic))
        if not prompt.strip():
            return PromptResult(
                success=False, error="Template rendered empty prompt", source=source
            )
        return PromptResult(success=True, prompt=prompt, source=source)


def load_prompt_template(path: Path) -> str:
    """Read a template file, stripping '#' comment lines from .txt templates."""
    content = path.read_text()
    if path.suffix == ".txt":
        lines = [line for line in content.split("\n") if not line.strip().startswith("#")]
        return "\n".join(lines).strip()
    return content.strip()


def build_fallback_prompt(task: TrackerTask) -> str:
    """Minimal prompt used when the renderer cannot produce one."""
    lines = [
        "## Task",
        f"**ID**: {task.id}",
        f"**Title**: {task.title}",
    ]
    if task.description:
        lines += ["", "## Description", task.description]
    lines += [
        "",
        "## Instructions",
        "Complete the task described above. When finished, signal completion with:",
        COMPLETION_SIGNAL,
    ]
    return "\n".join(lines)


def build_prompt(
    task: TrackerTask,
    config: LoopConfig,
    renderer: PromptRenderer,
    epic: TrackerTask | None = None,
) -> str:
    """Render the prompt for a task, falling back to the minimal format."""
    result = renderer.render_prompt(task, config, epic)
    if result.success and result.prompt:
        return result.prompt

    logger.warning(
        "Template rendering failed, using fallback prompt",
        task_id=task.id,
        source=result.source,
        error=result.error,
    )
    return build_fallback_prompt(task)
