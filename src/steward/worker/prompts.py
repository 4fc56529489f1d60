"""Prompt assembly for the execution capability."""

from __future__ import annotations

from ..models import ActionNode, ActionPhase
from ..strategy import AcquiredWorkspace

BRANCH_NOTICE = (
    "## Workspace Branch\n"
    "The workspace has been checked out to branch `{branch}`. You MUST use this exact "
    "branch name for all git operations (checkout, push, PR creation). Do NOT create a "
    "different branch name."
)

MULTI_REPO_NOTICE = (
    "## Workspace Layout\n"
    "This workspace contains several repositories, one per directory: {names}."
)

PHASE_INSTRUCTIONS = {
    "prepare": (
        "Prepare action {action_id} ({title}): review the goal, break it down into "
        "child actions where needed, and mark it prepared when done."
    ),
    "execute": "Execute action {action_id} ({title}) to completion.",
}


def workspace_preamble(workspace: AcquiredWorkspace) -> str:
    sections: list[str] = []
    if workspace.branch:
        sections.append(BRANCH_NOTICE.format(branch=workspace.branch))
    if workspace.repo_names:
        names = ", ".join(f"`{name}/`" for name in workspace.repo_names)
        sections.append(MULTI_REPO_NOTICE.format(names=names))
    return "\n\n".join(sections)


def build_prompt(
    action: ActionNode,
    phase: ActionPhase,
    workspace: AcquiredWorkspace,
    *,
    remote_prompt: str | None = None,
) -> str:
    """Return the full prompt: workspace notes, then the task instruction.

    The queue-provided prompt wins over the built-in phase instruction.
    """
    body = remote_prompt or PHASE_INSTRUCTIONS[phase].format(
        action_id=action.id, title=action.title or "untitled"
    )
    preamble = workspace_preamble(workspace)
    if preamble:
        return f"{preamble}\n\n{body}"
    return body
