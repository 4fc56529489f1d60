"""Select the next actionable node from a (possibly truncated) task tree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from . import log
from .errors import TreeResolutionError
from .models import ActionNode, ActionPhase

SubtreeFetcher = Callable[[str, int], ActionNode]


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of a traversal.

    Exactly one of ``action`` and ``truncated_at`` is set, or neither when the
    subtree holds no workable node.
    """

    action: ActionNode | None = None
    truncated_at: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.action is None and self.truncated_at is None


EMPTY = SelectionResult()


def _dependencies_done(node: ActionNode) -> bool:
    return all(dependency.done for dependency in node.dependencies)


def select_next(node: ActionNode) -> SelectionResult:
    """Return the first workable node in depth-first pre-order.

    Completed nodes and nodes with unfinished dependencies are skipped along
    with their subtrees. A parent explicitly marked ``prepared=False`` is
    returned itself so it gets prepared before its children run. A node whose
    children were not loaded is reported as a truncation boundary.
    """
    if node.done:
        return EMPTY
    if not _dependencies_done(node):
        return EMPTY

    has_children = bool(node.children) or node.has_children
    if has_children and node.prepared is False:
        return SelectionResult(action=node)
    if node.has_children and not node.children:
        return SelectionResult(truncated_at=node.id)
    if not any(not child.done for child in node.children):
        return SelectionResult(action=node)

    for child in node.children:
        result = select_next(child)
        if not result.is_empty:
            return result
    return EMPTY


def graft(root: ActionNode, subtree: ActionNode) -> ActionNode:
    """Return a copy of ``root`` with the node ``subtree.id`` replaced.

    Raises:
        TreeResolutionError: When no node with that id exists in ``root``.
    """
    replaced, found = _graft(root, subtree)
    if not found:
        raise TreeResolutionError(subtree.id, "re-fetched node is not part of the tree")
    return replaced


def _graft(node: ActionNode, subtree: ActionNode) -> tuple[ActionNode, bool]:
    if node.id == subtree.id:
        return subtree, True
    children = list(node.children)
    for index, child in enumerate(children):
        replaced, found = _graft(child, subtree)
        if found:
            children[index] = replaced
            return node.model_copy(update={"children": tuple(children)}), True
    return node, False


def resolve_next_action(
    root: ActionNode,
    fetch_subtree: SubtreeFetcher,
    *,
    fetch_depth: int = 10,
    max_refetches: int = 5,
) -> ActionNode | None:
    """Select the next action, re-fetching truncated subtrees as needed.

    Args:
        root: Tree snapshot to search.
        fetch_subtree: Callable returning the subtree for ``(node_id, depth)``.
        fetch_depth: Depth requested on each re-fetch.
        max_refetches: Upper bound on re-fetches before giving up.

    Returns:
        The next action, or ``None`` when no work remains under ``root``.

    Raises:
        TreeResolutionError: When the re-fetch bound is exceeded or a re-fetch
            does not extend the tree past the same boundary.
    """
    tree = root
    refetches = 0
    seen_boundaries: set[str] = set()
    while True:
        result = select_next(tree)
        if result.truncated_at is None:
            return result.action
        boundary = result.truncated_at
        if boundary in seen_boundaries:
            raise TreeResolutionError(boundary, "re-fetch returned no children")
        if refetches >= max_refetches:
            raise TreeResolutionError(
                boundary, f"exceeded {max_refetches} subtree re-fetches"
            )
        seen_boundaries.add(boundary)
        refetches += 1
        log.debug(f"tree truncated at {boundary}; fetching depth {fetch_depth}")
        subtree = fetch_subtree(boundary, fetch_depth)
        if subtree.id != boundary:
            raise TreeResolutionError(
                boundary, f"re-fetch returned node {subtree.id!r} instead"
            )
        tree = graft(tree, subtree)


def phase_for(action: ActionNode) -> ActionPhase:
    """Return which phase a selected action runs in.

    Example:
        >>> phase_for(ActionNode(id="a", prepared=False))
        'prepare'
        >>> phase_for(ActionNode(id="a"))
        'execute'
    """
    if action.prepared is False:
        return "prepare"
    return "execute"
