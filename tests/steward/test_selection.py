from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from steward.errors import TreeResolutionError
from steward.models import ActionDependency, ActionNode
from steward.selection import EMPTY, graft, phase_for, resolve_next_action, select_next
from tests.steward.helpers import node

BLOCKER = ActionDependency(id="blocker", done=False)


def test_completed_root_yields_nothing() -> None:
    tree = node("a", node("b"), done=True)

    assert select_next(tree) == EMPTY
    assert select_next(tree).is_empty


def test_incomplete_dependency_blocks_whole_subtree() -> None:
    tree = node("a", node("b"), node("c"), dependencies=(BLOCKER,))

    assert select_next(tree).is_empty


def test_finished_dependency_does_not_block() -> None:
    tree = node("a", dependencies=(ActionDependency(id="x", done=True),))

    assert select_next(tree).action == tree


def test_unprepared_parent_is_returned_before_children() -> None:
    child = node("b")
    tree = node("a", child, prepared=False)

    result = select_next(tree)

    assert result.action is not None
    assert result.action.id == "a"
    assert result.truncated_at is None


def test_unprepared_truncated_parent_is_prepared_first() -> None:
    tree = node("a", prepared=False, has_children=True)

    assert select_next(tree).action == tree


def test_missing_prepared_flag_allows_descent() -> None:
    tree = node("a", node("b"))

    result = select_next(tree)

    assert result.action is not None
    assert result.action.id == "b"


def test_truncation_boundary_is_reported() -> None:
    tree = node("a", prepared=True, has_children=True)

    result = select_next(tree)

    assert result.action is None
    assert result.truncated_at == "a"


def test_parent_with_only_done_children_is_effective_leaf() -> None:
    tree = ActionNode.model_validate(
        {
            "id": "A",
            "done": False,
            "dependencies": [],
            "prepared": True,
            "hasChildren": True,
            "children": [{"id": "B", "done": True, "dependencies": [], "children": []}],
        }
    )

    result = select_next(tree)

    assert result.action == tree
    assert result.truncated_at is None


def test_leaf_returned_regardless_of_prepared_flag() -> None:
    assert select_next(node("a", prepared=False)).action is not None
    assert select_next(node("a", prepared=True)).action is not None


def test_sibling_order_breaks_ties() -> None:
    tree = node(
        "root",
        node("done", done=True),
        node("blocked", dependencies=(BLOCKER,)),
        node("second", node("deep")),
        node("third"),
    )

    result = select_next(tree)

    assert result.action is not None
    assert result.action.id == "deep"


def test_truncation_in_earlier_sibling_wins_over_later_leaf() -> None:
    tree = node("root", node("cut", has_children=True), node("leaf"))

    assert select_next(tree).truncated_at == "cut"


def test_graft_replaces_nested_node() -> None:
    tree = node("root", node("mid", node("cut", has_children=True)), node("other"))
    subtree = node("cut", node("new-leaf"))

    grafted = graft(tree, subtree)

    assert grafted.children[0].children[0] == subtree
    assert grafted.children[1].id == "other"
    assert tree.children[0].children[0].children == ()


def test_graft_unknown_node_raises() -> None:
    with pytest.raises(TreeResolutionError):
        graft(node("root"), node("elsewhere"))


def test_resolve_next_action_refetches_truncated_subtree() -> None:
    tree = node("root", node("cut", has_children=True))
    fetches: list[tuple[str, int]] = []

    def fetch(node_id: str, depth: int) -> ActionNode:
        fetches.append((node_id, depth))
        return node("cut", node("leaf"))

    action = resolve_next_action(tree, fetch, fetch_depth=3)

    assert action is not None
    assert action.id == "leaf"
    assert fetches == [("cut", 3)]


def test_resolve_next_action_returns_none_when_all_done() -> None:
    def fetch(node_id: str, depth: int) -> ActionNode:
        raise AssertionError("no fetch expected")

    assert resolve_next_action(node("root", done=True), fetch) is None


def test_resolve_next_action_rejects_refetch_without_children() -> None:
    tree = node("root", node("cut", has_children=True))

    def fetch(node_id: str, depth: int) -> ActionNode:
        return node(node_id, has_children=True)

    with pytest.raises(TreeResolutionError, match="cut"):
        resolve_next_action(tree, fetch)


def test_resolve_next_action_bounds_refetches() -> None:
    counter = {"n": 0}

    def fetch(node_id: str, depth: int) -> ActionNode:
        counter["n"] += 1
        return node(node_id, node(f"{node_id}-{counter['n']}", has_children=True))

    with pytest.raises(TreeResolutionError, match="exceeded 2"):
        resolve_next_action(node("root", has_children=True), fetch, max_refetches=2)
    assert counter["n"] == 2


def test_resolve_next_action_rejects_mismatched_subtree() -> None:
    def fetch(node_id: str, depth: int) -> ActionNode:
        return node("someone-else")

    with pytest.raises(TreeResolutionError, match="someone-else"):
        resolve_next_action(node("root", has_children=True), fetch)


def test_phase_for_uses_prepared_flag() -> None:
    assert phase_for(node("a", prepared=False)) == "prepare"
    assert phase_for(node("a", prepared=True)) == "execute"
    assert phase_for(node("a")) == "execute"


_ids = st.text(alphabet="abcdefghij", min_size=1, max_size=6)


def _trees(max_leaves: int = 12) -> st.SearchStrategy[ActionNode]:
    leaf = st.builds(
        lambda node_id, done, prepared, truncated: ActionNode(
            id=node_id, done=done, prepared=prepared, has_children=truncated
        ),
        _ids,
        st.booleans(),
        st.sampled_from([None, True, False]),
        st.booleans(),
    )

    def extend(children: st.SearchStrategy[list[ActionNode]]) -> st.SearchStrategy[ActionNode]:
        return st.builds(
            lambda node_id, done, prepared, kids: ActionNode(
                id=node_id,
                done=done,
                prepared=prepared,
                has_children=True,
                children=tuple(kids),
            ),
            _ids,
            st.booleans(),
            st.sampled_from([None, True, False]),
            children,
        )

    return st.recursive(
        leaf,
        lambda inner: extend(st.lists(inner, min_size=1, max_size=4)),
        max_leaves=max_leaves,
    )


def _contains(tree: ActionNode, target: ActionNode) -> bool:
    if tree == target:
        return True
    return any(_contains(child, target) for child in tree.children)


@given(_trees())
def test_done_root_is_never_selected(tree: ActionNode) -> None:
    done_root = tree.model_copy(update={"done": True})

    assert select_next(done_root).is_empty


@given(_trees())
def test_blocked_root_is_never_selected(tree: ActionNode) -> None:
    blocked = tree.model_copy(update={"dependencies": (BLOCKER,)})

    assert select_next(blocked).is_empty


@given(_trees())
def test_selected_action_is_unfinished_node_of_tree(tree: ActionNode) -> None:
    result = select_next(tree)

    if result.action is not None:
        assert not result.action.done
        assert _contains(tree, result.action)
        assert result.truncated_at is None


@given(_trees())
def test_unprepared_parent_never_yields_descendant(tree: ActionNode) -> None:
    gated = tree.model_copy(update={"done": False, "prepared": False, "dependencies": ()})

    result = select_next(gated)

    if gated.children or gated.has_children:
        assert result.action == gated
