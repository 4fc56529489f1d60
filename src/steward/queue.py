"""Remote task-queue boundary: claim, release, and subtree fetches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from . import log
from .api import ApiClient, raise_for_status
from .errors import RemoteApiError
from .models import ActionNode, ActionPhase

CLAIM_PATH = "/api/worker/claim"
RELEASE_PATH = "/api/worker/release"
TREE_PATH = "/api/tree/{action_id}"


@dataclass(frozen=True)
class Claim:
    """An exclusive lease on one action, held by one worker."""

    action_id: str
    claim_id: str
    worker_id: str


@dataclass(frozen=True)
class ClaimGrant:
    """A claim together with the action it covers.

    ``phase`` and ``prompt`` are set when the queue decides them; otherwise
    the worker derives the phase from ``action.prepared``.
    """

    claim: Claim
    action: ActionNode
    phase: ActionPhase | None = None
    prompt: str | None = None


class TaskQueue(Protocol):
    def claim_next(self, worker_id: str) -> ClaimGrant | None: ...

    def release(self, claim: Claim) -> None: ...

    def fetch_subtree(self, root_id: str, max_depth: int) -> ActionNode: ...


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def _json(response: httpx.Response, *, context: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteApiError(response.status_code, f"{context}: invalid JSON body") from exc


def parse_grant(payload: Any, worker_id: str) -> ClaimGrant | None:
    """Build a ``ClaimGrant`` from a claim response body.

    Returns ``None`` when the body carries no claim.
    """
    data = _unwrap(payload)
    if not data:
        return None
    if not isinstance(data, dict):
        raise RemoteApiError(200, "claim response is not an object")
    action_data = data.get("action")
    claim_id = data.get("claim_id") or data.get("claimId")
    if not action_data or not claim_id:
        return None
    try:
        action = ActionNode.model_validate(action_data)
    except ValidationError as exc:
        raise RemoteApiError(200, f"malformed action in claim: {exc}") from exc
    phase = data.get("phase")
    if phase not in ("prepare", "execute"):
        phase = None
    prompt = data.get("prompt")
    return ClaimGrant(
        claim=Claim(action_id=action.id, claim_id=str(claim_id), worker_id=worker_id),
        action=action,
        phase=phase,
        prompt=prompt if isinstance(prompt, str) and prompt else None,
    )


def parse_tree(payload: Any, root_id: str) -> ActionNode:
    """Extract the root node from a tree response body."""
    data = _unwrap(payload)
    if isinstance(data, dict) and "rootActions" in data:
        roots = data.get("rootActions") or []
        data = roots[0] if roots else None
    if not isinstance(data, dict):
        raise RemoteApiError(200, f"no tree returned for {root_id}")
    try:
        return ActionNode.model_validate(data)
    except ValidationError as exc:
        raise RemoteApiError(200, f"malformed tree for {root_id}: {exc}") from exc


class HttpTaskQueue:
    """Task queue backed by the work-coordination HTTP API."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    def claim_next(self, worker_id: str) -> ClaimGrant | None:
        response = self._client.post(CLAIM_PATH, {"worker_id": worker_id})
        if response.status_code == 204:
            return None
        raise_for_status(response, context="claim")
        if not response.content:
            return None
        grant = parse_grant(_json(response, context="claim"), worker_id)
        if grant is not None:
            log.debug(f"claimed {grant.claim.action_id} ({grant.claim.claim_id})")
        return grant

    def release(self, claim: Claim) -> None:
        response = self._client.post(
            RELEASE_PATH,
            {
                "action_id": claim.action_id,
                "claim_id": claim.claim_id,
                "worker_id": claim.worker_id,
            },
        )
        raise_for_status(response, context="release")

    def fetch_subtree(self, root_id: str, max_depth: int) -> ActionNode:
        response = self._client.get(
            TREE_PATH.format(action_id=root_id),
            includeCompleted="false",
            maxDepth=max_depth,
        )
        raise_for_status(response, context="fetch tree")
        return parse_tree(_json(response, context="fetch tree"), root_id)
