"""Worker loop orchestration: claim, provision, execute, release."""

from __future__ import annotations

import os
import signal
from collections.abc import Callable
from types import FrameType

from .. import log
from ..api import ApiClient
from ..cache import PersistentWorkspaceCache
from ..cleanup import CleanupScheduler
from ..credentials import (
    ENV_GIT_TOKEN,
    CredentialProvider,
    EnvCredentialProvider,
    HttpCredentialProvider,
)
from ..errors import ConfigurationError, ExecutionError, is_fatal
from ..models import ActionNode, PollingConfig, WorkerConfig
from ..queue import Claim, ClaimGrant, HttpTaskQueue, TaskQueue
from ..retry import with_persistent_retry, with_retry
from ..runners import (
    GIT_OPERATIONS,
    ExecutionCapability,
    ExecutionRequest,
    create_runner,
    require_capabilities,
)
from ..selection import phase_for, resolve_next_action
from ..strategy import WorkspaceProvider
from .models import CycleOutcome, WorkerCounters, WorkerPhase, WorkerState
from .prompts import build_prompt

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class AdaptivePoller:
    """Empty-queue backoff: grows by ``multiplier`` up to ``max_interval``.

    Example:
        >>> poller = AdaptivePoller(PollingConfig(initial_interval=1, max_interval=3))
        >>> [poller.next_delay() for _ in range(4)]
        [1.0, 2.0, 3.0, 3.0]
    """

    def __init__(self, config: PollingConfig) -> None:
        self._config = config
        self._current = float(config.initial_interval)

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(delay * self._config.multiplier, self._config.max_interval)
        return delay

    def reset(self) -> None:
        self._current = float(self._config.initial_interval)


def install_signal_handlers(
    state: WorkerState, signals: tuple[signal.Signals, ...] = STOP_SIGNALS
) -> Callable[[], None]:
    """Route stop signals into ``state``; return a function restoring the old handlers."""

    def handle(signum: int, _frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if state.stop_requested:
            log.warning(f"received {name} again; still finishing the current phase")
        else:
            log.warning(f"received {name}; finishing current work before shutting down")
        state.request_stop(signum)

    previous = {sig: signal.signal(sig, handle) for sig in signals}

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return restore


class WorkerLoop:
    """Single-claim worker state machine.

    At most one claim, one workspace, and one execution are in flight. A
    failing claim is logged, counted, and released; only authentication and
    configuration errors stop the loop.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        queue: TaskQueue,
        credentials: CredentialProvider,
        runner: ExecutionCapability,
        provider: WorkspaceProvider | None = None,
        scheduler: CleanupScheduler | None = None,
        state: WorkerState | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config
        self.state = state or WorkerState()
        self.counters = WorkerCounters()
        self._queue = queue
        self._credentials = credentials
        self._runner = runner
        self._provider = provider or WorkspaceProvider(config.workspace)
        self._scheduler = scheduler
        self._sleep = sleep
        self._poller = AdaptivePoller(config.polling)

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
            return
        self.state.wait(seconds)

    def run(self) -> WorkerCounters:
        """Loop until stopped, ``max_cycles`` is reached, or a fatal error."""
        log.info(f"Worker {self.config.worker_id} starting")
        if self._scheduler is not None:
            self._scheduler.start()
        cycles = 0
        max_cycles = self.config.max_cycles
        try:
            while not self.state.stop_requested:
                cycles += 1
                try:
                    outcome = self.run_once()
                except Exception as exc:
                    if is_fatal(exc) or self.config.stop_on_error:
                        raise
                    self.counters.errors += 1
                    log.error(f"claim cycle failed: {exc}")
                    outcome = CycleOutcome("failed", error=str(exc))
                if max_cycles is not None and cycles >= max_cycles:
                    break
                if outcome.reason in ("no_work", "failed"):
                    delay = self._poller.next_delay()
                    log.debug(f"idle; polling again in {delay:.1f}s")
                    self._wait(delay)
                else:
                    self._poller.reset()
        finally:
            if self._scheduler is not None:
                self._scheduler.stop()
            self.state.phase = WorkerPhase.SHUT_DOWN
            log.info(f"Worker stopped: {self.counters.snapshot()}")
        return self.counters

    def run_once(self) -> CycleOutcome:
        """Claim at most one action and carry it through release."""
        self.state.phase = WorkerPhase.CLAIMING
        grant = with_persistent_retry(
            lambda: self._queue.claim_next(self.config.worker_id),
            self.config.claim_retry,
            sleep=self._wait,
            should_stop=lambda: self.state.stop_requested,
            description="claim",
        )
        if grant is None:
            self.state.phase = WorkerPhase.NO_WORK
            self.counters.empty_polls += 1
            return CycleOutcome("no_work")

        claim = grant.claim
        self.counters.claims += 1
        self.state.current_claim = claim
        self.state.phase = WorkerPhase.CLAIMED
        log.info(f"Claimed {claim.action_id} (claim {claim.claim_id})")
        try:
            with log.context(claim.action_id):
                return self._process(grant)
        except Exception as exc:
            if is_fatal(exc) or self.config.stop_on_error:
                raise
            self.counters.errors += 1
            log.error(f"action {claim.action_id} failed: {exc}")
            return CycleOutcome("failed", action_id=claim.action_id, error=str(exc))
        finally:
            self._release(claim)
            self.state.current_claim = None
            self._trigger_cleanup()
            self.state.phase = WorkerPhase.IDLE

    def _process(self, grant: ClaimGrant) -> CycleOutcome:
        claim = grant.claim
        if self.state.stop_requested:
            log.info("stop requested; releasing claim without starting work")
            return CycleOutcome("released_on_shutdown", action_id=claim.action_id)

        action = grant.action
        if self.config.tree.enabled:
            resolved = self._resolve_action(grant.action)
            if resolved is None:
                log.info(f"nothing actionable under {claim.action_id}")
                return CycleOutcome("no_actionable_node", action_id=claim.action_id)
            action = resolved
        phase = grant.phase if grant.phase and action.id == grant.action.id else phase_for(action)

        if self.state.stop_requested:
            log.info("stop requested; releasing claim without starting work")
            return CycleOutcome("released_on_shutdown", action_id=action.id, phase=phase)

        self.state.phase = WorkerPhase.PROVISIONING
        repos = action.repo_specs()
        if repos:
            require_capabilities(self._runner, (GIT_OPERATIONS,), context=f"action {action.id}")
        credentials = self._credentials.get_credentials() if repos else None
        options = self._provider.options(branch=action.effective_branch, credentials=credentials)
        workspace = self._provider.acquire(repos, options)
        try:
            self.state.phase = WorkerPhase.EXECUTING
            prompt = build_prompt(action, phase, workspace, remote_prompt=grant.prompt)
            log.info(f"Spawning {self._runner.provider} to {phase} {action.id}")
            result = self._runner.execute(
                ExecutionRequest(
                    prompt=prompt,
                    working_directory=workspace.path,
                    credentials=credentials,
                    action_id=action.id,
                )
            )
            if result.exit_code != 0:
                raise ExecutionError(self._runner.provider, result.exit_code)
        finally:
            workspace.cleanup()
        self.counters.phases_completed += 1
        log.success(f"{phase.capitalize()} of {action.id} complete")
        return CycleOutcome("completed", action_id=action.id, phase=phase, exit_code=0)

    def _resolve_action(self, root: ActionNode) -> ActionNode | None:
        tree = self.config.tree

        def fetch(node_id: str, depth: int) -> ActionNode:
            return with_retry(
                lambda: self._queue.fetch_subtree(node_id, depth),
                self.config.retry,
                sleep=self._wait,
                description=f"fetch subtree {node_id}",
            )

        return resolve_next_action(
            root,
            fetch,
            fetch_depth=tree.fetch_depth,
            max_refetches=tree.max_refetches,
        )

    def _release(self, claim: Claim) -> None:
        self.state.phase = WorkerPhase.RELEASING
        try:
            with_retry(
                lambda: self._queue.release(claim),
                self.config.retry,
                sleep=self._wait,
                description="release claim",
            )
        except Exception as exc:
            self.counters.release_failures += 1
            log.warning(f"Failed to release claim {claim.claim_id}: {exc}")
            return
        log.debug(f"Released claim {claim.claim_id}")

    def _trigger_cleanup(self) -> None:
        if self._scheduler is not None:
            self._scheduler.trigger()


def build_worker_loop(
    config: WorkerConfig, *, state: WorkerState | None = None
) -> tuple[WorkerLoop, ApiClient]:
    """Wire the HTTP queue, credentials, runner, cache and scheduler.

    Raises:
        ConfigurationError: When the queue URL or token is missing.
    """
    queue_config = config.queue
    if not queue_config.base_url:
        raise ConfigurationError("queue.base_url is not configured (set STEWARD_API_URL)")
    if queue_config.token is None:
        raise ConfigurationError("queue.token is not configured (set STEWARD_API_TOKEN)")
    client = ApiClient(
        queue_config.base_url,
        queue_config.token.get_secret_value(),
        timeout=queue_config.timeout,
    )
    credentials: CredentialProvider
    if os.environ.get(ENV_GIT_TOKEN, "").strip():
        credentials = EnvCredentialProvider()
    else:
        credentials = HttpCredentialProvider(client)

    cache: PersistentWorkspaceCache | None = None
    scheduler: CleanupScheduler | None = None
    if config.workspace.strategy != "ephemeral":
        cache = PersistentWorkspaceCache(config.cache, git_path=config.workspace.git_path)
        scheduler = CleanupScheduler(cache, config.cleanup)

    loop = WorkerLoop(
        config,
        queue=HttpTaskQueue(client),
        credentials=credentials,
        runner=create_runner(config.runner),
        provider=WorkspaceProvider(config.workspace, cache=cache),
        scheduler=scheduler,
        state=state,
    )
    return loop, client
