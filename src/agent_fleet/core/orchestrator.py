"""Orchestrator: schedules agent runs across repositories.

One call to run_all() is one batch:

1. reset the per-backend token totals
2. partition tasks into "run now" and "queue behind a busy repo"
3. drive admitted runs through a bounded pool (0 = unbounded)
4. settle each attempt by commit detection, retrying failures with backoff
5. when a run is terminal, release its repo and promote the next queued task
"""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional, Set

from ..llm.base import (
    AgentBackendRunner,
    BackendOutcome,
    CancellationToken,
    OperationCancelled,
)
from ..safeguards.retry_handler import RetryHandler
from .commit_detector import CommitDetector
from .config import FleetConfig
from .session_tracker import ActiveSession, QueuedTask, SessionTracker
from .task import AgentBackend, AgentRun, AgentStatus, RepoTask, TaskPriority, TokenUsage

logger = logging.getLogger(__name__)

UpdateListener = Callable[[List[AgentRun]], None]
TaskDoneListener = Callable[[AgentRun], None]


def _now() -> datetime:
    return datetime.now(UTC)


class TokenAccumulator:
    """Per-backend token totals for one batch. Only reset() lowers them."""

    def __init__(self):
        self._totals: Dict[AgentBackend, TokenUsage] = {}
        self.reset()

    def reset(self) -> None:
        self._totals = {backend: TokenUsage() for backend in AgentBackend}

    def add(self, backend: AgentBackend, usage: TokenUsage) -> None:
        self._totals[backend].add(usage)

    def get(self, backend: AgentBackend) -> TokenUsage:
        return self._totals[backend].model_copy()

    def totals(self) -> Dict[AgentBackend, TokenUsage]:
        return {backend: usage.model_copy() for backend, usage in self._totals.items()}


def pick_backend(task: RepoTask, mode: str) -> AgentBackend:
    """Select the backend for ``task`` under ``mode`` (auto | process_only | api_only)."""
    if mode == "process_only":
        return AgentBackend.PROCESS
    if mode == "api_only":
        return AgentBackend.API
    if mode == "auto":
        return AgentBackend.PROCESS if task.priority == TaskPriority.HIGH else AgentBackend.API
    raise ValueError(f"Unknown backend mode: {mode}")


def build_backends(config: FleetConfig) -> Dict[AgentBackend, AgentBackendRunner]:
    """Construct both backends from configuration."""
    from ..llm.claude_cli_backend import ClaudeCLIBackend
    # litellm is slow to import; only pay for it when a real orchestrator is built
    from ..llm.litellm_backend import LiteLLMBackend

    process_cfg = config.process_backend
    api_cfg = config.api_backend
    return {
        AgentBackend.PROCESS: ClaudeCLIBackend(
            executable=process_cfg.executable,
            allowed_tools=process_cfg.allowed_tools,
            timeout=process_cfg.timeout,
            kill_grace_period=process_cfg.kill_grace_period,
            logs_dir=config.logs_dir,
        ),
        AgentBackend.API: LiteLLMBackend(
            model=api_cfg.model,
            api_key=api_cfg.api_key,
            api_base=api_cfg.api_base,
            max_turns=api_cfg.max_turns,
            timeout=api_cfg.timeout,
            command_timeout=api_cfg.command_timeout,
            max_tokens=api_cfg.max_tokens,
            logs_dir=config.logs_dir,
        ),
    }


class _Batch:
    """Runs and driver tasks belonging to one run_all() call."""

    def __init__(self, semaphore: Optional[asyncio.Semaphore]):
        self.semaphore = semaphore
        self.runs: List[AgentRun] = []
        self.pending: Set[asyncio.Task] = set()
        self.tokens = TokenAccumulator()


class Orchestrator:
    """
    Runs RepoTasks through the process/API backends with one writer per repo.

    The SessionTracker is consulted synchronously while admitting a batch, so
    two tasks for the same repository are never both admitted. A repository
    stays claimed (and its ActiveSession registered) from admission until the
    run is terminal, retry backoff included.
    """

    def __init__(
        self,
        config: FleetConfig,
        tracker: SessionTracker,
        backends: Optional[Dict[AgentBackend, AgentBackendRunner]] = None,
        commit_detector: Optional[CommitDetector] = None,
        retry_handler: Optional[RetryHandler] = None,
        on_update: Optional[UpdateListener] = None,
        on_task_done: Optional[TaskDoneListener] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.tracker = tracker
        self.backends = backends if backends is not None else build_backends(config)
        self.commit_detector = commit_detector or CommitDetector()
        self.retry_handler = retry_handler or RetryHandler(
            base_delay_ms=config.agents.retry_base_delay_ms,
            max_retries=config.agents.max_retries,
        )
        self.on_update = on_update
        self.on_task_done = on_task_done
        self.tokens = TokenAccumulator()
        self._sleep = sleep

        # Repos admitted by this orchestrator and not yet released
        self._claimed: Set[str] = set()
        self._run_tokens: Dict[str, CancellationToken] = {}
        # Original RepoTasks of queued entries, keyed by (repo_path, task_id)
        self._pending_tasks: Dict[tuple, RepoTask] = {}

    # -- Public API -----------------------------------------------------------

    async def run_all(self, tasks: List[RepoTask]) -> List[AgentRun]:
        """Run a batch to completion and return every run admitted in it.

        Runs promoted from the queue while the batch is in flight are included.
        """
        limit = self.config.agents.max_concurrent
        batch = _Batch(asyncio.Semaphore(limit) if limit > 0 else None)
        # Totals of the most recently started batch
        self.tokens = batch.tokens

        for task in tasks:
            if self._is_busy(task.repo_path):
                self._defer(task)
            else:
                self._start(self._admit(task, batch), batch)

        logger.info(
            f"Batch started: {len(batch.runs)} running/pending, "
            f"{len(tasks) - len(batch.runs)} queued, "
            f"max_concurrent={limit or 'unlimited'}"
        )
        self._notify_update(batch)

        errors: List[BaseException] = []
        while batch.pending:
            done, _ = await asyncio.wait(batch.pending, return_when=asyncio.FIRST_COMPLETED)
            batch.pending -= done
            for finished in done:
                if not finished.cancelled() and finished.exception() is not None:
                    errors.append(finished.exception())

        self._notify_update(batch)
        if errors:
            raise errors[0]

        succeeded = sum(1 for run in batch.runs if run.status == AgentStatus.DONE)
        logger.info(f"Batch finished: {succeeded}/{len(batch.runs)} runs committed")
        return list(batch.runs)

    def cancel(self, repo_path: str) -> bool:
        """Cancel the run working on ``repo_path``. Returns False if there is none."""
        token = self._run_tokens.get(repo_path)
        if token is None or token.cancelled:
            return False
        logger.info(f"Cancelling run for {repo_path}")
        token.cancel("cancelled")
        return True

    def cancel_all(self) -> int:
        return sum(1 for repo_path in list(self._run_tokens) if self.cancel(repo_path))

    # -- Admission ------------------------------------------------------------

    def _is_busy(self, repo_path: str) -> bool:
        return repo_path in self._claimed or self.tracker.is_repo_active(repo_path)

    def _defer(self, task: RepoTask) -> None:
        self._pending_tasks[task.key] = task
        if self.tracker.enqueue(QueuedTask.for_task(task)):
            logger.info(
                f"Repo busy, queued [{task.task_id}] {task.task_title}",
                extra={"repo": task.repo_name, "task_id": task.task_id},
            )

    def _admit(self, task: RepoTask, batch: _Batch) -> AgentRun:
        run = AgentRun(
            task=task,
            backend=pick_backend(task, self.config.agents.backend_mode),
            max_retries=self.retry_handler.max_retries,
        )
        self._claimed.add(task.repo_path)
        self._run_tokens[task.repo_path] = CancellationToken()
        batch.runs.append(run)
        return run

    def _start(self, run: AgentRun, batch: _Batch) -> None:
        batch.pending.add(asyncio.create_task(self._drive(run, batch)))

    def _promote(self, queued: QueuedTask, batch: _Batch) -> None:
        key = (queued.repo_path, queued.task_id)
        task = self._pending_tasks.pop(key, None)
        if task is None:
            # Restored from persisted state; only identity fields survive
            task = RepoTask(
                repo_path=queued.repo_path,
                repo_name=queued.repo_name,
                task_id=queued.task_id,
                task_title=queued.task_title,
                priority=TaskPriority.MEDIUM,
                phase="queued",
            )
        self._start(self._admit(task, batch), batch)
        self._notify_update(batch)

    # -- Run lifecycle --------------------------------------------------------

    async def _drive(self, run: AgentRun, batch: _Batch) -> None:
        """Attempt ``run`` until it commits, is cancelled or exhausts its retries."""
        task = run.task
        log_extra = {"repo": task.repo_name, "task_id": task.task_id}
        token = self._run_tokens[task.repo_path]
        try:
            while True:
                await self._attempt(run, batch, token)
                if run.status == AgentStatus.DONE:
                    break
                if not self.retry_handler.should_retry(run, cancelled=token.cancelled):
                    break

                delay = self.retry_handler.calculate_backoff(run.retry_count)
                run.status = AgentStatus.QUEUED
                logger.warning(
                    f"Run failed ({run.error}); retry {run.retry_count + 1}/{run.max_retries} "
                    f"in {delay:.0f}s",
                    extra=log_extra,
                )
                self._notify_update(batch)
                try:
                    await token.race(self._sleep(delay))
                except OperationCancelled:
                    run.status = AgentStatus.FAILED
                    run.error = "Cancelled during retry backoff"
                    break
                run.retry_count += 1
        finally:
            if run.finished_at is None:
                run.finished_at = _now()
            if not run.is_terminal:
                run.status = AgentStatus.FAILED
            self._release(run, batch)

    async def _attempt(self, run: AgentRun, batch: _Batch, run_token: CancellationToken) -> None:
        """One queued -> running -> done|failed cycle inside a pool slot."""
        task = run.task
        log_extra = {"repo": task.repo_name, "task_id": task.task_id}
        slot = batch.semaphore if batch.semaphore is not None else contextlib.nullcontext()

        async with slot:
            if run_token.cancelled:
                run.status = AgentStatus.FAILED
                run.error = "Cancelled before start"
                run.finished_at = _now()
                return

            run.status = AgentStatus.RUNNING
            if run.started_at is None:
                run.started_at = _now()
            run.finished_at = None
            self.tracker.register_session(ActiveSession.for_task(task, run.backend))
            self._notify_update(batch)
            logger.info(
                f"Starting {run.backend.value} run: {task.task_title}"
                + (f" (retry {run.retry_count})" if run.retry_count else ""),
                extra=log_extra,
            )

            if run.retry_count:
                run.output += f"\n--- Retry {run.retry_count}/{run.max_retries} ---\n"
            base_output = run.output

            def on_output(chunk: str) -> None:
                run.output += chunk
                self._notify_update(batch)

            before = await self.commit_detector.capture_head(task.repo_path)
            outcome = await self._invoke(run, on_output, run_token.child())

            run.tokens.add(outcome.usage)
            batch.tokens.add(run.backend, outcome.usage)
            run.output = base_output + outcome.output

            if outcome.interrupted:
                committed = False
            else:
                committed = await self.commit_detector.detect(
                    task.repo_path, before, outcome.output
                )

            run.committed = committed
            run.status = AgentStatus.DONE if committed else AgentStatus.FAILED
            if committed:
                run.error = None
            else:
                run.error = outcome.error or "No commit detected"
            run.finished_at = _now()

        logger.info(
            f"Run {run.status.value}: committed={run.committed}, "
            f"tokens={outcome.usage.total_tokens}"
            + (f", error={run.error}" if run.error else ""),
            extra=log_extra,
        )
        self._notify_update(batch)

    async def _invoke(
        self,
        run: AgentRun,
        on_output: Callable[[str], None],
        token: CancellationToken,
    ) -> BackendOutcome:
        backend = self.backends[run.backend]
        try:
            return await backend.run(run.task, on_output, token)
        except Exception as e:
            logger.exception(
                f"{backend.name} backend raised: {e}",
                extra={"repo": run.task.repo_name, "task_id": run.task.task_id},
            )
            return BackendOutcome.failure(f"{backend.name} backend error: {e}")

    def _release(self, run: AgentRun, batch: _Batch) -> None:
        """Free the repo, report the run, then promote at most one queued task."""
        repo_path = run.task.repo_path
        self._claimed.discard(repo_path)
        self._run_tokens.pop(repo_path, None)
        self.tracker.deregister_session(repo_path)

        if run.status == AgentStatus.DONE and self.on_task_done is not None:
            try:
                self.on_task_done(run)
            except Exception as e:
                logger.warning(f"on_task_done listener failed: {e}")
        self._notify_update(batch)

        self.tracker.drain_queue(repo_path, lambda queued: self._promote(queued, batch))

    def _notify_update(self, batch: _Batch) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(list(batch.runs))
        except Exception as e:
            logger.warning(f"on_update listener failed: {e}")
