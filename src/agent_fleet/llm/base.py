"""Base backend interface: one agent session against one repository."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from ..core.task import RepoTask, TokenUsage

T = TypeVar("T")

OutputObserver = Callable[[str], None]


class OperationCancelled(Exception):
    """Raised by CancellationToken.race when the token fires first."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Operation cancelled: {reason}")


class CancellationToken:
    """
    Cooperative cancellation shared by a run and its backend.

    Timeouts and explicit cancel requests both call cancel(); the first
    reason wins. Child tokens fire when their parent fires, so a per-run
    token can cancel per-attempt tokens without being consumed by an
    attempt's timeout.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: List["CancellationToken"] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelled: token fired; the awaitable has been cancelled
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self._reason or "cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise OperationCancelled(self._reason or "cancelled")


@dataclass
class BackendOutcome:
    """Result of one backend session."""
    output: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    exit_ok: bool = True
    exit_code: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def interrupted(self) -> bool:
        return self.timed_out or self.cancelled

    @classmethod
    def failure(cls, error: str, output: str = "") -> "BackendOutcome":
        return cls(output=output, exit_ok=False, error=error)


class AgentBackendRunner(ABC):
    """Runs exactly one agent session end-to-end against one repository."""

    name: str = "backend"

    @abstractmethod
    async def run(
        self,
        task: RepoTask,
        on_output: OutputObserver,
        token: CancellationToken,
    ) -> BackendOutcome:
        """
        Run the agent for ``task`` until it finishes, times out or is cancelled.

        Args:
            task: The task to work on; task.repo_path is the working directory.
            on_output: Called with each chunk of output as soon as it arrives.
            token: Cancelled on explicit cancel requests. Backends cancel it
                themselves when their wall-clock timeout expires.

        Environmental failures (missing executable, network, API errors) are
        reported through the returned outcome, not raised.
        """
        pass


def start_timeout(token: CancellationToken, seconds: float) -> asyncio.TimerHandle:
    """Arm a wall-clock timer that cancels ``token`` with reason "timeout"."""
    loop = asyncio.get_running_loop()
    return loop.call_later(seconds, token.cancel, "timeout")

