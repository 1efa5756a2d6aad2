"""
Approval system for Agentic Workspace.

An ``ApprovalGate`` holds one future per pending ``ApprovalRequest``;
the orchestrator suspends on it and any thread may resolve it. An
``Approver`` is notified of each new request and decides how a human
(or nobody) answers it: on the console, automatically, or through an
external UI that calls ``Orchestrator.resolve_approval``.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .errors import ApprovalTimeout
from .safety import RiskLevel
from .types import ApprovalRequest, ApprovalResolution

logger = logging.getLogger("agentic_workspace.approval")


class ApprovalGate:
    """Pending approval requests, each backed by an asyncio future."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.AbstractEventLoop, asyncio.Future]] = {}

    def open(self, request: ApprovalRequest) -> asyncio.Future:
        """Register a request on the running loop and return its future."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            self._pending[request.id] = (request, loop, future)
        logger.debug("Opened approval request %s for step %s", request.id, request.step_id)
        return future

    async def wait(self, request: ApprovalRequest, future: asyncio.Future, timeout: float) -> bool:
        """Suspend until the request is resolved.

        Returns:
            True if approved, False if rejected

        Raises:
            ApprovalTimeout: If nobody answered within ``timeout`` seconds
        """
        try:
            approved = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            request.resolution = ApprovalResolution.TIMED_OUT
            raise ApprovalTimeout(request.id, timeout) from None
        finally:
            with self._lock:
                self._pending.pop(request.id, None)
        return approved

    def resolve(self, request_id: str, approved: bool, reason: str = "") -> bool:
        """Resolve a pending request from any thread.

        Returns:
            False if the request is unknown or already resolved
        """
        with self._lock:
            entry = self._pending.get(request_id)
        if entry is None:
            logger.warning("Approval request %s is not pending", request_id)
            return False
        request, loop, future = entry
        if request.resolution != ApprovalResolution.PENDING:
            return False
        request.resolution = ApprovalResolution.APPROVED if approved else ApprovalResolution.REJECTED
        request.reason = reason

        def _set() -> None:
            if not future.done():
                future.set_result(approved)

        loop.call_soon_threadsafe(_set)
        logger.info("Approval request %s %s", request_id, request.resolution.value)
        return True

    def pending(self, workspace_id: Optional[str] = None) -> list[ApprovalRequest]:
        with self._lock:
            requests = [entry[0] for entry in self._pending.values()]
        if workspace_id is not None:
            requests = [r for r in requests if r.workspace_id == workspace_id]
        return sorted(requests, key=lambda r: (r.created_at, r.id))


class Approver(ABC):
    """Abstract base class for approval handlers."""

    @abstractmethod
    def notify(self, request: ApprovalRequest, gate: ApprovalGate) -> None:
        """Called once when a request is opened.

        Implementations resolve the request through ``gate.resolve``,
        now or later, or leave it to someone else.
        """


class NullApprover(Approver):
    """Leaves requests for an external UI to resolve."""

    def notify(self, request: ApprovalRequest, gate: ApprovalGate) -> None:
        logger.info(
            "Approval needed for step %s (risk %d): %s",
            request.step_id, request.required_level, request.description,
        )


class AutoApprover(Approver):
    """Automatically approve all actions.

    Used when auto-approve mode is enabled, and in tests.
    """

    def notify(self, request: ApprovalRequest, gate: ApprovalGate) -> None:
        gate.resolve(request.id, True, "auto-approved")


class ConsoleApprover(Approver):
    """CLI approval via Rich prompts.

    The prompt runs on a worker thread so the event loop (and other
    workspaces' tasks) keep running while the user decides.
    """

    RISK_COLORS = {
        RiskLevel.MINIMAL: "green",
        RiskLevel.LOW: "green",
        RiskLevel.MEDIUM: "yellow",
        RiskLevel.HIGH: "red",
        RiskLevel.CRITICAL: "bold red",
    }

    def __init__(self, console=None):
        from rich.console import Console

        self.console = console or Console()
        self._prompt_lock = threading.Lock()

    def notify(self, request: ApprovalRequest, gate: ApprovalGate) -> None:
        thread = threading.Thread(
            target=self._ask,
            args=(request, gate),
            name=f"approval_{request.id}",
            daemon=True,
        )
        thread.start()

    def _ask(self, request: ApprovalRequest, gate: ApprovalGate) -> None:
        from rich.prompt import Confirm, Prompt

        risk = RiskLevel(request.required_level)
        color = self.RISK_COLORS[risk]
        with self._prompt_lock:
            self.console.print()
            self.console.print(f"[bold]Action:[/bold] {request.action.get('type', '?')}")
            self.console.print(f"[bold]Arguments:[/bold] {request.action.get('args', {})}")
            self.console.print(f"[bold]Risk:[/bold] [{color}]{risk.name.lower()} ({int(risk)})[/{color}]")
            self.console.print(f"[bold]Step:[/bold] {request.description}")
            self.console.print()

            approved = Confirm.ask("[yellow]Approve action?[/yellow]", default=False)
            reason = ""
            if not approved:
                reason = Prompt.ask(
                    "[yellow]Action denied. Provide guidance for the planner (or press Enter)[/yellow]",
                    default="",
                )
        gate.resolve(request.id, approved, reason)


def get_approver(mode: str = "cli", auto_approve: bool = False, console=None) -> Approver:
    """Get the appropriate approver for the given mode.

    Args:
        mode: "cli", "auto" or "external"
        auto_approve: If True, always return AutoApprover
        console: Rich console for the CLI approver
    """
    if auto_approve or mode == "auto":
        return AutoApprover()
    if mode == "external":
        return NullApprover()
    return ConsoleApprover(console)
