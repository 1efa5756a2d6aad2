"""
Planner/Navigator orchestration for Agentic Workspace.

Provides the task loop that plans from assembled context, gates risky
steps on human approval, executes steps in the browser and writes every
outcome back to episodic memory.

One task may be active per workspace. Tasks in different workspaces run
concurrently on the same event loop; each one suspends only at LLM
calls, approval waits and browser actions.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .approval import ApprovalGate, Approver, NullApprover
from .config import OrchestratorConfig
from .context import ContextAssembler
from .errors import (
    AgentWorkspaceError,
    ApprovalTimeout,
    AutomationError,
    CapabilityUnavailable,
    ValidationError,
    WorkspaceBusy,
    describe_error,
)
from .executor import ActionExecutor
from .logger import RunLogger
from .memory import MemoryStore
from .planner import Planner
from .types import (
    ApprovalRequest,
    EpisodicRecord,
    Observation,
    Outcome,
    Plan,
    Step,
    StepStatus,
    TaskResult,
    TaskState,
    Termination,
    TerminationStatus,
    Workspace,
    new_id,
)
from .utils import normalize_goal, redact_secrets, truncate_text
from .workspace import WorkspaceManager

logger = logging.getLogger("agentic_workspace.orchestrator")


RunLoggerFactory = Callable[[str, str], RunLogger]


@dataclass
class _TaskRun:
    """Mutable state of one task while it runs."""
    task_id: str
    workspace_id: str
    goal: str
    goal_signature: str
    states: list[TaskState] = field(default_factory=list)
    feedback: list[str] = field(default_factory=list)
    open_plan: Optional[Plan] = None
    steps_executed: int = 0
    replans: int = 0
    cancelled: bool = False
    log: Optional[RunLogger] = None


class TaskHandle:
    """A task started with ``Orchestrator.start``.

    Await the handle (or ``result()``) for the ``TaskResult``; ``cancel()``
    stops the task at its next suspension point.
    """

    def __init__(self, task_id: str, workspace_id: str, goal: str, task: asyncio.Task):
        self.task_id = task_id
        self.workspace_id = workspace_id
        self.goal = goal
        self._task = task

    def cancel(self) -> bool:
        return self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> TaskResult:
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
            # Cancelled before the loop got to run
            return TaskResult(
                task_id=self.task_id,
                workspace_id=self.workspace_id,
                goal=self.goal,
                termination=Termination(TerminationStatus.CANCELLED, "Cancelled before the task started"),
                states=[TaskState.TERMINATED],
            )

    def __await__(self):
        return self.result().__await__()


class Orchestrator:
    """Runs goals in workspaces.

    Args:
        workspaces: Workspace manager (autonomy, approval timeout, trust)
        memory: Memory store receiving one episodic record per action
        assembler: Context assembler consulted before every plan
        llm: LLM capability used by the default planner
        executor: Browser action executor
        config: Retry, replan and timeout settings
        approval_gate: Gate holding pending approvals (a new one by default)
        approver: Notified of each approval request; ``NullApprover`` by
            default, which leaves resolution to ``resolve_approval``
        run_logger_factory: Builds a ``RunLogger`` per task; when None a
            logger is created only if ``config.enable_run_log`` is set
        planner: Planner override (tests)
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        memory: MemoryStore,
        assembler: ContextAssembler,
        llm,
        executor: ActionExecutor,
        config: Optional[OrchestratorConfig] = None,
        approval_gate: Optional[ApprovalGate] = None,
        approver: Optional[Approver] = None,
        run_logger_factory: Optional[RunLoggerFactory] = None,
        planner: Optional[Planner] = None,
    ):
        self.workspaces = workspaces
        self.memory = memory
        self.assembler = assembler
        self.llm = llm
        self.executor = executor
        self.config = config or OrchestratorConfig()
        self.gate = approval_gate or ApprovalGate()
        self.approver = approver or NullApprover()
        self.planner = planner or Planner(llm, timeout=self.config.llm_timeout)

        if run_logger_factory is None and self.config.enable_run_log:
            console = self.config.console_output

            def run_logger_factory(workspace_id: str, goal: str) -> RunLogger:
                return RunLogger(workspace_id, goal, enable_console=console)

        self.run_logger_factory = run_logger_factory

        self._active_lock = threading.Lock()
        self._active: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, workspace_id: str, goal: str) -> TaskResult:
        """Run ``goal`` in a workspace to completion.

        Task-level failures end in a ``TaskResult`` with a reason; only
        caller errors raise.

        Raises:
            WorkspaceNotFound: If the workspace does not exist
            WorkspaceBusy: If the workspace already has an active task
        """
        self.workspaces.get(workspace_id)
        task_id = new_id("task")
        self._acquire(workspace_id, task_id)
        try:
            return await self._run_task(task_id, workspace_id, goal)
        finally:
            self._release(workspace_id, task_id)

    def start(self, workspace_id: str, goal: str) -> TaskHandle:
        """Schedule ``goal`` on the running loop and return its handle.

        Raises:
            WorkspaceNotFound: If the workspace does not exist
            WorkspaceBusy: If the workspace already has an active task
        """
        self.workspaces.get(workspace_id)
        task_id = new_id("task")
        self._acquire(workspace_id, task_id)
        task = asyncio.get_running_loop().create_task(
            self._run_task(task_id, workspace_id, goal),
            name=task_id,
        )
        task.add_done_callback(lambda _: self._release(workspace_id, task_id))
        return TaskHandle(task_id, workspace_id, goal, task)

    def resolve_approval(self, request_id: str, approved: bool, reason: str = "") -> bool:
        """Approve or reject a pending step; safe to call from any thread."""
        return self.gate.resolve(request_id, approved, reason)

    def pending_approvals(self, workspace_id: Optional[str] = None) -> list[ApprovalRequest]:
        return self.gate.pending(workspace_id)

    def active_task(self, workspace_id: str) -> Optional[str]:
        with self._active_lock:
            return self._active.get(workspace_id)

    def _acquire(self, workspace_id: str, task_id: str) -> None:
        with self._active_lock:
            current = self._active.get(workspace_id)
            if current is not None:
                raise WorkspaceBusy(workspace_id, current)
            self._active[workspace_id] = task_id

    def _release(self, workspace_id: str, task_id: str) -> None:
        with self._active_lock:
            if self._active.get(workspace_id) == task_id:
                del self._active[workspace_id]

    # ------------------------------------------------------------------
    # Task loop
    # ------------------------------------------------------------------

    def _transition(self, run: _TaskRun, state: TaskState) -> None:
        run.states.append(state)
        logger.debug("Task %s -> %s", run.task_id, state.value)

    async def _run_task(self, task_id: str, workspace_id: str, goal: str) -> TaskResult:
        run = _TaskRun(
            task_id=task_id,
            workspace_id=workspace_id,
            goal=goal,
            goal_signature=normalize_goal(goal),
        )
        if self.run_logger_factory is not None:
            run.log = self.run_logger_factory(workspace_id, goal)
            run.log.print_header()

        self._transition(run, TaskState.IDLE)
        logger.info("Task %s started in %s: %s", task_id, workspace_id, truncate_text(goal, 80))

        try:
            termination = await self._drive(run)
        except asyncio.CancelledError:
            termination = Termination(TerminationStatus.CANCELLED, "Cancelled by user")
            await self._abort_plan(run, "cancelled", termination.reason)
        except ApprovalTimeout as e:
            termination = Termination(TerminationStatus.CANCELLED, describe_error(e))
            await self._abort_plan(run, "cancelled", termination.reason)
        except AgentWorkspaceError as e:
            self._transition(run, TaskState.FAILED)
            termination = Termination(TerminationStatus.FAILURE, describe_error(e))
            await self._abort_plan(run, "abandon", termination.reason)
        except Exception as e:
            logger.exception("Task %s crashed", task_id)
            self._transition(run, TaskState.FAILED)
            termination = Termination(TerminationStatus.FAILURE, describe_error(e))
            await self._abort_plan(run, "abandon", termination.reason)

        self._transition(run, TaskState.TERMINATED)
        result = TaskResult(
            task_id=task_id,
            workspace_id=workspace_id,
            goal=goal,
            termination=termination,
            steps_executed=run.steps_executed,
            replans=run.replans,
            states=run.states,
        )
        await asyncio.to_thread(self._finish, run, result)
        return result

    async def _drive(self, run: _TaskRun) -> Termination:
        while True:
            self._transition(run, TaskState.PLANNING)
            plan = await self._plan(run)
            run.open_plan = plan
            if run.log:
                run.log.log_plan(plan)
                run.log.print_plan(plan, run.replans)

            feedback = await self._execute_plan(run, plan)
            if feedback is None:
                await self._close_plan(
                    run, "done", Outcome.SUCCESS, f"Completed all {len(plan.steps)} steps",
                )
                self._transition(run, TaskState.DONE)
                return Termination(
                    TerminationStatus.SUCCESS,
                    f"Goal completed after {run.steps_executed} actions",
                )

            run.feedback.append(feedback)
            if run.replans >= self.config.max_replans:
                self._transition(run, TaskState.FAILED)
                return Termination(
                    TerminationStatus.FAILURE,
                    f"Gave up after {run.replans} replans. Last problem: {feedback}",
                )
            run.replans += 1
            logger.info("Task %s replanning (%d/%d): %s", run.task_id, run.replans, self.config.max_replans, feedback)

    async def _plan(self, run: _TaskRun) -> Plan:
        """Assemble context and ask the planner, retrying bad output.

        Raises:
            ValidationError, CapabilityUnavailable: After the last attempt
            BudgetExceeded: If pinned context no longer fits
        """
        pack = await asyncio.to_thread(self.assembler.assemble, run.workspace_id, run.goal)
        context = self.assembler.render(pack)
        page = await self._observe()

        attempts = max(1, self.config.max_planning_attempts)
        last_error: Optional[AgentWorkspaceError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.planner.plan(run.goal, context, run.feedback, page)
            except (ValidationError, CapabilityUnavailable) as e:
                last_error = e
                logger.warning("Planning attempt %d/%d failed: %s", attempt, attempts, e)
        raise last_error

    async def _execute_plan(self, run: _TaskRun, plan: Plan) -> Optional[str]:
        """Run every step of ``plan``.

        Returns:
            None if all steps succeeded, otherwise feedback for the next plan
        """
        for step in plan.steps:
            workspace = await asyncio.to_thread(self.workspaces.get, run.workspace_id)
            needs_approval = step.risk_level > workspace.autonomy_level
            if run.log:
                run.log.print_step(step, needs_approval)

            if needs_approval:
                self._transition(run, TaskState.AWAITING_APPROVAL)
                approved, reason = await self._request_approval(run, workspace, step)
                if not approved:
                    step.status = StepStatus.REJECTED
                    message = f"User rejected step '{step.description}'"
                    if reason:
                        message += f": {reason}"
                    await self._close_plan(run, "cancelled", Outcome.FAILURE, message)
                    return message + ". Choose a different approach."
                step.status = StepStatus.APPROVED

            error = await self._run_step(run, step)
            if error is not None:
                step.status = StepStatus.FAILED
                message = f"Step '{step.description}' failed: {error}"
                await self._close_plan(run, "abandon", Outcome.FAILURE, message)
                return message
        return None

    async def _request_approval(self, run: _TaskRun, workspace: Workspace, step: Step) -> tuple[bool, str]:
        request = ApprovalRequest(
            workspace_id=run.workspace_id,
            step_id=step.id,
            required_level=step.risk_level,
            description=step.description,
            action=redact_secrets(step.to_action()),
        )
        step.status = StepStatus.AWAITING_APPROVAL
        future = self.gate.open(request)
        self.approver.notify(request, self.gate)
        try:
            approved = await self.gate.wait(request, future, workspace.approval_timeout)
        except ApprovalTimeout:
            step.status = StepStatus.SKIPPED
            if run.log:
                run.log.log_event("approval", **request.to_dict())
            raise
        if run.log:
            run.log.log_event("approval", **request.to_dict())
        return approved, request.reason

    async def _run_step(self, run: _TaskRun, step: Step) -> Optional[str]:
        """Execute a step with retries.

        Returns:
            None on success, otherwise the last error message
        """
        last_error = ""
        for attempt in range(self.config.max_step_retries + 1):
            if attempt > 0:
                delay = self.config.retry_backoff * (2 ** (attempt - 1))
                logger.info("Retrying %s in %.2fs (attempt %d)", step.action, delay, attempt + 1)
                await asyncio.sleep(delay)
                await self._observe()

            self._transition(run, TaskState.EXECUTING)
            step.status = StepStatus.EXECUTING
            action = asyncio.ensure_future(self._bounded_execute(step))
            try:
                observation, error = await asyncio.shield(action)
            except asyncio.CancelledError:
                # The in-flight action finishes and is recorded before stopping
                run.cancelled = True
                observation, error = await action

            self._transition(run, TaskState.OBSERVING)
            run.steps_executed += 1
            await self._record_step(run, step, observation, error, attempt)
            if run.cancelled:
                raise asyncio.CancelledError()

            if error is None:
                step.status = StepStatus.SUCCEEDED
                return None
            last_error = str(error)
            if error.precondition_failed:
                logger.info("Page drifted during %s, replanning: %s", step.action, error)
                break
        return last_error

    async def _bounded_execute(self, step: Step) -> tuple[Optional[Observation], Optional[AutomationError]]:
        try:
            observation = await asyncio.wait_for(
                self.executor.execute(step), timeout=self.config.action_timeout,
            )
        except asyncio.TimeoutError:
            return None, AutomationError(f"Action timed out after {self.config.action_timeout:g}s")
        except AutomationError as e:
            return None, e
        except Exception as e:
            logger.exception("Executor raised while running %s", step.action)
            return None, AutomationError(f"{type(e).__name__}: {e}")
        if not observation.success:
            return observation, AutomationError(observation.message or f"{step.action} did not succeed")
        return observation, None

    async def _observe(self) -> dict:
        try:
            return await self.executor.observe()
        except AutomationError as e:
            logger.debug("Could not observe page: %s", e)
            return {}
        except Exception as e:
            logger.warning("Executor raised while observing: %s: %s", type(e).__name__, e)
            return {}

    # ------------------------------------------------------------------
    # Episodic write-back
    # ------------------------------------------------------------------

    async def _append(self, run: _TaskRun, action: dict, observation: str, outcome: Outcome) -> EpisodicRecord:
        record = EpisodicRecord(
            workspace_id=run.workspace_id,
            action=action,
            observation=observation,
            outcome=outcome,
            plan_id=run.open_plan.id if run.open_plan else "",
            goal=run.goal,
            goal_signature=run.goal_signature,
        )
        return await asyncio.to_thread(self.memory.append_episodic, run.workspace_id, record)

    async def _record_step(
        self,
        run: _TaskRun,
        step: Step,
        observation: Optional[Observation],
        error: Optional[AutomationError],
        attempt: int,
    ) -> None:
        if error is None:
            text, outcome = observation.message, Outcome.SUCCESS
        else:
            text, outcome = str(error), Outcome.FAILURE
        await self._append(run, redact_secrets(step.to_action()), text, outcome)
        if run.log:
            run.log.log_step(step, observation, None if error is None else str(error), attempt)
            run.log.print_result(error is None, text)

    async def _close_plan(self, run: _TaskRun, terminal: str, outcome: Outcome, reason: str) -> None:
        """Append the terminal record of the open plan."""
        if run.open_plan is None:
            return
        await self._append(run, {"type": terminal, "args": {}}, reason, outcome)
        run.open_plan = None

    async def _abort_plan(self, run: _TaskRun, terminal: str, reason: str) -> None:
        outcome = Outcome.PARTIAL if terminal == "cancelled" else Outcome.FAILURE
        try:
            await self._close_plan(run, terminal, outcome, reason)
        except AgentWorkspaceError as e:
            logger.warning("Could not close plan of task %s: %s", run.task_id, e)

    def _finish(self, run: _TaskRun, result: TaskResult) -> None:
        status = result.termination.status
        logger.info("Task %s %s: %s", run.task_id, status.value, result.termination.reason)
        if status != TerminationStatus.CANCELLED:
            try:
                self.workspaces.record_task_outcome(run.workspace_id, result.success)
            except AgentWorkspaceError as e:
                logger.warning("Could not update trust for %s: %s", run.workspace_id, e)
        if run.log:
            run.log.log_event(
                "termination",
                status=status.value,
                reason=result.termination.reason,
                steps_executed=result.steps_executed,
                replans=result.replans,
            )
            run.log.print_termination(result)
            run.log.print_summary(result)
