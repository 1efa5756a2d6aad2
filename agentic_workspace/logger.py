"""
Logging and run artifacts for Agentic Workspace.

Handles process-wide logging setup, JSONL step logging per task, and
rich console output.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import get_runs_dir
from .safety import RiskLevel
from .storage import safe_json_dumps
from .types import Observation, Plan, Step, TaskResult, TerminationStatus
from .utils import redact_secrets


RISK_COLORS = {
    RiskLevel.MINIMAL: "green",
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


def configure_logging(debug: bool = False, console: Optional[Console] = None) -> None:
    """Route ``agentic_workspace.*`` loggers through a Rich handler."""
    handler = RichHandler(console=console, show_path=debug, rich_tracebacks=debug)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger("agentic_workspace")
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.propagate = False


def slugify(text: str, max_length: int = 30) -> str:
    """Convert text to a filesystem-safe slug."""
    slug = re.sub(r'[^\w\s-]', '', text.lower())
    slug = re.sub(r'[-\s]+', '_', slug).strip('_')
    return slug[:max_length]


class RunLogger:
    """Manages logging and artifacts for a single orchestrated task."""

    def __init__(self, workspace_id: str, goal: str, enable_console: bool = True):
        """Initialize the run logger.

        Args:
            workspace_id: Workspace the task runs in
            goal: The goal being executed (used for directory naming)
            enable_console: Whether to print to console
        """
        self.workspace_id = workspace_id
        self.goal = goal
        self.console = Console() if enable_console else None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = get_runs_dir() / workspace_id / f"{timestamp}_{slugify(goal)}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.steps_file = self.run_dir / "steps.jsonl"
        self.steps_file.touch()

        self.step_count = 0

    @property
    def run_path(self) -> Path:
        return self.run_dir

    def _write(self, entry: dict[str, Any]) -> None:
        entry.setdefault("timestamp", datetime.now().isoformat())
        with open(self.steps_file, "a", encoding="utf-8") as f:
            f.write(safe_json_dumps(entry) + "\n")

    def log_event(self, event: str, **data: Any) -> None:
        """Log a non-step event (plan, approval, termination)."""
        self._write({"event": event, **data})

    def log_plan(self, plan: Plan) -> None:
        self.log_event(
            "plan",
            plan_id=plan.id,
            steps=[
                {
                    "action": redact_secrets(s.to_action()),
                    "description": s.description,
                    "risk_level": s.risk_level,
                }
                for s in plan.steps
            ],
        )

    def log_step(
        self,
        step: Step,
        observation: Optional[Observation] = None,
        error: Optional[str] = None,
        attempt: int = 0,
    ) -> None:
        """Log one execution attempt of a step to the JSONL file."""
        self.step_count += 1
        self._write({
            "event": "step",
            "step": self.step_count,
            "step_id": step.id,
            "attempt": attempt,
            "action": redact_secrets(step.to_action()),
            "risk_level": step.risk_level,
            "result": {
                "success": observation.success,
                "message": observation.message,
                "url": observation.url,
            } if observation else None,
            "error": error,
        })

    def print_header(self) -> None:
        if not self.console:
            return
        self.console.print()
        self.console.print(Panel(
            f"[bold cyan]Workspace:[/bold cyan] {self.workspace_id}\n"
            f"[bold cyan]Goal:[/bold cyan] {self.goal}",
            title="Agentic Workspace",
            border_style="cyan",
        ))
        self.console.print()

    def print_plan(self, plan: Plan, replans: int = 0) -> None:
        if not self.console:
            return
        title = "Plan" if replans == 0 else f"Plan (revision {replans})"
        table = Table(title=title, show_header=True)
        table.add_column("#", style="dim")
        table.add_column("Action", style="bold cyan")
        table.add_column("Description")
        table.add_column("Risk")
        for index, step in enumerate(plan.steps, start=1):
            risk = RiskLevel(step.risk_level)
            color = RISK_COLORS[risk]
            table.add_row(
                str(index), step.action, step.description,
                f"[{color}]{risk.name.lower()}[/{color}]",
            )
        self.console.print(table)

    def print_step(self, step: Step, requires_approval: bool) -> None:
        if not self.console:
            return
        risk = RiskLevel(step.risk_level)
        color = RISK_COLORS[risk]

        step_text = Text()
        step_text.append(f"Step {self.step_count + 1}: ", style="bold")
        step_text.append(step.action, style="bold cyan")
        args = redact_secrets(step.to_action())["args"]
        args_str = ", ".join(f"{k}={repr(v)}" for k, v in args.items())
        if args_str:
            step_text.append(f"({args_str})", style="dim")

        self.console.print(step_text)
        self.console.print(f"  [dim]Risk:[/dim] [{color}]{risk.name.lower()}[/{color}]", end="")
        if requires_approval:
            self.console.print(" [bold yellow]APPROVAL REQUIRED[/bold yellow]")
        else:
            self.console.print()

    def print_result(self, success: bool, message: str) -> None:
        if not self.console:
            return
        if success:
            self.console.print(f"  [green]OK[/green] {message}")
        else:
            self.console.print(f"  [red]FAILED[/red] {message}")

    def print_error(self, error: str) -> None:
        if not self.console:
            return
        self.console.print(f"  [bold red]Error:[/bold red] {error}")

    def print_termination(self, result: TaskResult) -> None:
        if not self.console:
            return
        border = {
            TerminationStatus.SUCCESS: "green",
            TerminationStatus.FAILURE: "red",
            TerminationStatus.CANCELLED: "yellow",
        }[result.termination.status]
        self.console.print()
        self.console.print(Panel(
            result.termination.reason,
            title=f"Task {result.termination.status.value}",
            border_style=border,
        ))

    def print_summary(self, result: TaskResult) -> None:
        if not self.console:
            return
        table = Table(title="Run Summary", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")
        table.add_row("Task", result.task_id)
        table.add_row("Steps Executed", str(result.steps_executed))
        table.add_row("Replans", str(result.replans))
        table.add_row("Logs Directory", str(self.run_dir))
        table.add_row("Steps Log", str(self.steps_file))
        self.console.print()
        self.console.print(table)


def read_run_log(path: Path) -> list[dict[str, Any]]:
    """Load the entries of a ``steps.jsonl`` file."""
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
