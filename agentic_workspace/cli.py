"""
CLI for Agentic Workspace.

Provides the command-line interface using argparse.
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .config import DEFAULTS, AppConfig
from .context import ContextAssembler
from .errors import AgentWorkspaceError
from .llm_client import HybridLLM
from .logger import configure_logging
from .memory import MemoryStore
from .providers import build_providers
from .storage import RecordStore
from .types import TerminationStatus
from .utils import truncate_text
from .workspace import WorkspaceManager


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentic-workspace",
        description="Agentic Workspace - browser automation with per-workspace memory and context.",
        epilog="""
Examples:
  # Create a workspace that asks before anything riskier than typing
  agentic-workspace workspace create "Shopping" --autonomy 2

  # Run a goal in it
  agentic-workspace run ws_1a2b3c4d5e6f "Find the cheapest USB-C cable on example.com"

  # Inspect what the agent has learned
  agentic-workspace memory facts ws_1a2b3c4d5e6f
  agentic-workspace context show ws_1a2b3c4d5e6f "buy a cable"
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Agentic Workspace {__version__}",
    )
    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        default=False,
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Workspace commands
    ws_parser = subparsers.add_parser("workspace", help="Create, inspect and delete workspaces")
    ws_sub = ws_parser.add_subparsers(dest="action")

    create = ws_sub.add_parser("create", help="Create a workspace")
    create.add_argument("name", type=str, help="Display name")
    create.add_argument("--id", type=str, default=None, help="Explicit workspace id")
    _add_workspace_options(create, defaults=True)

    ws_sub.add_parser("list", help="List workspaces")

    show = ws_sub.add_parser("show", help="Show one workspace")
    show.add_argument("workspace", type=str)

    update = ws_sub.add_parser("update", help="Change workspace settings")
    update.add_argument("workspace", type=str)
    update.add_argument("--name", type=str, default=None)
    _add_workspace_options(update, defaults=False)

    delete = ws_sub.add_parser("delete", help="Delete a workspace and all of its memory")
    delete.add_argument("workspace", type=str)
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    # Memory commands
    memory_parser = subparsers.add_parser("memory", help="Inspect and maintain workspace memory")
    memory_sub = memory_parser.add_subparsers(dest="action")
    for name, help_text in (
        ("stats", "Per-tier statistics"),
        ("promote", "Distill facts and workflows from new episodes now"),
        ("facts", "List semantic facts"),
        ("workflows", "List procedural workflows"),
    ):
        sub = memory_sub.add_parser(name, help=help_text)
        sub.add_argument("workspace", type=str)
    episodes = memory_sub.add_parser("episodes", help="Show recent episodic records")
    episodes.add_argument("workspace", type=str)
    episodes.add_argument("--window", type=int, default=20, help="Number of records (default: 20)")

    # Context commands
    context_parser = subparsers.add_parser("context", help="Preview assembled context")
    context_sub = context_parser.add_subparsers(dest="action")
    context_show = context_sub.add_parser("show", help="Assemble context for a goal")
    context_show.add_argument("workspace", type=str)
    context_show.add_argument("goal", type=str)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run a goal in a workspace")
    run_parser.add_argument("workspace", type=str, help="Workspace id")
    run_parser.add_argument("goal", type=str, help="The goal to accomplish in natural language")
    run_parser.add_argument(
        "--headless",
        action="store_true",
        default=DEFAULTS["headless"],
        help="Run browser in headless mode",
    )
    run_parser.add_argument(
        "--auto-approve",
        action="store_true",
        default=False,
        help="Approve every step that exceeds the workspace autonomy level",
    )
    run_parser.add_argument(
        "--no-log",
        action="store_true",
        default=False,
        help="Do not write a run directory with steps.jsonl",
    )

    return parser


def _add_workspace_options(parser: argparse.ArgumentParser, defaults: bool) -> None:
    parser.add_argument(
        "--autonomy",
        type=int,
        default=DEFAULTS["autonomy_level"] if defaults else None,
        help=f"Autonomy level 1-5 (default: {DEFAULTS['autonomy_level']})",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=DEFAULTS["context_token_budget"] if defaults else None,
        help=f"Context token budget (default: {DEFAULTS['context_token_budget']})",
    )
    parser.add_argument(
        "--approval-timeout",
        type=float,
        default=DEFAULTS["approval_timeout"] if defaults else None,
        help=f"Seconds to wait for approval (default: {DEFAULTS['approval_timeout']:g})",
    )
    parser.add_argument("--description", type=str, default=None)


@dataclass
class Runtime:
    """Components wired against one database."""
    config: AppConfig
    store: RecordStore
    workspaces: WorkspaceManager
    memory: MemoryStore
    assembler: ContextAssembler
    llm: Optional[HybridLLM]

    def close(self) -> None:
        self.memory.close()
        self.store.close()


def build_runtime(config: Optional[AppConfig] = None, use_llm: bool = True) -> Runtime:
    config = config or AppConfig()
    config.ensure_directories()
    store = RecordStore(config.db_path)
    llm = HybridLLM(build_providers(config.llm), timeout=config.orchestrator.llm_timeout) if use_llm else None
    workspaces = WorkspaceManager(store)
    memory = MemoryStore(workspaces, store, config.memory, llm=llm)
    assembler = ContextAssembler(workspaces, memory, store, config.context, llm=llm)
    return Runtime(config, store, workspaces, memory, assembler, llm)


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M")


def workspace_command(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    """Handle workspace management commands."""
    manager = runtime.workspaces

    if args.action == "create":
        config = {
            "name": args.name,
            "autonomy_level": args.autonomy,
            "context_token_budget": args.budget,
            "approval_timeout": args.approval_timeout,
        }
        if args.id:
            config["id"] = args.id
        if args.description is not None:
            config["description"] = args.description
        workspace = manager.create(config)
        console.print(f"[green]Created workspace[/green] [bold]{workspace.id}[/bold] ({workspace.name})")
        return EXIT_OK

    if args.action == "list":
        workspaces = manager.list_workspaces()
        if not workspaces:
            console.print("[dim]No workspaces yet.[/dim]")
            return EXIT_OK
        table = Table(title="Workspaces")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Autonomy", justify="right")
        table.add_column("Budget", justify="right")
        table.add_column("Trust", justify="right")
        for ws in workspaces:
            table.add_row(ws.id, ws.name, str(ws.autonomy_level), str(ws.context_token_budget), f"{ws.trust_score:.2f}")
        console.print(table)
        return EXIT_OK

    if args.action == "show":
        ws = manager.get(args.workspace)
        lines = [
            f"[bold]Name:[/bold] {ws.name}",
            f"[bold]Autonomy level:[/bold] {ws.autonomy_level}",
            f"[bold]Context budget:[/bold] {ws.context_token_budget} tokens",
            f"[bold]Approval timeout:[/bold] {ws.approval_timeout:g}s",
            f"[bold]Trust score:[/bold] {ws.trust_score:.2f}",
            f"[bold]Created:[/bold] {_format_time(ws.created_at)}",
        ]
        if ws.description:
            lines.insert(1, f"[bold]Description:[/bold] {ws.description}")
        suggestion = manager.suggest_autonomy(ws.id)
        if suggestion:
            lines.append(
                f"[yellow]Suggestion:[/yellow] autonomy {suggestion.current_level} -> "
                f"{suggestion.suggested_level} ({suggestion.reason})"
            )
        console.print(Panel("\n".join(lines), title=ws.id, border_style="cyan"))
        return EXIT_OK

    if args.action == "update":
        patch = {
            "name": args.name,
            "autonomy_level": args.autonomy,
            "context_token_budget": args.budget,
            "approval_timeout": args.approval_timeout,
            "description": args.description,
        }
        ws = manager.update(args.workspace, {k: v for k, v in patch.items() if v is not None})
        console.print(f"[green]Updated workspace[/green] [bold]{ws.id}[/bold]")
        return EXIT_OK

    if args.action == "delete":
        ws = manager.get(args.workspace)
        if not args.yes and not Confirm.ask(
            f"[bold red]Delete {ws.id} ({ws.name}) and all of its memory?[/bold red]",
            default=False,
        ):
            console.print("[yellow]Cancelled.[/yellow]")
            return EXIT_FAILURE
        manager.delete(ws.id)
        console.print(f"[green]Deleted workspace {ws.id}[/green]")
        return EXIT_OK

    console.print("Use create, list, show, update or delete")
    return EXIT_FAILURE


def memory_command(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    """Handle memory inspection commands."""
    memory = runtime.memory

    if args.action == "stats":
        stats = memory.stats(args.workspace)
        table = Table(title=f"Memory of {args.workspace}", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")
        table.add_row("Episodic records", str(stats.episodic_count))
        table.add_row("Semantic facts", str(stats.semantic_count))
        table.add_row("Workflows (active)", str(stats.procedural_count))
        table.add_row("Workflows (retired)", str(stats.retired_count))
        table.add_row("Tokens", str(stats.total_tokens))
        table.add_row("Average confidence", f"{stats.average_confidence:.2f}")
        table.add_row("Average success rate", f"{stats.average_success_rate:.2f}")
        table.add_row("Last sequence number", str(stats.last_sequence_no))
        table.add_row("Promoted through", str(stats.promotion_watermark))
        console.print(table)
        return EXIT_OK

    if args.action == "promote":
        report = memory.promote(args.workspace)
        if report.summarization_error:
            console.print(f"[yellow]Summarization failed:[/yellow] {report.summarization_error}")
        console.print(
            f"Considered {report.records_considered} records: "
            f"{report.facts_created} facts created, {report.facts_merged} merged, "
            f"{report.workflows_created} workflows created, {report.workflows_reinforced} reinforced, "
            f"{report.workflows_retired} retired"
        )
        return EXIT_FAILURE if report.summarization_error else EXIT_OK

    if args.action == "facts":
        facts = memory.list_facts(args.workspace)
        if not facts:
            console.print("[dim]No facts yet.[/dim]")
            return EXIT_OK
        table = Table(title="Semantic Facts")
        table.add_column("ID", style="cyan")
        table.add_column("Statement")
        table.add_column("Confidence", justify="right")
        for fact in facts:
            table.add_row(fact.id, fact.statement, f"{fact.confidence:.2f}")
        console.print(table)
        return EXIT_OK

    if args.action == "workflows":
        workflows = memory.list_workflows(args.workspace, include_retired=True)
        if not workflows:
            console.print("[dim]No workflows yet.[/dim]")
            return EXIT_OK
        table = Table(title="Procedural Workflows")
        table.add_column("ID", style="cyan")
        table.add_column("Goal")
        table.add_column("Steps")
        table.add_column("Success", justify="right")
        for wf in workflows:
            status = " [red](retired)[/red]" if wf.retired else ""
            table.add_row(
                wf.id, wf.goal_signature + status, " -> ".join(wf.structure),
                f"{wf.success_count}/{wf.uses}",
            )
        console.print(table)
        return EXIT_OK

    if args.action == "episodes":
        records = memory.query_episodic(args.workspace, window=args.window)
        if not records:
            console.print("[dim]No episodes yet.[/dim]")
            return EXIT_OK
        table = Table(title="Recent Episodes")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Time")
        table.add_column("Action", style="cyan")
        table.add_column("Outcome")
        table.add_column("Observation")
        colors = {"success": "green", "failure": "red", "partial": "yellow"}
        for record in records:
            color = colors[record.outcome.value]
            table.add_row(
                str(record.sequence_no),
                _format_time(record.timestamp),
                record.action_type,
                f"[{color}]{record.outcome.value}[/{color}]",
                truncate_text(record.observation, 80),
            )
        console.print(table)
        return EXIT_OK

    console.print("Use stats, promote, facts, workflows or episodes")
    return EXIT_FAILURE


def context_command(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    """Preview the context the planner would receive."""
    if args.action != "show":
        console.print("Use show")
        return EXIT_FAILURE
    pack = runtime.assembler.assemble(args.workspace, args.goal)
    table = Table(title=f"Context for '{truncate_text(args.goal, 40)}'")
    table.add_column("Item", style="cyan")
    table.add_column("Tier")
    table.add_column("Tokens", justify="right")
    table.add_column("Content")
    for item in pack.items:
        tier = item.tier.value + (" (pinned)" if item.pinned else "")
        table.add_row(item.id, tier, str(item.token_count), truncate_text(item.content, 60))
    console.print(table)
    console.print(
        f"[dim]{pack.total_tokens}/{pack.budget} tokens; "
        f"{len(pack.compressed)} compressed, {len(pack.dropped)} dropped[/dim]"
    )
    return EXIT_OK


def run_command(args: argparse.Namespace, runtime: Runtime, console: Console) -> int:
    """Execute the run command.

    Returns:
        Exit code (0 for success, 1 for failure, 130 when cancelled)
    """
    from .approval import get_approver
    from .executor import PlaywrightExecutor
    from .logger import RunLogger
    from .orchestrator import Orchestrator

    runtime.workspaces.get(args.workspace)

    def make_logger(workspace_id: str, goal: str) -> RunLogger:
        return RunLogger(workspace_id, goal, enable_console=True)

    async def _run():
        async with PlaywrightExecutor(headless=args.headless) as executor:
            orchestrator = Orchestrator(
                runtime.workspaces,
                runtime.memory,
                runtime.assembler,
                runtime.llm,
                executor,
                runtime.config.orchestrator,
                approver=get_approver("cli", auto_approve=args.auto_approve, console=console),
                run_logger_factory=None if args.no_log else make_logger,
            )
            return await orchestrator.run(args.workspace, args.goal)

    try:
        result = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return EXIT_CANCELLED

    if args.no_log:
        console.print(f"[bold]{result.termination.status.value}:[/bold] {result.termination.reason}")
    if result.termination.status == TerminationStatus.SUCCESS:
        return EXIT_OK
    if result.termination.status == TerminationStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILURE


COMMANDS = {
    "workspace": workspace_command,
    "memory": memory_command,
    "context": context_command,
    "run": run_command,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    console = Console()
    configure_logging(args.debug or AppConfig().debug)

    handler = COMMANDS[args.command]
    needs_llm = args.command in ("run", "context") or getattr(args, "action", None) == "promote"
    runtime = build_runtime(use_llm=needs_llm)
    try:
        return handler(args, runtime, console)
    except AgentWorkspaceError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return EXIT_FAILURE
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
