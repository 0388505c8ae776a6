"""
TREEPILOT CLI — The Interface

  treepilot ask "add a dark mode toggle"      (stream, review, approve)
  treepilot autopilot --ticks 3               (let it propose on its own)
  treepilot approve <task> / reject <task>    (decide later)

Plus utilities:
  - treepilot tree / cat                      (inspect the project)
  - treepilot new-file / new-folder / upload  (direct edits)
  - treepilot workspace list|create|switch|delete
  - treepilot status / init
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.tree import Tree

from treepilot.agents.architect import ArchitectAgent
from treepilot.autopilot import AutopilotScheduler
from treepilot.config_loader import TreePilotConfig, load_config, validate_api_keys
from treepilot.console_log import ConsoleLog
from treepilot.controller import TaskOrchestrator
from treepilot.errors import WorkspaceError
from treepilot.event_bus import TaskEvent
from treepilot.filetree import FileNode, FolderNode, count_nodes, find_node
from treepilot.identity import BANNER, __codename__, __tagline__, __version__
from treepilot.mutations import ApplyResult, CreateFile, CreateFolder, describe
from treepilot.router import Router
from treepilot.state import Task, WorkspaceRuntimeConfig
from treepilot.workspace import JsonFileStore, WorkspaceManager

load_dotenv()
load_dotenv(Path.home() / ".treepilot" / ".env")

app = typer.Typer(
    name="treepilot",
    help=f"{__codename__} — {__tagline__}\nPrompt-driven edits of an in-memory project.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
workspace_app = typer.Typer(help="Manage workspaces.", no_args_is_help=True)
app.add_typer(workspace_app, name="workspace")

console = Console()

STATUS_COLORS = {
    "running": "cyan",
    "pending_confirmation": "yellow",
    "completed": "green",
    "error": "red",
}

_LOG_LINE_RE = re.compile(r"^\[(log|debug|info|warn|error)\]\s*(.*)$", re.IGNORECASE)


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session:
    """Config + persisted workspaces + orchestrator for one CLI invocation."""

    def __init__(self, project: Path):
        self.project = project.resolve()
        self.config: TreePilotConfig = load_config(self.project)
        self.store = JsonFileStore(self.project / self.config.storage.state_dir)
        self.workspaces = WorkspaceManager(self.store).load()
        agent = ArchitectAgent(
            Router(self.config),
            history_limit=self.config.limits.max_history_tasks,
            log_limit=self.config.limits.max_log_lines,
        )
        self.orchestrator = TaskOrchestrator(self.workspaces, agent.stream, self.config)

    def save(self) -> None:
        self.workspaces.save()

    def find_task(self, ref: str) -> Task:
        matches = [t for t in self.workspaces.active.tasks if t.id.startswith(ref)]
        if len(matches) != 1:
            console.print(f"[red]{'No' if not matches else 'Ambiguous'} task matching {ref!r}[/]")
            raise typer.Exit(1)
        return matches[0]

    def runtime(self, console_log: ConsoleLog | None = None) -> WorkspaceRuntimeConfig:
        runtime = self.orchestrator.default_runtime()
        if console_log is not None:
            runtime.logs = console_log.recent()
        return runtime


def _session(project: Path) -> Session:
    if not project.exists():
        console.print(f"[red]Project directory not found: {project}[/]")
        raise typer.Exit(1)
    try:
        return Session(project)
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _read_console_log(path: Path | None, limit: int) -> ConsoleLog:
    """Lines look like ``[error] message``; untagged lines are plain logs."""
    log = ConsoleLog(limit=limit)
    if path is None:
        return log
    if not path.exists():
        console.print(f"[red]Console log not found: {path}[/]")
        raise typer.Exit(1)
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        match = _LOG_LINE_RE.match(line.strip())
        if match:
            log.log(match.group(2), level=match.group(1).lower())
        else:
            log.log(line.strip())
    return log


ProjectOption = typer.Option(Path("."), "--project", "-p", help="Project directory holding .treepilot/")


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------

def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Task commands
# ---------------------------------------------------------------------------

@app.command()
def ask(
    prompt: str = typer.Argument(..., help="What you want changed"),
    project: Path = ProjectOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply proposed operations without asking"),
    defer: bool = typer.Option(False, "--defer", help="Leave proposed operations pending"),
    console_log: Optional[Path] = typer.Option(None, "--console-log", help="Preview console output to include"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Ask for a change, watch the answer stream in, then review it."""
    _configure_logging(verbose)
    session = _session(project)
    if not prompt.strip():
        console.print("[red]No prompt provided.[/]")
        raise typer.Exit(1)

    log = _read_console_log(console_log, session.config.limits.max_log_lines)
    task = asyncio.run(_stream_task(session, prompt, session.runtime(log)))
    _finish_task(session, task, yes=yes, defer=defer)


@app.command()
def fix(
    task_ref: Optional[str] = typer.Argument(None, help="Failed task whose error should be fixed"),
    project: Path = ProjectOption,
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Error text to fix"),
    console_log: Optional[Path] = typer.Option(None, "--console-log", help="Take the latest error from this log"),
    yes: bool = typer.Option(False, "--yes", "-y"),
    defer: bool = typer.Option(False, "--defer"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Ask for a fix of a failed task or a console error."""
    _configure_logging(verbose)
    session = _session(project)
    log = _read_console_log(console_log, session.config.limits.max_log_lines)

    if message is None and task_ref:
        failed = session.find_task(task_ref)
        if failed.status != "error" or not failed.error:
            console.print(f"[red]Task {failed.id[:8]} has no error to fix.[/]")
            raise typer.Exit(1)
        message = failed.error
    if message is None:
        latest = log.latest_error()
        message = latest.message if latest else None
    if not message:
        console.print("[red]Nothing to fix: pass a task, --message, or a --console-log with an error.[/]")
        raise typer.Exit(1)

    async def _run() -> Task:
        task = session.orchestrator.fix_error(message, session.runtime(log))
        return await _watch(session, task)

    task = asyncio.run(_run())
    _finish_task(session, task, yes=yes, defer=defer)


@app.command()
def approve(
    task_ref: str = typer.Argument(..., help="Task id (or unique prefix)"),
    project: Path = ProjectOption,
):
    """Apply a pending task's operations."""
    session = _session(project)
    task = session.find_task(task_ref)
    result = session.orchestrator.approve(task.id)
    if result is None:
        console.print(f"[yellow]Task {task.id[:8]} is {task.status}; nothing to approve.[/]")
        raise typer.Exit(1)
    session.save()
    _print_apply_result(result)


@app.command()
def reject(
    task_ref: str = typer.Argument(..., help="Task id (or unique prefix)"),
    project: Path = ProjectOption,
):
    """Discard a pending task's operations."""
    session = _session(project)
    task = session.find_task(task_ref)
    if session.orchestrator.reject(task.id) is None:
        console.print(f"[yellow]Task {task.id[:8]} is {task.status}; nothing to reject.[/]")
        raise typer.Exit(1)
    session.save()
    console.print(f"[dim]Task {task.id[:8]} rejected. The project is unchanged.[/]")


@app.command()
def tasks(
    project: Path = ProjectOption,
    count: int = typer.Option(10, "--count", "-n", help="Number of tasks to show"),
):
    """List tasks of the active workspace, newest first."""
    session = _session(project)
    ws = session.workspaces.active
    recent = ws.newest_first()[:count]
    if not recent:
        console.print("[dim]No tasks yet.[/]")
        return

    table = Table(title=f"Tasks — {ws.name}", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Ops")
    table.add_column("Prompt")

    for t in recent:
        color = STATUS_COLORS.get(t.status, "white")
        table.add_row(
            t.id[:8],
            t.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            t.kind,
            f"[{color}]{t.status}[/]",
            str(len(t.operations)),
            t.user_prompt[:60],
        )

    console.print(table)


@app.command()
def autopilot(
    project: Path = ProjectOption,
    ticks: int = typer.Option(1, "--ticks", "-n", help="Autopilot tasks to start before stopping"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between ticks"),
    console_log: Optional[Path] = typer.Option(None, "--console-log"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Let the architect pick the next steps on its own. Proposals stay pending."""
    _print_banner()
    _configure_logging(verbose)
    session = _session(project)
    if interval is not None:
        session.config.autopilot.interval_seconds = interval

    log = _read_console_log(console_log, session.config.limits.max_log_lines)
    ui = session.workspaces.ui_state()
    ui.is_autopilot_on = True

    async def _run() -> None:
        scheduler = AutopilotScheduler(session.orchestrator, session.config.autopilot)
        await scheduler.run(max_ticks=ticks, runtime=session.runtime(log))
        await session.orchestrator.wait_idle()

    try:
        asyncio.run(_run())
    finally:
        ui.is_autopilot_on = False
        session.save()

    for t in session.workspaces.active.newest_first()[:ticks]:
        _print_task_summary(t)


# ---------------------------------------------------------------------------
# Tree commands
# ---------------------------------------------------------------------------

@app.command()
def tree(project: Path = ProjectOption):
    """Show the active workspace's file tree."""
    session = _session(project)
    ws = session.workspaces.active
    root = Tree(f"[bold]{ws.name}[/]")
    _add_tree_nodes(root, ws.file_system)
    console.print(root)
    files, folders = count_nodes(ws.file_system)
    console.print(f"[dim]{files} files, {folders} folders[/]")


@app.command()
def cat(
    path: str = typer.Argument(..., help="File path inside the project"),
    project: Path = ProjectOption,
):
    """Print one file of the active workspace."""
    session = _session(project)
    node = find_node(session.workspaces.active.file_system, path)
    if not isinstance(node, FileNode):
        console.print(f"[red]No file at {path}[/]")
        raise typer.Exit(1)
    console.print(node.content, markup=False, highlight=False)


@app.command("new-file")
def new_file(
    path: str = typer.Argument(..., help="Full path of the new file"),
    project: Path = ProjectOption,
):
    """Create an empty file (parents are created as needed)."""
    if not path.strip() or path.strip().endswith("/"):
        console.print("[red]Invalid file path. Path cannot be empty or end with a slash.[/]")
        raise typer.Exit(1)
    session = _session(project)
    result = session.orchestrator.apply_direct([CreateFile(path=path.strip(), content="")])
    session.save()
    _print_apply_result(result)


@app.command("new-folder")
def new_folder(
    path: str = typer.Argument(..., help="Full path of the new folder"),
    project: Path = ProjectOption,
):
    """Create a folder (parents are created as needed)."""
    if not path.strip():
        console.print("[red]Invalid folder path.[/]")
        raise typer.Exit(1)
    session = _session(project)
    result = session.orchestrator.apply_direct([CreateFolder(path=path.strip())])
    session.save()
    _print_apply_result(result)


@app.command()
def upload(
    files: list[Path] = typer.Argument(..., help="Local text files to copy in"),
    project: Path = ProjectOption,
    dest: str = typer.Option("src", "--dest", "-d", help="Folder to upload into"),
):
    """Copy local text files into the project."""
    operations = []
    for f in files:
        try:
            content = f.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            console.print(f"[red]Could not read {f}: {e}. Please ensure uploads are text files.[/]")
            raise typer.Exit(1)
        target = f"{dest.strip('/')}/{f.name}" if dest.strip("/") else f.name
        operations.append(CreateFile(path=target, content=content))

    session = _session(project)
    result = session.orchestrator.apply_direct(operations)
    session.save()
    _print_apply_result(result)


@app.command("apply")
def apply_cmd(
    batch_file: Path = typer.Argument(..., help='JSON file: {"operations": [...]} or a bare list'),
    project: Path = ProjectOption,
):
    """Apply a batch of operations from a JSON file."""
    try:
        payload = json.loads(batch_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read batch: {e}[/]")
        raise typer.Exit(1)

    raw_ops = payload.get("operations", []) if isinstance(payload, dict) else payload
    if not isinstance(raw_ops, list):
        console.print("[red]'operations' must be a list.[/]")
        raise typer.Exit(1)

    session = _session(project)
    try:
        result = session.orchestrator.apply_direct(raw_ops)
    except ValidationError as e:
        console.print(f"[red]Invalid operations: {e}[/]")
        raise typer.Exit(1)
    session.save()
    _print_apply_result(result)


@app.command()
def edit(
    path: str = typer.Argument(..., help="Existing file inside the project"),
    source: Path = typer.Argument(..., help="Local file holding the new content"),
    project: Path = ProjectOption,
):
    """Replace an existing file's content, as an editor save would."""
    session = _session(project)
    if not isinstance(find_node(session.workspaces.active.file_system, path), FileNode):
        console.print(f"[red]No file at {path}[/]")
        raise typer.Exit(1)
    session.orchestrator.edit_file(path, source.read_text(encoding="utf-8"))
    session.save()
    console.print(f"[green]Saved {path}[/]")


# ---------------------------------------------------------------------------
# Workspace commands
# ---------------------------------------------------------------------------

@workspace_app.command("list")
def workspace_list(project: Path = ProjectOption):
    """List workspaces."""
    session = _session(project)
    table = Table(title="Workspaces", border_style="cyan")
    table.add_column("")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Files")
    table.add_column("Tasks")
    table.add_column("Created", style="dim")

    for ws in session.workspaces.workspaces:
        marker = "[green]●[/]" if ws.id == session.workspaces.active_id else ""
        files, _ = count_nodes(ws.file_system)
        table.add_row(marker, ws.id[:8], ws.name, str(files), str(len(ws.tasks)), ws.created_at.strftime("%Y-%m-%d"))

    console.print(table)
    session.save()


@workspace_app.command("create")
def workspace_create(
    name: str = typer.Argument(..., help="Workspace name"),
    project: Path = ProjectOption,
):
    """Create a workspace and make it active."""
    session = _session(project)
    try:
        ws = session.workspaces.create(name)
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    session.save()
    console.print(f"[green]Created workspace {ws.name!r} ({ws.id[:8]})[/]")


@workspace_app.command("switch")
def workspace_switch(
    ref: str = typer.Argument(..., help="Workspace id, id prefix or name"),
    project: Path = ProjectOption,
):
    """Make another workspace active."""
    session = _session(project)
    try:
        ws = session.workspaces.switch(session.workspaces.lookup(ref).id)
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    session.save()
    console.print(f"[green]Active workspace: {ws.name}[/]")


@workspace_app.command("delete")
def workspace_delete(
    ref: str = typer.Argument(..., help="Workspace id, id prefix or name"),
    project: Path = ProjectOption,
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """Delete a workspace and everything in it."""
    session = _session(project)
    try:
        ws = session.workspaces.lookup(ref)
        if not force and not Confirm.ask(f"Delete {ws.name!r} and all its content? This cannot be undone"):
            raise typer.Exit(1)
        session.workspaces.delete(ws.id)
    except WorkspaceError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    session.save()
    console.print(f"[dim]Deleted workspace {ws.name!r}[/]")


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

@app.command()
def status(project: Path = ProjectOption):
    """Check TREEPILOT configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(project.resolve())
    console.print(f"\n[bold]Routing:[/]")
    console.print(f"  Architect: {config.routing.architect}")
    console.print(f"\n[bold]Autopilot:[/]")
    console.print(f"  Interval: {config.autopilot.interval_seconds}s")
    console.print(f"  Prompt:   {config.autopilot.prompt}")
    console.print(f"\n[bold]State:[/] {project.resolve() / config.storage.state_dir}")


@app.command()
def init(
    project: Optional[Path] = typer.Argument(None, help="Project directory"),
):
    """Initialize .treepilot in a directory."""
    _print_banner()

    project = (project or Path.cwd()).resolve()
    tp_dir = project / ".treepilot"
    tp_dir.mkdir(parents=True, exist_ok=True)

    config_path = tp_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# TREEPILOT project-level config overrides
# These merge with the built-in defaults.

# routing:
#   architect: "anthropic/claude-sonnet-4-20250514"

# autopilot:
#   interval_seconds: 10

# installed_extensions:
#   - tailwind
""")

    session = Session(project)
    session.save()

    gitignore = project / ".gitignore"
    entry = ".treepilot/state/"
    if gitignore.exists():
        content = gitignore.read_text()
        if entry not in content:
            with open(gitignore, "a") as f:
                f.write(f"\n# TREEPILOT\n{entry}\n")
    else:
        gitignore.write_text(f"# TREEPILOT\n{entry}\n")

    console.print(f"[green]✅ Initialized TREEPILOT in {tp_dir}[/]")
    console.print(f"  Config:    {config_path}")
    console.print(f"  Workspace: {session.workspaces.active.name}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _stream_task(session: Session, prompt: str, runtime: WorkspaceRuntimeConfig) -> Task:
    task = session.orchestrator.start(prompt, "user", runtime)
    return await _watch(session, task)


async def _watch(session: Session, task: Task) -> Task:
    """Render the task's prose live until it resolves."""
    with Live(Markdown(""), console=console, refresh_per_second=8, transient=False) as live:
        def on_event(event: TaskEvent) -> None:
            if event.task_id == task.id and event.event_type == "task_progress":
                live.update(Markdown(event.payload.get("prose", "")))

        unsubscribe = session.orchestrator.bus.subscribe(on_event)
        try:
            await session.orchestrator.wait_idle()
        finally:
            unsubscribe()

    final = session.workspaces.tasks().get(task.id)
    return final or task


def _finish_task(session: Session, task: Task, yes: bool, defer: bool) -> None:
    _print_task_summary(task)

    if task.status == "pending_confirmation" and not defer:
        if yes or Confirm.ask("[bold]Apply these changes?[/]"):
            result = session.orchestrator.approve(task.id)
            if result is not None:
                _print_apply_result(result)
        else:
            session.orchestrator.reject(task.id)
            console.print("[dim]Rejected. The project is unchanged.[/]")
    elif task.status == "pending_confirmation":
        console.print(f"[yellow]Pending. Run: treepilot approve {task.id[:8]}[/]")

    session.save()
    if task.status == "error":
        raise typer.Exit(1)


def _print_task_summary(task: Task) -> None:
    color = STATUS_COLORS.get(task.status, "white")
    console.print(f"\n[bold {color}]Task {task.id[:8]}: {task.status}[/]")

    if task.status == "error":
        console.print(Panel(task.error or "", title="Error", border_style="red"))
        console.print(f"[dim]Retry with: treepilot fix {task.id[:8]}[/]")
        return

    if task.operations:
        table = Table(title="Proposed Operations", border_style="yellow")
        table.add_column("#", style="dim")
        table.add_column("Operation")
        table.add_column("Size", style="dim")
        for i, op in enumerate(task.operations, 1):
            size = f"{len(op.content)} chars" if hasattr(op, "content") else ""
            table.add_row(str(i), describe(op), size)
        console.print(table)


def _print_apply_result(result: ApplyResult) -> None:
    for outcome in result.outcomes:
        if outcome.ok:
            console.print(f"  [green]✓[/] {describe(outcome.op)}")
        else:
            console.print(f"  [red]✗[/] {describe(outcome.op)} [dim]({outcome.error})[/]")


def _add_tree_nodes(branch: Tree, folder: FolderNode) -> None:
    for name, child in folder.sorted_children():
        if isinstance(child, FolderNode):
            _add_tree_nodes(branch.add(f"[bold blue]{name}/[/]"), child)
        else:
            branch.add(name)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg.rstrip(), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
