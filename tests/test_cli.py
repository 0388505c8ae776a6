import json
import sys

from loguru import logger
from typer.testing import CliRunner

from treepilot import __version__
from treepilot.cli import _configure_logging, app
from treepilot.filetree import find_node
from treepilot.mutations import CreateFile
from treepilot.router import Router
from treepilot.state import Task, resolved
from treepilot.workspace import JsonFileStore, WorkspaceManager

runner = CliRunner()


def _manager(project) -> WorkspaceManager:
    return WorkspaceManager(JsonFileStore(project / ".treepilot" / "state")).load()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"TREEPILOT v{__version__}" in result.stdout


def test_tree_shows_starter_project(tmp_path):
    result = runner.invoke(app, ["tree", "-p", str(tmp_path)])
    assert result.exit_code == 0
    assert "App.tsx" in result.stdout
    assert "1 files, 1 folders" in result.stdout


def test_new_file_and_folder_persist(tmp_path):
    assert runner.invoke(app, ["new-file", "src/components/Button.tsx", "-p", str(tmp_path)]).exit_code == 0
    assert runner.invoke(app, ["new-folder", "assets", "-p", str(tmp_path)]).exit_code == 0

    tree = _manager(tmp_path).active.file_system
    assert find_node(tree, "src/components/Button.tsx").content == ""
    assert find_node(tree, "assets") is not None


def test_new_file_rejects_trailing_slash(tmp_path):
    result = runner.invoke(app, ["new-file", "src/", "-p", str(tmp_path)])
    assert result.exit_code == 1


def test_cat_prints_file(tmp_path):
    result = runner.invoke(app, ["cat", "src/App.tsx", "-p", str(tmp_path)])
    assert result.exit_code == 0
    assert "function App()" in result.stdout

    assert runner.invoke(app, ["cat", "src/Missing.tsx", "-p", str(tmp_path)]).exit_code == 1


def test_apply_batch_file(tmp_path):
    batch = tmp_path / "batch.json"
    batch.write_text(json.dumps({"operations": [
        {"operation": "RENAME_FILE", "path": "src/App.tsx", "newPath": "src/Main.tsx"},
        {"operation": "DELETE_FILE", "path": "nothing/here.txt"},
    ]}))

    result = runner.invoke(app, ["apply", str(batch), "-p", str(tmp_path)])
    assert result.exit_code == 0
    tree = _manager(tmp_path).active.file_system
    assert find_node(tree, "src/Main.tsx") is not None
    assert find_node(tree, "src/App.tsx") is None


def test_apply_rejects_invalid_batch(tmp_path):
    batch = tmp_path / "batch.json"
    batch.write_text(json.dumps([{"operation": "FORMAT_DISK", "path": "/"}]))
    assert runner.invoke(app, ["apply", str(batch), "-p", str(tmp_path)]).exit_code == 1


def test_upload_copies_text_files(tmp_path):
    local = tmp_path / "notes.md"
    local.write_text("# Notes")
    result = runner.invoke(app, ["upload", str(local), "--dest", "docs", "-p", str(tmp_path)])
    assert result.exit_code == 0
    assert find_node(_manager(tmp_path).active.file_system, "docs/notes.md").content == "# Notes"


def test_approve_pending_task(tmp_path):
    manager = _manager(tmp_path)
    task = manager.tasks().append(
        resolved(Task(user_prompt="add"), "Adding.", [CreateFile(path="src/new.ts", content="x")])
    )
    manager.save()

    listing = runner.invoke(app, ["tasks", "-p", str(tmp_path)])
    assert listing.exit_code == 0

    result = runner.invoke(app, ["approve", task.id[:8], "-p", str(tmp_path)])
    assert result.exit_code == 0

    reloaded = _manager(tmp_path)
    assert find_node(reloaded.active.file_system, "src/new.ts").content == "x"
    assert reloaded.tasks().get(task.id).status == "completed"

    again = runner.invoke(app, ["approve", task.id[:8], "-p", str(tmp_path)])
    assert again.exit_code == 1


def test_reject_pending_task(tmp_path):
    manager = _manager(tmp_path)
    task = manager.tasks().append(
        resolved(Task(user_prompt="add"), "Adding.", [CreateFile(path="src/new.ts")])
    )
    manager.save()

    assert runner.invoke(app, ["reject", task.id, "-p", str(tmp_path)]).exit_code == 0
    reloaded = _manager(tmp_path)
    assert find_node(reloaded.active.file_system, "src/new.ts") is None
    assert reloaded.tasks().get(task.id).status == "completed"


def test_workspace_commands(tmp_path):
    assert runner.invoke(app, ["workspace", "create", "Second", "-p", str(tmp_path)]).exit_code == 0
    assert _manager(tmp_path).active.name == "Second"

    assert runner.invoke(app, ["workspace", "switch", "My First Project", "-p", str(tmp_path)]).exit_code == 0
    assert _manager(tmp_path).active.name == "My First Project"

    listing = runner.invoke(app, ["workspace", "list", "-p", str(tmp_path)])
    assert "Second" in listing.stdout

    assert runner.invoke(app, ["workspace", "delete", "Second", "--force", "-p", str(tmp_path)]).exit_code == 0
    assert [ws.name for ws in _manager(tmp_path).workspaces] == ["My First Project"]

    last = runner.invoke(app, ["workspace", "delete", "My First Project", "--force", "-p", str(tmp_path)])
    assert last.exit_code == 1


def test_fix_without_error_source_fails(tmp_path):
    result = runner.invoke(app, ["fix", "-p", str(tmp_path)])
    assert result.exit_code == 1


async def _canned_stream(self, role, messages, temperature=None, max_tokens=None):
    yield "Tidied up the layout."


def test_autopilot_runs_past_a_task_left_running_by_a_dead_process(tmp_path, monkeypatch):
    monkeypatch.setattr(Router, "stream", _canned_stream)
    manager = _manager(tmp_path)
    stale = manager.tasks().append(Task(user_prompt="Proactive AI Step", kind="autopilot"))
    manager.save()

    result = runner.invoke(app, ["autopilot", "--ticks", "1", "--interval", "0.01", "-p", str(tmp_path)])
    assert result.exit_code == 0

    reloaded = _manager(tmp_path)
    tasks = reloaded.active.tasks
    assert reloaded.tasks().get(stale.id).status == "error"
    assert len(tasks) == 2
    assert tasks[-1].kind == "autopilot"
    assert tasks[-1].status == "completed"
    assert tasks[-1].prose == "Tidied up the layout."
    assert reloaded.ui_state().is_autopilot_on is False


def test_verbose_logging_prints_plain_messages(capsys):
    _configure_logging(True)
    try:
        logger.info("[ENGINE] hello")
        out = capsys.readouterr().out
    finally:
        logger.remove()
        logger.add(sys.stderr)

    assert "[ENGINE] hello" in out
    assert "[dim]" not in out
    assert "[/]" not in out
