import asyncio

import pytest

from treepilot.agents import GenerationContext
from treepilot.controller import FIX_PROMPT, TaskOrchestrator
from treepilot.errors import GeneratorFailure
from treepilot.filetree import find_node
from treepilot.mutations import CreateFile, CreateFolder
from treepilot.state import LogEntry, WorkspaceRuntimeConfig
from treepilot.stream import SEPARATOR
from treepilot.workspace import WorkspaceManager

CREATE_OP = '{"operations": [{"operation": "CREATE_FILE", "path": "src/new.ts", "content": "hi"}]}'


def scripted(*fragments, seen=None):
    """A generator that replays ``fragments`` and records each context it is given."""
    async def generator(context: GenerationContext):
        if seen is not None:
            seen.append(context)
        for fragment in fragments:
            await asyncio.sleep(0)
            yield fragment
    return generator


def _orchestrator(generator):
    return TaskOrchestrator(WorkspaceManager().load(), generator)


@pytest.mark.asyncio
async def test_prose_only_task_completes():
    orch = _orchestrator(scripted("Hello ", "there."))
    task = await orch.create("say hi")
    assert task.status == "completed"
    assert task.prose == "Hello there."
    assert orch.workspaces.active.tasks[-1] == task


@pytest.mark.asyncio
async def test_task_with_operations_waits_for_approval():
    orch = _orchestrator(scripted("Adding a file.\n", SEPARATOR, "\n", CREATE_OP))
    task = await orch.create("add a file")
    assert task.status == "pending_confirmation"
    assert task.operations == [CreateFile(path="src/new.ts", content="hi")]
    assert find_node(orch.workspaces.active.file_system, "src/new.ts") is None


@pytest.mark.asyncio
async def test_start_appends_running_task_immediately():
    orch = _orchestrator(scripted("x"))
    task = orch.start("go")
    assert task.status == "running"
    assert orch.running() == [task]
    await orch.wait_idle()
    assert orch.running() == []


@pytest.mark.asyncio
async def test_prose_is_republished_while_streaming():
    orch = _orchestrator(scripted("One ", "two ", "three"))
    progress = []
    orch.bus.subscribe(lambda e: progress.append(e.payload["prose"]) if e.event_type == "task_progress" else None)

    await orch.create("count")
    assert progress == ["One ", "One two ", "One two three"]


@pytest.mark.asyncio
async def test_approve_applies_operations():
    orch = _orchestrator(scripted("ok\n", SEPARATOR, CREATE_OP))
    task = await orch.create("add")
    events = []
    orch.bus.subscribe(lambda e: events.append(e.event_type))

    result = orch.approve(task.id)
    assert result.all_ok
    assert find_node(orch.workspaces.active.file_system, "src/new.ts").content == "hi"
    assert orch.workspaces.tasks().get(task.id).status == "completed"
    assert events == ["tree_updated", "task_completed"]

    assert orch.approve(task.id) is None


@pytest.mark.asyncio
async def test_reject_leaves_tree_untouched():
    orch = _orchestrator(scripted("ok\n", SEPARATOR, CREATE_OP))
    before = orch.workspaces.active.file_system
    task = await orch.create("add")

    rejected = orch.reject(task.id)
    assert rejected.status == "completed"
    assert rejected.operations
    assert orch.workspaces.active.file_system == before
    assert orch.reject(task.id) is None


@pytest.mark.asyncio
async def test_approve_uses_current_tree():
    orch = _orchestrator(scripted("ok\n", SEPARATOR, CREATE_OP))
    task = await orch.create("add")
    orch.apply_direct([CreateFile(path="docs/notes.md", content="later")])

    orch.approve(task.id)
    tree = orch.workspaces.active.file_system
    assert find_node(tree, "docs/notes.md").content == "later"
    assert find_node(tree, "src/new.ts").content == "hi"


@pytest.mark.asyncio
async def test_generator_failure_ends_in_error():
    async def broken(context):
        yield "Starting"
        raise GeneratorFailure("quota exceeded")

    orch = _orchestrator(broken)
    task = await orch.create("anything")
    assert task.status == "error"
    assert task.error == "quota exceeded"


@pytest.mark.asyncio
async def test_malformed_operations_end_in_error():
    orch = _orchestrator(scripted("ok\n", SEPARATOR, '{"operations": [{"operation": "NOPE", "path": "a"}]}'))
    task = await orch.create("anything")
    assert task.status == "error"
    assert task.error.startswith("Failed to parse file operations from AI.")
    assert task.operations == []


@pytest.mark.asyncio
async def test_context_carries_history_and_runtime():
    seen = []
    orch = _orchestrator(scripted("answer", seen=seen))
    first = await orch.create("first")

    runtime = WorkspaceRuntimeConfig(
        ui_state={"active_editor_path": "src/App.tsx"},
        installed_extensions=["tailwind"],
        logs=[LogEntry(level="error", message="boom")],
    )
    await orch.create("second", runtime=runtime)

    assert seen[0].task_history == []
    assert [t.id for t in seen[1].task_history] == [first.id]
    assert seen[1].installed_extensions == ["tailwind"]
    assert seen[1].logs[0].message == "boom"
    assert find_node(seen[1].file_system, "src/App.tsx") is not None


@pytest.mark.asyncio
async def test_fix_error_wraps_message():
    seen = []
    orch = _orchestrator(scripted("fixed", seen=seen))
    task = orch.fix_error("TypeError: x is undefined")
    await orch.wait_idle()
    assert task.user_prompt == FIX_PROMPT.format(message="TypeError: x is undefined")
    assert "TypeError: x is undefined" in seen[0].prompt


@pytest.mark.asyncio
async def test_empty_prompt_rejected():
    orch = _orchestrator(scripted("x"))
    with pytest.raises(ValueError):
        orch.start("   ")
    assert orch.workspaces.active.tasks == []


@pytest.mark.asyncio
async def test_task_stays_in_its_workspace_after_switch():
    release = asyncio.Event()

    async def slow(context):
        await release.wait()
        yield "done"

    orch = _orchestrator(slow)
    home = orch.workspaces.active
    task = orch.start("work")
    other = orch.workspaces.create("Other")
    assert orch.workspaces.active is other

    release.set()
    await orch.wait_idle()
    assert orch.workspaces.tasks(home.id).get(task.id).status == "completed"
    assert other.tasks == []


def test_apply_direct_accepts_wire_dicts():
    orch = _orchestrator(scripted())
    result = orch.apply_direct([
        {"operation": "CREATE_FOLDER", "path": "assets"},
        {"operation": "RENAME_FILE", "path": "missing.txt", "newPath": "x.txt"},
    ])
    assert [o.ok for o in result.outcomes] == [True, False]
    assert find_node(orch.workspaces.active.file_system, "assets") is not None


def test_edit_file_replaces_content():
    orch = _orchestrator(scripted())
    orch.edit_file("src/App.tsx", "function App() {}")
    assert find_node(orch.workspaces.active.file_system, "src/App.tsx").content == "function App() {}"


@pytest.mark.asyncio
async def test_tree_writes_go_through_the_workspace_manager(monkeypatch):
    orch = _orchestrator(scripted("ok\n", SEPARATOR, CREATE_OP))
    written = []
    original = orch.workspaces.set_tree

    def recording_set_tree(workspace_id, tree):
        written.append(workspace_id)
        original(workspace_id, tree)

    monkeypatch.setattr(orch.workspaces, "set_tree", recording_set_tree)

    task = await orch.create("add")
    orch.approve(task.id)
    orch.apply_direct([CreateFolder(path="assets")])
    orch.edit_file("src/new.ts", "edited")

    assert written == [orch.workspaces.active_id] * 3
    assert find_node(orch.workspaces.active.file_system, "src/new.ts").content == "edited"
