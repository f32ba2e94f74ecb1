"""End-to-end tests for session wiring with a scripted model."""

import os

import pytest

from conftest import FakeModelClient, tool_call
from toolgate.config import DynamicToolsConfig, ToolsConfig, WorkspaceConfig
from toolgate.core.models import CallStatus, EventType
from toolgate.providers.base import ModelEvent
from toolgate.session import Session, Workspace

GREET = {
    "name": "greet",
    "description": "Say hello",
    "parameters": [{"name": "who", "type": "string", "required": True}],
}


@pytest.fixture
def config(workspace):
    return WorkspaceConfig(working_dir=str(workspace), auto_accept=True)


class TestWorkspace:
    @pytest.mark.asyncio
    async def test_builtins_and_dynamic_tools(self, config, workspace, make_script):
        tools_dir = workspace / ".toolgate" / "tools"
        make_script(tools_dir, "greet.py", GREET)

        ws = await Workspace.create(config, scan_dirs=[str(tools_dir)])
        assert len(ws.registry) == 9
        assert "dynamic-greet" in ws.registry
        assert "bash" in ws.registry

    @pytest.mark.asyncio
    async def test_dynamic_disabled(self, workspace, make_script):
        tools_dir = workspace / ".toolgate" / "tools"
        make_script(tools_dir, "greet.py", GREET)
        config = WorkspaceConfig(
            working_dir=str(workspace),
            tools=ToolsConfig(dynamic_tools=DynamicToolsConfig(enabled=False)),
        )
        ws = await Workspace.create(config, scan_dirs=[str(tools_dir)])
        assert "dynamic-greet" not in ws.registry

    @pytest.mark.asyncio
    async def test_reload_picks_up_new_script(self, config, workspace, make_script):
        tools_dir = workspace / ".toolgate" / "tools"
        ws = await Workspace.create(config, scan_dirs=[str(tools_dir)])
        assert len(ws.registry) == 8

        make_script(tools_dir, "greet.py", GREET)
        assert await ws.load_dynamic_tools([str(tools_dir)], reload=True) == 1
        assert "dynamic-greet" in ws.registry

    @pytest.mark.asyncio
    async def test_system_prompt_names_roots(self, config, workspace):
        ws = await Workspace.create(config, scan_dirs=[])
        prompt = ws.system_prompt()
        assert os.path.realpath(workspace) in prompt
        assert "BLOCKED" in prompt


class TestSession:
    @pytest.mark.asyncio
    async def test_full_turn(self, config, workspace, make_script):
        tools_dir = workspace / ".toolgate" / "tools"
        make_script(tools_dir, "greet.py", GREET, body="print(f\"Hello, {args['who']}!\")")
        model = FakeModelClient(turns=[
            [
                tool_call("read_file", {"path": "src/app.py"}, call_id="c1"),
                tool_call("write_file", {"path": "notes.txt", "content": "hi\n"}, call_id="c2"),
                tool_call("dynamic-greet", {"who": "Ada"}, call_id="c3"),
                tool_call("bash", {"command": "git push --force origin main"}, call_id="c4"),
                ModelEvent.stop("tool_use"),
            ],
            [ModelEvent.text_delta("Finished."), ModelEvent.stop()],
        ])

        session = await Session.create(config, model, scan_dirs=[str(tools_dir)])
        outcome = await session.orchestrator.run("tidy up")

        assert outcome.text == "Finished."
        statuses = {r.id: r.status for r in outcome.results}
        assert statuses == {
            "c1": CallStatus.OK,
            "c2": CallStatus.OK,
            "c3": CallStatus.OK,
            "c4": CallStatus.BLOCKED,
        }
        by_id = {r.id: r for r in outcome.results}
        assert by_id["c1"].to_content() == "print('hello')"
        assert "Hello, Ada!" in by_id["c3"].to_content()
        assert (workspace / "notes.txt").read_text() == "hi\n"

        assert model.requests[0]["system"] == session.workspace.system_prompt()
        assert "dynamic-greet" in {t["name"] for t in model.requests[0]["tools"]}

        terminal = [e for e in session.events.history if e.is_terminal]
        assert sorted(e.call_id for e in terminal) == ["c1", "c2", "c3", "c4"]
        assert {e.event for e in terminal if e.call_id == "c4"} == {EventType.ERROR}

    @pytest.mark.asyncio
    async def test_interactive_rejected_without_prompt(self, workspace):
        config = WorkspaceConfig(working_dir=str(workspace))
        model = FakeModelClient(turns=[
            [tool_call("delete_file", {"path": "README.md"}, call_id="d1"), ModelEvent.stop("tool_use")],
        ])
        session = await Session.create(config, model, scan_dirs=[])
        outcome = await session.orchestrator.run("remove the readme")

        assert outcome.results[0].status == CallStatus.BLOCKED
        assert (workspace / "README.md").exists()
