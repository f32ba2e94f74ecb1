"""Shared test fixtures for the toolgate test suite."""

import asyncio
import json
import textwrap

import pytest

from toolgate.exceptions import ProviderError
from toolgate.execution.sandbox import SandboxConfig, SandboxedExecutor
from toolgate.providers.base import ModelClient, ModelEvent, ProviderConfig
from toolgate.safety.paths import AllowedDirectorySet, PathSandbox
from toolgate.tools.models import ToolCallRequest

SCRIPT_TEMPLATE = """\
import json
import os
import sys
import time

MANIFEST = json.loads({manifest!r})

if os.environ.get("TOOL_ACTION") == "describe":
{describe}
    print(json.dumps(MANIFEST))
    sys.exit(0)

RAW = sys.stdin.readline()
args = {{item["name"]: item["value"] for item in json.loads(RAW or "[]")}}
{body}
"""


@pytest.fixture
def workspace(tmp_path):
    """A small project tree used as the single allowed root."""
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('hello')\n")
    (root / "README.md").write_text("# demo\n")
    return root


@pytest.fixture
def outside(tmp_path):
    """A sibling directory that is never allowed."""
    other = tmp_path / "outside"
    other.mkdir()
    (other / "secret.txt").write_text("secret\n")
    return other


@pytest.fixture
def sandbox(workspace):
    return PathSandbox(AllowedDirectorySet([workspace], working_dir=workspace))


@pytest.fixture
def executor():
    return SandboxedExecutor(SandboxConfig(timeout_seconds=10))


@pytest.fixture
def make_script():
    """Write a Python dynamic tool script.

    `body` runs in the execute phase with `args` (name -> value) and
    `RAW` (the stdin line) in scope. `describe` runs before the manifest
    is printed in the describe phase.
    """

    def _make(directory, filename, manifest, body="print('ok')", describe="pass"):
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_text(
            SCRIPT_TEMPLATE.format(
                manifest=json.dumps(manifest),
                describe=textwrap.indent(textwrap.dedent(describe).strip(), "    "),
                body=textwrap.dedent(body).strip(),
            )
        )
        return path

    return _make


def tool_call(name, arguments, call_id=None):
    """ModelEvent for one tool_use block."""
    extra = {"id": call_id} if call_id else {}
    return ModelEvent.tool_call(ToolCallRequest(tool_name=name, raw_arguments=arguments, **extra))


class FakeModelClient(ModelClient):
    """Scripted model: each stream() replays the next list of events.

    An Exception in a turn's list is raised at that point, and so is one
    scripted as a repair. When the script runs out the model answers
    with plain text and stops.
    """

    def __init__(self, turns=None, repairs=None, stream_delay=0.0):
        super().__init__(ProviderConfig(model="fake-model", retry_base_delay=0.0))
        self.turns = list(turns or [])
        self.repairs = list(repairs or [])
        self.stream_delay = stream_delay
        self.requests = []
        self.repair_calls = []

    async def stream(self, messages, *, tools, system=None):
        self.requests.append({"messages": list(messages), "tools": tools, "system": system})
        if self.stream_delay:
            await asyncio.sleep(self.stream_delay)
        events = self.turns.pop(0) if self.turns else [ModelEvent.text_delta("done"), ModelEvent.stop()]
        for event in events:
            if isinstance(event, Exception):
                raise event
            yield event

    async def repair_arguments(self, request, descriptor, error):
        self.repair_calls.append({"request": request, "tool": descriptor.name, "error": error})
        if not self.repairs:
            raise ProviderError(self.name, "no repair scripted")
        repair = self.repairs.pop(0)
        if isinstance(repair, Exception):
            raise repair
        return repair
