"""Tests for the tool orchestrator.

Covers batch planning and concurrency, result ordering, single-shot
argument repair, error-to-result mapping, the turn loop and
cancellation.
"""

import asyncio

import pytest
from pydantic import BaseModel

from conftest import FakeModelClient, tool_call
from toolgate.core.models import CallStatus, EventType, InteractionClass
from toolgate.exceptions import ProviderError, SandboxViolationError
from toolgate.execution.cancellation import CancellationToken
from toolgate.orchestrator.approval import ApprovalGate
from toolgate.orchestrator.events import EventChannel
from toolgate.orchestrator.turn import ToolOrchestrator, TurnState
from toolgate.providers.base import ModelEvent
from toolgate.tools.builtin import ToolEnvironment, register_all_builtins
from toolgate.tools.models import ToolCallRequest
from toolgate.tools.registry import StaticTool, ToolRegistry


class SleepArgs(BaseModel):
    label: str = "x"
    delay: float = 0.0


class CountArgs(BaseModel):
    count: int


class Rendezvous:
    """Handler that only succeeds when `parties` calls are in flight together."""

    def __init__(self, parties):
        self.parties = parties
        self.arrived = 0
        self.event = asyncio.Event()

    async def __call__(self, args, ctx):
        self.arrived += 1
        if self.arrived >= self.parties:
            self.event.set()
        await asyncio.wait_for(self.event.wait(), timeout=2)
        return "met"


@pytest.fixture
def log():
    return []


@pytest.fixture
def registry(log):
    registry = ToolRegistry()

    async def sleeper(args, ctx):
        log.append(("start", args.label))
        await asyncio.sleep(args.delay)
        log.append(("end", args.label))
        return args.label

    async def confirmed(args, ctx):
        await ctx.confirm(f"confirm {args.label}")
        return await sleeper(args, ctx)

    def doubler(args, ctx):
        return args.count * 2

    def escape(args, ctx):
        raise SandboxViolationError("/etc/passwd", "Access denied - path outside allowed directories")

    def crash(args, ctx):
        raise RuntimeError("boom")

    registry.register(StaticTool("sleep_read", "Sleep then echo", SleepArgs, sleeper, InteractionClass.READ_ONLY))
    registry.register(StaticTool("sleep_write", "Sleep then echo", SleepArgs, sleeper, InteractionClass.MUTATING))
    registry.register(StaticTool("ask", "Confirm then echo", SleepArgs, confirmed, InteractionClass.INTERACTIVE))
    registry.register(StaticTool("double", "Double a count", CountArgs, doubler))
    registry.register(StaticTool("escape", "Touch a forbidden path", SleepArgs, escape))
    registry.register(StaticTool("crash", "Raise", SleepArgs, crash))
    registry.register(
        StaticTool("slow", "Too slow", SleepArgs, sleeper, InteractionClass.READ_ONLY, timeout_seconds=0.2)
    )
    return registry


def _orchestrator(registry, model=None, **kwargs):
    kwargs.setdefault("approval", ApprovalGate(auto_accept=True))
    return ToolOrchestrator(registry, model or FakeModelClient(), **kwargs)


def _calls(*specs):
    return [ToolCallRequest(id=f"c{i}", tool_name=name, raw_arguments=args) for i, (name, args) in enumerate(specs)]


class TestPlanBatches:
    def test_non_interactive_calls_share_a_batch(self, registry):
        orchestrator = _orchestrator(registry)
        calls = _calls(
            ("sleep_read", {}),
            ("sleep_write", {}),
            ("ask", {}),
            ("sleep_read", {}),
            ("ask", {}),
            ("ask", {}),
            ("unknown", {}),
        )
        assert orchestrator.plan_batches(calls) == [[0, 1], [2], [3], [4], [5], [6]]

    def test_empty(self, registry):
        assert _orchestrator(registry).plan_batches([]) == []


class TestDispatch:
    @pytest.mark.asyncio
    async def test_read_only_calls_run_concurrently(self, registry):
        rendezvous = Rendezvous(2)
        registry.register(StaticTool("meet", "Meet", SleepArgs, rendezvous, InteractionClass.READ_ONLY))
        results = await _orchestrator(registry).dispatch(_calls(("meet", {}), ("meet", {})), CancellationToken())
        assert [r.status for r in results] == [CallStatus.OK, CallStatus.OK]

    @pytest.mark.asyncio
    async def test_mutating_and_read_only_run_concurrently(self, registry):
        rendezvous = Rendezvous(2)
        registry.register(StaticTool("meet_r", "Meet", SleepArgs, rendezvous, InteractionClass.READ_ONLY))
        registry.register(StaticTool("meet_w", "Meet", SleepArgs, rendezvous, InteractionClass.MUTATING))
        results = await _orchestrator(registry).dispatch(_calls(("meet_r", {}), ("meet_w", {})), CancellationToken())
        assert all(r.status == CallStatus.OK for r in results)

    @pytest.mark.asyncio
    async def test_results_in_request_order(self, registry, log):
        calls = _calls(("sleep_read", {"label": "a", "delay": 0.2}), ("sleep_read", {"label": "b"}))
        results = await _orchestrator(registry).dispatch(calls, CancellationToken())
        assert [r.id for r in results] == ["c0", "c1"]
        assert [r.payload for r in results] == ["a", "b"]
        # b finished first, so the two really overlapped
        assert log.index(("end", "b")) < log.index(("end", "a"))

    @pytest.mark.asyncio
    async def test_interactive_call_runs_alone(self, registry, log):
        calls = _calls(
            ("sleep_read", {"label": "a", "delay": 0.05}),
            ("ask", {"label": "b", "delay": 0.05}),
            ("sleep_write", {"label": "c"}),
        )
        results = await _orchestrator(registry).dispatch(calls, CancellationToken())
        assert all(r.status == CallStatus.OK for r in results)
        assert log == [("start", "a"), ("end", "a"), ("start", "b"), ("end", "b"), ("start", "c"), ("end", "c")]

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, registry):
        calls = _calls(("crash", {}), ("sleep_read", {"label": "fine"}), ("slow", {"delay": 5}))
        results = await _orchestrator(registry).dispatch(calls, CancellationToken())
        assert [r.status for r in results] == [CallStatus.ERROR, CallStatus.OK, CallStatus.TIMEOUT]
        assert results[0].message == "RuntimeError: boom"
        assert "timed out after 0.2 seconds" in results[2].message


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_unknown_tool_not_repaired(self, registry):
        model = FakeModelClient(repairs=[{}])
        result = await _orchestrator(registry, model).execute_call(
            ToolCallRequest(tool_name="nope", raw_arguments={}), CancellationToken()
        )
        assert result.status == CallStatus.ERROR
        assert result.message == "Unknown tool: nope"
        assert model.repair_calls == []

    @pytest.mark.asyncio
    async def test_sandbox_violation_is_blocked(self, registry):
        result = await _orchestrator(registry).execute_call(
            ToolCallRequest(tool_name="escape", raw_arguments={}), CancellationToken()
        )
        assert result.status == CallStatus.BLOCKED
        assert result.to_content().startswith("[BLOCKED] Access denied")

    @pytest.mark.asyncio
    async def test_rejected_approval_is_blocked(self, registry):
        orchestrator = _orchestrator(registry, approval=ApprovalGate())
        result = await orchestrator.execute_call(ToolCallRequest(tool_name="ask", raw_arguments={}), CancellationToken())
        assert result.status == CallStatus.BLOCKED
        assert "User rejected ask" in result.message

    @pytest.mark.asyncio
    async def test_result_message_bounded(self, registry):
        def noisy(args, ctx):
            raise RuntimeError("x" * 50_000)

        registry.register(StaticTool("noisy", "Noisy", SleepArgs, noisy))
        result = await _orchestrator(registry).execute_call(
            ToolCallRequest(tool_name="noisy", raw_arguments={}), CancellationToken()
        )
        assert len(result.message) < 11_000
        assert result.message.endswith("[truncated]")


class TestRepair:
    @pytest.mark.asyncio
    async def test_repaired_once(self, registry):
        model = FakeModelClient(repairs=[{"count": 2}])
        orchestrator = _orchestrator(registry, model)
        result = await orchestrator.execute_call(
            ToolCallRequest(tool_name="double", raw_arguments={"count": "many"}), CancellationToken()
        )
        assert result.status == CallStatus.OK
        assert result.payload == 4
        assert result.repaired
        assert len(model.repair_calls) == 1
        assert model.repair_calls[0]["tool"] == "double"
        assert "count" in model.repair_calls[0]["error"]

    @pytest.mark.asyncio
    async def test_malformed_json_string_repaired(self, registry):
        model = FakeModelClient(repairs=['{"count": 5}'])
        result = await _orchestrator(registry, model).execute_call(
            ToolCallRequest(tool_name="double", raw_arguments='{"count": '), CancellationToken()
        )
        assert result.status == CallStatus.OK
        assert result.payload == 10

    @pytest.mark.asyncio
    async def test_second_failure_is_hard_error(self, registry):
        model = FakeModelClient(repairs=[{"count": "still bad"}, {"count": 1}])
        result = await _orchestrator(registry, model).execute_call(
            ToolCallRequest(tool_name="double", raw_arguments={"count": "many"}), CancellationToken()
        )
        assert result.status == CallStatus.ERROR
        assert "Repair attempt failed" in result.message
        assert len(model.repair_calls) == 1

    @pytest.mark.asyncio
    async def test_repair_provider_failure(self, registry):
        model = FakeModelClient()
        result = await _orchestrator(registry, model).execute_call(
            ToolCallRequest(tool_name="double", raw_arguments={}), CancellationToken()
        )
        assert result.status == CallStatus.ERROR
        assert "no repair scripted" in result.message

    @pytest.mark.asyncio
    async def test_unexpected_repair_failure_is_contained(self, registry):
        model = FakeModelClient(repairs=[RuntimeError("connection reset")])
        calls = _calls(("double", {"count": "many"}), ("sleep_read", {"label": "fine"}))
        results = await _orchestrator(registry, model).dispatch(calls, CancellationToken())
        assert [r.status for r in results] == [CallStatus.ERROR, CallStatus.OK]
        assert "Repair attempt failed: RuntimeError: connection reset" in results[0].message


class TestEvents:
    @pytest.mark.asyncio
    async def test_one_terminal_event_per_call(self, registry):
        channel = EventChannel()
        orchestrator = _orchestrator(registry, events=channel)
        await orchestrator.dispatch(_calls(("sleep_read", {"label": "ok"}), ("crash", {})), CancellationToken())

        ok_events = [e.event for e in channel.events_for("c0")]
        assert ok_events == [EventType.INIT, EventType.COMPLETION]
        assert channel.events_for("c0")[0].message == "sleep_read(label=ok, delay=0.0)"

        crash_events = channel.events_for("c1")
        assert [e.event for e in crash_events] == [EventType.INIT, EventType.ERROR]
        assert sum(e.is_terminal for e in crash_events) == 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_tool_results_go_back_to_model(self, registry):
        model = FakeModelClient(
            turns=[
                [
                    ModelEvent.text_delta("Let me look"),
                    tool_call("sleep_read", {"label": "a"}, call_id="call-1"),
                    ModelEvent.stop("tool_use"),
                ],
                [ModelEvent.text_delta("All "), ModelEvent.text_delta("done"), ModelEvent.stop()],
            ]
        )
        orchestrator = _orchestrator(registry, model, system="be careful")
        outcome = await orchestrator.run("inspect a")

        assert outcome.text == "All done"
        assert not outcome.cancelled
        assert [r.id for r in outcome.results] == ["call-1"]
        assert len(model.requests) == 2
        assert model.requests[0]["system"] == "be careful"
        assert {t["name"] for t in model.requests[0]["tools"]} >= {"sleep_read", "ask"}

        assert [m["role"] for m in orchestrator.messages] == ["user", "assistant", "user", "assistant"]
        assert orchestrator.messages[1]["content"] == [
            {"type": "text", "text": "Let me look"},
            {"type": "tool_use", "id": "call-1", "name": "sleep_read", "input": {"label": "a"}},
        ]
        tool_result = orchestrator.messages[2]["content"][0]
        assert tool_result == {"type": "tool_result", "tool_use_id": "call-1", "content": "a", "is_error": False}
        assert orchestrator.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_turn_limit(self, registry):
        turn = [tool_call("sleep_read", {}), ModelEvent.stop("tool_use")]
        model = FakeModelClient(turns=[turn] * 5)
        outcome = await _orchestrator(registry, model, max_turns=3).run("loop forever")
        assert outcome.hit_turn_limit
        assert len(outcome.turns) == 3

    @pytest.mark.asyncio
    async def test_provider_error_ends_run(self, registry):
        model = FakeModelClient(turns=[[ProviderError("FakeModelClient", "overloaded")]])
        outcome = await _orchestrator(registry, model).run("hi")
        assert "overloaded" in outcome.turns[-1].error
        assert outcome.results == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_dispatch(self, registry, log):
        model = FakeModelClient(
            turns=[[
                tool_call("sleep_read", {"label": "long", "delay": 10}, call_id="c1"),
                tool_call("ask", {"label": "later"}, call_id="c2"),
                ModelEvent.stop("tool_use"),
            ]]
        )
        channel = EventChannel()
        orchestrator = _orchestrator(registry, model, events=channel)
        fired = []
        asyncio.get_running_loop().call_later(
            0.2, lambda: fired.extend([orchestrator.cancel(), orchestrator.cancel()])
        )

        outcome = await asyncio.wait_for(orchestrator.run("do things"), timeout=5)

        assert fired == [True, False]
        assert outcome.cancelled
        assert [r.status for r in outcome.results] == [CallStatus.ABORTED, CallStatus.ABORTED]
        assert ("start", "later") not in log
        assert len(model.requests) == 1
        assert orchestrator.messages[-1]["role"] == "user"
        assert [e.event for e in channel.events_for("c2")] == [EventType.ERROR]
        assert orchestrator.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_model(self, registry):
        model = FakeModelClient(stream_delay=10)
        orchestrator = _orchestrator(registry, model)
        asyncio.get_running_loop().call_later(0.2, orchestrator.cancel)

        outcome = await asyncio.wait_for(orchestrator.run("hi"), timeout=5)
        assert outcome.cancelled
        assert orchestrator.messages == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_skips_model(self, registry):
        model = FakeModelClient()
        token = CancellationToken()
        token.cancel()
        outcome = await _orchestrator(registry, model).run("hi", token=token)
        assert outcome.cancelled
        assert model.requests == []


@pytest.mark.adversarial
class TestBuiltinsThroughOrchestrator:
    """Real built-in tools behind the orchestrator."""

    @pytest.fixture
    def builtins(self, sandbox, executor):
        registry = ToolRegistry()
        register_all_builtins(registry, ToolEnvironment(sandbox, executor))
        return registry

    @pytest.mark.asyncio
    async def test_blocked_command_message(self, builtins):
        result = await _orchestrator(builtins).execute_call(
            ToolCallRequest(tool_name="bash", raw_arguments={"command": "git push --force origin main"}),
            CancellationToken(),
        )
        assert result.status == CallStatus.BLOCKED
        assert result.message.startswith("BLOCKED\n\nReason: git push --force overwrites remote commit history")
        assert "Tip: Use 'git push --force-with-lease'" in result.message

    @pytest.mark.asyncio
    async def test_cancel_kills_subprocess(self, builtins):
        orchestrator = _orchestrator(builtins)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.3, token.cancel)
        result = await asyncio.wait_for(
            orchestrator.execute_call(
                ToolCallRequest(tool_name="bash", raw_arguments={"command": "sleep 30"}), token
            ),
            timeout=5,
        )
        assert result.status == CallStatus.ABORTED

    @pytest.mark.asyncio
    async def test_subprocess_timeout_is_isolated(self, builtins):
        calls = _calls(("bash", {"command": "sleep 30", "timeout": 0.5}), ("bash", {"command": "echo ok"}))
        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await asyncio.wait_for(_orchestrator(builtins).dispatch(calls, CancellationToken()), timeout=10)
        assert [r.status for r in results] == [CallStatus.TIMEOUT, CallStatus.OK]
        assert results[1].payload == "ok"
        assert loop.time() - started < 10

    @pytest.mark.asyncio
    async def test_read_outside_is_blocked(self, builtins, outside):
        result = await _orchestrator(builtins).execute_call(
            ToolCallRequest(tool_name="read_file", raw_arguments={"path": str(outside / "secret.txt")}),
            CancellationToken(),
        )
        assert result.status == CallStatus.BLOCKED
        assert "secret" not in (result.payload or "")
