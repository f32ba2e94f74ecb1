"""Tests for toolgate custom exceptions.

Covers the exception hierarchy and the structured details attached
to each error.
"""

import pytest

from toolgate.core.models import SafetyVerdict
from toolgate.exceptions import (
    ApprovalRejectedError,
    CommandBlockedError,
    ConfigError,
    DiscoveryError,
    ExecutionAbortedError,
    ExecutionTimeoutError,
    PathNotFoundError,
    ProviderError,
    SandboxViolationError,
    SchemaMismatchError,
    ToolExecutionError,
    ToolgateError,
    UnknownToolError,
)


class TestToolgateError:
    def test_base_error(self):
        err = ToolgateError("something went wrong")
        assert str(err) == "something went wrong"
        assert err.details == {}

    def test_details(self):
        assert ToolgateError("failed", details={"key": "value"}).details == {"key": "value"}

    @pytest.mark.parametrize("cls", [
        SandboxViolationError,
        PathNotFoundError,
        CommandBlockedError,
        ApprovalRejectedError,
        ToolExecutionError,
        SchemaMismatchError,
        UnknownToolError,
        DiscoveryError,
        ProviderError,
        ConfigError,
    ])
    def test_hierarchy(self, cls):
        assert issubclass(cls, ToolgateError)

    def test_execution_subclasses(self):
        assert issubclass(ExecutionTimeoutError, ToolExecutionError)
        assert issubclass(ExecutionAbortedError, ToolExecutionError)


class TestPathErrors:
    def test_sandbox_violation(self):
        err = SandboxViolationError("../x", "Access denied - path outside allowed directories", {"resolved": "/x"})
        assert err.path == "../x"
        assert err.details == {"path": "../x", "resolved": "/x"}

    def test_not_found(self):
        err = PathNotFoundError("a.txt", "/ws/a.txt")
        assert str(err) == "The specified path does not exist: a.txt (/ws/a.txt)"
        assert err.resolved == "/ws/a.txt"


class TestCommandBlockedError:
    def test_carries_verdict(self):
        verdict = SafetyVerdict.block("git push -f", "rewrites remote history", "use --force-with-lease", "git")
        err = CommandBlockedError(verdict)
        assert str(err) == "rewrites remote history"
        assert err.verdict is verdict
        assert err.details == {"command": "git push -f", "tip": "use --force-with-lease"}


class TestApprovalRejectedError:
    def test_without_feedback(self):
        assert str(ApprovalRejectedError("write_file")) == "User rejected write_file"

    def test_with_feedback(self):
        err = ApprovalRejectedError("write_file", "wrong file")
        assert str(err) == "User rejected write_file: wrong file"
        assert err.details["feedback"] == "wrong file"


class TestExecutionErrors:
    def test_tool_execution(self):
        err = ToolExecutionError("bash", "Command exited with code 2")
        assert str(err) == "Tool 'bash' execution failed: Command exited with code 2"
        assert err.tool_name == "bash"

    def test_timeout(self):
        err = ExecutionTimeoutError("bash", 1.5)
        assert str(err) == "Tool 'bash' execution failed: timed out after 1.5 seconds"
        assert err.details["timeout_seconds"] == 1.5

    def test_aborted(self):
        assert "aborted" in str(ExecutionAbortedError("run_python"))


class TestSchemaMismatchError:
    def test_summarizes_validation_errors(self):
        errors = [{"loc": ("count",), "msg": "Input should be a valid integer"}, {"loc": (), "msg": "bad"}]
        err = SchemaMismatchError("double", errors)
        assert str(err) == "Invalid arguments for tool 'double': count: Input should be a valid integer; <root>: bad"
        assert err.errors == errors

    def test_caps_listed_errors(self):
        errors = [{"loc": (f"f{i}",), "msg": "missing"} for i in range(7)]
        assert str(SchemaMismatchError("t", errors)).endswith("... (2 more)")

    def test_plain_message(self):
        assert str(SchemaMismatchError("t", "not JSON")) == "Invalid arguments for tool 't': not JSON"


class TestOtherErrors:
    def test_unknown_tool(self):
        assert str(UnknownToolError("fly")) == "Unknown tool: fly"

    def test_discovery(self):
        err = DiscoveryError("/tools/x.py", "exited with code 3")
        assert "/tools/x.py" in str(err)
        assert err.script_path == "/tools/x.py"

    def test_provider(self):
        err = ProviderError("ClaudeModelClient", "rate limited")
        assert str(err) == "Provider 'ClaudeModelClient' error: rate limited"
        assert err.provider_name == "ClaudeModelClient"

    def test_config(self):
        err = ConfigError("/p/config.json", "bad")
        assert str(err) == "Invalid configuration in /p/config.json: bad"
        assert err.path == "/p/config.json"
