"""
Tests for the native command runner and its retry policy.
"""

import pytest

from edge_installer.errors import ExternalCommandFailed
from edge_installer.lib.command import LAUNCH_FAILED, run_cmd
from edge_installer.lib.retry import RetryPolicy


class TestRetryPolicy:
    def test_delays_double(self):
        slept = []
        attempts = list(RetryPolicy(max_attempts=5, base_delay=1.0, sleep=slept.append).attempts())
        assert attempts == [1, 2, 3, 4, 5]
        assert slept == [1.0, 2.0, 4.0, 8.0]

    def test_single_attempt_never_sleeps(self):
        slept = []
        assert list(RetryPolicy(max_attempts=1, sleep=slept.append).attempts()) == [1]
        assert slept == []


class TestInvokeNative:
    def test_success_first_try(self, make_runner, sleeps, scripted):
        execute = scripted(0, stdout="ok")
        result = make_runner(execute).invoke_native(["sc.exe", "query", "iotedge"])
        assert result.returncode == 0
        assert result.stdout == "ok"
        assert len(execute.calls) == 1
        assert sleeps == []

    def test_failure_without_backoff_raises(self, make_runner, scripted):
        execute = scripted(5)
        with pytest.raises(ExternalCommandFailed) as exc:
            make_runner(execute).invoke_native(["sc.exe", "start", "iotedge"])
        assert exc.value.exit_code == 5
        assert exc.value.command == ["sc.exe", "start", "iotedge"]
        assert "boom" in exc.value.output
        assert len(execute.calls) == 1

    def test_allow_failure_returns_result(self, make_runner, scripted):
        result = make_runner(scripted(1)).invoke_native(["netsh.exe"], allow_failure=True)
        assert result.returncode == 1

    def test_backoff_succeeds_on_fourth_attempt(self, make_runner, sleeps, scripted):
        execute = scripted(1, 1, 1, 0)
        result = make_runner(execute).invoke_native(["msiexec.exe"], backoff=True)
        assert result.returncode == 0
        assert len(execute.calls) == 4
        assert sleeps == [1.0, 2.0, 4.0]

    def test_backoff_exhausts_five_attempts(self, make_runner, sleeps, scripted):
        execute = scripted(1, 1, 1, 1, 1, 1)
        with pytest.raises(ExternalCommandFailed):
            make_runner(execute).invoke_native(["msiexec.exe"], backoff=True)
        assert len(execute.calls) == 5
        assert sleeps == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_with_allow_failure_returns_last(self, make_runner, scripted):
        execute = scripted(1, 1, 1, 1, 7)
        result = make_runner(execute).invoke_native(["x"], backoff=True, allow_failure=True)
        assert result.returncode == 7

    def test_extra_success_codes(self, make_runner, scripted):
        execute = scripted(3010)
        result = make_runner(execute).invoke_native(["msiexec.exe"], success_codes=(0, 3010))
        assert result.returncode == 3010

    def test_secrets_masked_in_error(self, make_runner, scripted):
        runner = make_runner(scripted(1))
        runner.mask("hunter2", None)
        with pytest.raises(ExternalCommandFailed) as exc:
            runner.invoke_native(["docker", "login", "--password", "hunter2"])
        assert "hunter2" not in str(exc.value)
        assert "***" in exc.value.command

    def test_secrets_masked_in_log(self, make_runner, caplog, scripted):
        runner = make_runner(scripted(0))
        runner.mask("HostName=hub;SharedAccessKey=abc")
        with caplog.at_level("INFO"):
            runner.invoke_native(["tool", "HostName=hub;SharedAccessKey=abc"])
        assert "SharedAccessKey" not in caplog.text
        assert "CMD" in caplog.text


class TestDryRun:
    def test_mutating_command_skipped(self, make_runner, scripted):
        execute = scripted(1)
        result = make_runner(execute, dry_run=True).invoke_native(["sc.exe", "delete", "iotedge"])
        assert result.returncode == 0
        assert execute.calls == []

    def test_query_still_runs(self, make_runner, scripted):
        execute = scripted(1060)
        result = make_runner(execute, dry_run=True).invoke_native(
            ["sc.exe", "query", "iotedge"], allow_failure=True, query=True
        )
        assert result.returncode == 1060
        assert len(execute.calls) == 1


class TestRunCmd:
    def test_missing_executable_is_reported_not_raised(self):
        result = run_cmd(["definitely-not-an-executable-edge-installer"])
        assert result.returncode == LAUNCH_FAILED
        assert result.stderr

    def test_missing_executable_fails_in_runner(self, make_runner):
        runner = make_runner(run_cmd)
        with pytest.raises(ExternalCommandFailed) as exc:
            runner.invoke_native(["definitely-not-an-executable-edge-installer"])
        assert exc.value.exit_code == LAUNCH_FAILED
