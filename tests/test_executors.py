"""Tests for local and SSH command executors."""
import io
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from homonculus.backends.ssh_runner import SSHConfig, SSHExecutor, load_private_key
from homonculus.backends.subprocess_runner import LocalExecutor
from homonculus.errors import ExecutionError, SSHConnectionError
from homonculus.interfaces.process import format_command, run_and_capture

from conftest import FakeExecutor


class TestFormatCommand:
    def test_no_args(self):
        assert format_command("ls", []) == "ls"

    def test_with_args(self):
        assert format_command("rm", ["-f", "/tmp/a"]) == "rm -f /tmp/a"


class TestLocalExecutor:
    """Test LocalExecutor against real child processes."""

    def test_name(self):
        assert LocalExecutor().name == "local-shell"

    def test_streams_stdout(self):
        out = io.StringIO()
        assert LocalExecutor().execute("echo", ["hello", "world"], stdout=out) == 0
        assert out.getvalue() == "hello world\n"

    def test_nonzero_exit_carries_code(self):
        with pytest.raises(ExecutionError) as exc_info:
            LocalExecutor().execute("sh", ["-c", "exit 3"])
        assert exc_info.value.exit_code == 3
        assert "exited with code 3" in str(exc_info.value)

    def test_spawn_failure_is_unknown_exit_code(self):
        with pytest.raises(ExecutionError) as exc_info:
            LocalExecutor().execute("/nonexistent/homonculus-binary")
        assert exc_info.value.exit_code == ExecutionError.UNKNOWN_EXIT_CODE
        assert exc_info.value.reason

    def test_streams_stderr(self):
        err = io.StringIO()
        LocalExecutor().execute("sh", ["-c", "echo oops >&2"], stderr=err)
        assert err.getvalue() == "oops\n"

    def test_invalid_utf8_does_not_stall_output(self):
        out = io.StringIO()
        LocalExecutor().execute(
            "sh",
            ["-c", "printf '\\377\\n'; head -c 300000 /dev/zero | tr '\\0' x"],
            stdout=out,
        )
        lines = out.getvalue().split("\n")
        assert lines[0] == "\ufffd"
        assert lines[1] == "x" * 300000


class TestRunAndCapture:
    def test_returns_captured_output(self):
        result = run_and_capture(FakeExecutor(output="done\n"), "qemu-img", "info")
        assert result.success
        assert result.stdout == "done\n"

    def test_failure_carries_captured_stderr(self):
        executor = FakeExecutor(fail={"mkisofs": 2})
        with pytest.raises(ExecutionError) as exc_info:
            run_and_capture(executor, "mkisofs", "-output", "/tmp/x.iso")
        assert exc_info.value.exit_code == 2
        assert exc_info.value.stderr == "mkisofs failed\n"
        assert "stderr: mkisofs failed" in str(exc_info.value)


class TestLoadPrivateKey:
    def test_missing_key_file(self, tmp_path):
        with pytest.raises(SSHConnectionError, match="failed to read SSH key"):
            load_private_key(str(tmp_path / "id_missing"))

    def test_unparseable_key(self, tmp_path):
        key = tmp_path / "id_bad"
        key.write_text("not a key")
        with pytest.raises(SSHConnectionError, match="failed to parse SSH key"):
            load_private_key(str(key))

    def test_expands_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".ssh").mkdir()
        (tmp_path / ".ssh" / "id_test").write_text("key material")
        fake_key = MagicMock()
        with patch.object(paramiko.Ed25519Key, "from_private_key", return_value=fake_key) as loader:
            assert load_private_key("~/.ssh/id_test") is fake_key
        assert loader.call_args[0][0].read() == "key material"


def _channel(exit_status=0, stdout=b"", stderr=b""):
    channel = MagicMock()
    channel.makefile.return_value = io.BytesIO(stdout)
    channel.makefile_stderr.return_value = io.BytesIO(stderr)
    channel.recv_exit_status.return_value = exit_status
    return channel


class TestSSHExecutor:
    """Test SSHExecutor with a mocked paramiko client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get_transport.return_value.is_active.return_value = True
        with patch("homonculus.backends.ssh_runner.paramiko.SSHClient", return_value=client), patch(
            "homonculus.backends.ssh_runner.load_private_key", return_value=MagicMock()
        ):
            yield client

    @pytest.fixture
    def config(self):
        return SSHConfig(host="10.0.0.5", user="ubuntu", key_path="~/.ssh/id_ed25519", port=0)

    def test_connects_with_default_port(self, client, config):
        executor = SSHExecutor(config)
        assert executor.name == "ssh-10.0.0.5"
        args, kwargs = client.connect.call_args
        assert args == ("10.0.0.5",)
        assert kwargs["port"] == 22
        assert kwargs["username"] == "ubuntu"

    def test_insecure_policy_auto_adds(self, client, config):
        SSHExecutor(config)
        policy = client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.AutoAddPolicy)

    def test_known_hosts_policy_rejects_unknown(self, client, config):
        config.host_key_policy = "known_hosts"
        SSHExecutor(config)
        client.load_system_host_keys.assert_called_once()
        policy = client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.RejectPolicy)

    def test_unknown_policy(self, client, config):
        config.host_key_policy = "trust-me"
        with pytest.raises(SSHConnectionError, match="unknown host key policy"):
            SSHExecutor(config)

    def test_dial_failure(self, client, config):
        client.connect.side_effect = OSError("connection refused")
        with pytest.raises(SSHConnectionError, match="connection refused"):
            SSHExecutor(config)
        client.close.assert_called_once()

    def test_execute_opens_fresh_session(self, client, config):
        transport = client.get_transport.return_value
        transport.open_session.side_effect = [_channel(stdout=b"a\n"), _channel(stdout=b"b\n")]
        executor = SSHExecutor(config)

        out = io.StringIO()
        executor.execute("echo a", stdout=out)
        executor.execute("echo b", stdout=out)

        assert transport.open_session.call_count == 2
        assert out.getvalue() == "a\nb\n"

    def test_execute_nonzero_exit(self, client, config):
        client.get_transport.return_value.open_session.return_value = _channel(
            exit_status=1, stderr=b"boom\n"
        )
        err = io.StringIO()
        with pytest.raises(ExecutionError) as exc_info:
            SSHExecutor(config).execute("false", stderr=err)
        assert exc_info.value.exit_code == 1
        assert err.getvalue() == "boom\n"

    def test_execute_without_exit_status(self, client, config):
        client.get_transport.return_value.open_session.return_value = _channel(exit_status=-1)
        with pytest.raises(ExecutionError) as exc_info:
            SSHExecutor(config).execute("true")
        assert exc_info.value.exit_code == ExecutionError.UNKNOWN_EXIT_CODE

    def test_session_failure(self, client, config):
        client.get_transport.return_value.open_session.side_effect = paramiko.SSHException("nope")
        with pytest.raises(ExecutionError, match="failed to create SSH session"):
            SSHExecutor(config).execute("true")

    def test_exec_failure_closes_channel(self, client, config):
        channel = _channel()
        channel.exec_command.side_effect = paramiko.SSHException("channel closed")
        client.get_transport.return_value.open_session.return_value = channel
        with pytest.raises(ExecutionError, match="channel closed"):
            SSHExecutor(config).execute("true")
        channel.close.assert_called_once()

    def test_invalid_utf8_output_is_replaced(self, client, config):
        client.get_transport.return_value.open_session.return_value = _channel(
            stdout=b"\xffok\n", stderr=b"\xfe\n"
        )
        out, err = io.StringIO(), io.StringIO()
        SSHExecutor(config).execute("cat blob", stdout=out, stderr=err)
        assert out.getvalue() == "\ufffdok\n"
        assert err.getvalue() == "\ufffd\n"

    def test_close_is_idempotent(self, client, config):
        executor = SSHExecutor(config)
        executor.close()
        executor.close()
        client.close.assert_called_once()
        with pytest.raises(ExecutionError, match="closed"):
            executor.execute("true")

    def test_context_manager_closes(self, client, config):
        with SSHExecutor(config):
            pass
        client.close.assert_called_once()
