import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.errors import (
    BuilderError,
    CommandFailed,
    CommandStalled,
    ConnectionFailed,
    OperationCancelled,
)
from geoschem_aws.builder.ssh import SSHConnector, SSHSession


class FakeChannel:
    """Minimal paramiko.Channel stand-in that replays output chunks."""

    def __init__(self, chunks=(), exit_status=0, hang=False):
        self.chunks = [c.encode() if isinstance(c, str) else c for c in chunks]
        self.exit_status = exit_status
        self.hang = hang
        self.closed = False
        self.command = None
        self.stdin = b""
        self.remote_chanid = 7
        self.transport = MagicMock()

    def set_combine_stderr(self, combine):
        pass

    def exec_command(self, command):
        self.command = command

    def sendall(self, data):
        self.stdin += data

    def shutdown_write(self):
        pass

    def recv_ready(self):
        return bool(self.chunks)

    def recv(self, size):
        return self.chunks.pop(0)

    def exit_status_ready(self):
        return not self.hang and not self.chunks

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


def make_session(*channels):
    client = MagicMock()
    transport = client.get_transport.return_value
    transport.is_active.return_value = True
    transport.open_session.side_effect = list(channels)
    return SSHSession(client, "203.0.113.10", "rocky"), client


class TestExecute:
    """Test cases for SSHSession.execute."""

    def test_returns_combined_output(self):
        """Test that output is collected and the channel closed."""
        channel = FakeChannel(["hello ", "world\n"])
        session, _ = make_session(channel)
        assert session.execute("echo hello world") == "hello world\n"
        assert channel.command == "echo hello world"
        assert channel.closed is True

    def test_nonzero_exit(self):
        """Test that a failing command raises CommandFailed with its output."""
        channel = FakeChannel(["No such file\n"], exit_status=2)
        session, _ = make_session(channel)
        with pytest.raises(CommandFailed) as exc_info:
            session.execute("test -f Dockerfile")
        assert exc_info.value.exit_code == 2
        assert "No such file" in str(exc_info.value)

    def test_empty_command(self):
        """Test that an empty command is rejected."""
        session, _ = make_session()
        with pytest.raises(ValueError):
            session.execute("")

    def test_closed_session(self):
        """Test that a closed session refuses to run commands."""
        session, client = make_session(FakeChannel())
        session.close()
        client.close.assert_called_once()
        with pytest.raises(BuilderError, match="not connected"):
            session.execute("true")

    def test_channel_error_wrapped(self):
        """Test that a transport failure surfaces as BuilderError."""
        session, client = make_session()
        client.get_transport.return_value.open_session.side_effect = paramiko.SSHException("boom")
        with pytest.raises(BuilderError, match="boom"):
            session.execute("true")

    def test_already_cancelled(self):
        """Test that nothing is started once the token fired."""
        channel = FakeChannel()
        session, client = make_session(channel)
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            session.execute("true", token)
        client.get_transport.return_value.open_session.assert_not_called()


class TestExecuteStream:
    """Test cases for SSHSession.execute_stream."""

    def test_lines_forwarded(self):
        """Test that output is split into lines, including a trailing partial line."""
        channel = FakeChannel(["STEP 1/3\r\nSTEP 2", "/3\nSTEP 3/3"])
        session, _ = make_session(channel)
        lines = []
        session.execute_stream("podman build .", lines.append)
        assert lines == ["STEP 1/3", "STEP 2/3", "STEP 3/3"]

    def test_failure_keeps_tail(self):
        """Test that a failing stream reports the last lines of output."""
        output = "".join(f"line {i}\n" for i in range(100))
        channel = FakeChannel([output], exit_status=1)
        session, _ = make_session(channel)
        with pytest.raises(CommandFailed) as exc_info:
            session.execute_stream("podman build .", lambda line: None)
        assert "line 99" in exc_info.value.output
        assert "line 10\n" not in exc_info.value.output

    def test_cancel_kills_remote_process(self):
        """Test that cancellation signals the remote process and closes the channel."""
        channel = FakeChannel(hang=True)
        session, _ = make_session(channel)
        token = CancelToken()
        timer = threading.Timer(0.2, token.cancel, args=("received SIGINT",))
        timer.start()
        with pytest.raises(OperationCancelled, match="SIGINT"):
            session.execute_stream("podman build .", lambda line: None, token)
        timer.join()
        channel.transport._send_user_message.assert_called_once()
        message = channel.transport._send_user_message.call_args.args[0]
        assert b"signal" in message.asbytes()
        assert b"KILL" in message.asbytes()
        assert channel.closed is True

    def test_idle_timeout(self):
        """Test that a silent command is killed after the idle timeout."""
        channel = FakeChannel(hang=True)
        session, _ = make_session(channel)
        with pytest.raises(CommandStalled):
            session.execute_stream("podman build .", lambda line: None, idle_timeout=0.2)
        assert channel.closed is True


class TestUpload:
    """Test cases for SSHSession.upload."""

    def test_upload_pipes_file(self, tmp_path):
        """Test that the file content is sent on stdin."""
        local = tmp_path / "config.yaml"
        local.write_text("key: value\n")
        channel = FakeChannel()
        session, _ = make_session(channel)
        session.upload(str(local), "/tmp/config.yaml")
        assert channel.stdin == b"key: value\n"
        assert channel.command == "cat > '/tmp/config.yaml'"

    def test_missing_local_file(self, tmp_path):
        """Test that a missing local file is reported."""
        session, _ = make_session()
        with pytest.raises(FileNotFoundError):
            session.upload(str(tmp_path / "missing"), "/tmp/x")


class TestSSHConnector:
    """Test cases for SSHConnector."""

    def test_invalid_arguments(self):
        """Test constructor validation."""
        with pytest.raises(ValueError):
            SSHConnector("")
        with pytest.raises(ValueError):
            SSHConnector("/tmp/key.pem", port=0)

    @patch("geoschem_aws.builder.ssh.load_private_key")
    @patch("geoschem_aws.builder.ssh.paramiko.SSHClient")
    def test_connect_uses_key_only(self, mock_client_cls, mock_load_key):
        """Test that agent and key discovery are disabled."""
        connector = SSHConnector("/tmp/key.pem")
        session = connector.connect("203.0.113.10")
        kwargs = mock_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["hostname"] == "203.0.113.10"
        assert kwargs["port"] == 22
        assert kwargs["username"] == "rocky"
        assert kwargs["pkey"] is mock_load_key.return_value
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False
        assert session.address == "203.0.113.10"

    @patch("geoschem_aws.builder.ssh.load_private_key")
    @patch("geoschem_aws.builder.ssh.paramiko.SSHClient")
    def test_connect_with_port(self, mock_client_cls, mock_load_key):
        """Test that host:port addresses are honoured."""
        SSHConnector("/tmp/key.pem").connect("203.0.113.10:2222")
        kwargs = mock_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["hostname"] == "203.0.113.10"
        assert kwargs["port"] == 2222

    def test_connect_missing_key(self, tmp_path):
        """Test that a missing key file fails immediately."""
        connector = SSHConnector(str(tmp_path / "missing.pem"))
        with pytest.raises(FileNotFoundError):
            connector.connect("203.0.113.10")


class TestWaitForConnection:
    """Test cases for SSHConnector.wait_for_connection."""

    def test_succeeds_after_retries(self):
        """Test that attempt N succeeds after N-1 fixed delays."""
        connector = SSHConnector("/tmp/key.pem")
        session = MagicMock()
        token = MagicMock()
        with patch.object(
            connector, "connect", side_effect=[OSError("refused"), paramiko.SSHException("banner"), session]
        ) as mock_connect:
            assert connector.wait_for_connection("203.0.113.10", max_attempts=30, token=token) is session
        assert mock_connect.call_count == 3
        assert token.wait.call_count == 2
        token.wait.assert_called_with(10.0)

    def test_exhausted(self):
        """Test that ConnectionFailed is raised after max attempts."""
        connector = SSHConnector("/tmp/key.pem", retry_delay=1.0)
        token = MagicMock()
        with patch.object(connector, "connect", side_effect=OSError("timed out")):
            with pytest.raises(ConnectionFailed) as exc_info:
                connector.wait_for_connection("203.0.113.10", max_attempts=3, token=token)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, OSError)
        assert token.wait.call_count == 2

    def test_missing_key_not_retried(self):
        """Test that a missing key file is not treated as a transient failure."""
        connector = SSHConnector("/tmp/key.pem")
        with patch.object(connector, "connect", side_effect=FileNotFoundError("missing")) as mock_connect:
            with pytest.raises(FileNotFoundError):
                connector.wait_for_connection("203.0.113.10", token=MagicMock())
        assert mock_connect.call_count == 1

    def test_corrupt_key_not_retried(self, tmp_path):
        """Test that an unloadable key file fails on the first attempt."""
        key_path = tmp_path / "geoschem-builder-x86_64.pem"
        key_path.write_text("not a private key\n")
        connector = SSHConnector(str(key_path))
        token = MagicMock()
        with patch("geoschem_aws.builder.ssh.paramiko.SSHClient") as mock_client_cls:
            with pytest.raises(ValueError, match="unsupported private key"):
                connector.wait_for_connection("203.0.113.10", max_attempts=30, token=token)
        mock_client_cls.return_value.connect.assert_not_called()
        token.wait.assert_not_called()

    def test_cancelled_while_waiting(self):
        """Test that cancellation stops the retry loop."""
        connector = SSHConnector("/tmp/key.pem", retry_delay=30)
        token = CancelToken()
        timer = threading.Timer(0.1, token.cancel)
        timer.start()
        with patch.object(connector, "connect", side_effect=OSError("refused")):
            with pytest.raises(OperationCancelled):
                connector.wait_for_connection("203.0.113.10", max_attempts=5, token=token)
        timer.join()

    def test_invalid_max_attempts(self):
        """Test that max_attempts must be positive."""
        with pytest.raises(ValueError):
            SSHConnector("/tmp/key.pem").wait_for_connection("203.0.113.10", max_attempts=0)
