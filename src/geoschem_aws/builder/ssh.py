"""SSH sessions to build nodes: key-only auth, cancellable command execution."""
from __future__ import annotations

import codecs
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

import paramiko

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.commands import upload_command
from geoschem_aws.builder.errors import (
    BuilderError,
    CommandFailed,
    CommandStalled,
    ConnectionFailed,
    OperationCancelled,
)

logger = logging.getLogger(__name__)
remote_logger = logging.getLogger("geoschem_aws.builder.remote")

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_RETRY_DELAY = 10.0
DEFAULT_MAX_ATTEMPTS = 30
POLL_INTERVAL = 0.1
READ_CHUNK = 32768

OutputSink = Callable[[str], None]


def load_private_key(private_key_path: str) -> paramiko.PKey:
    """
    Load a private key file, trying the key types the builder may have written.

    Raises:
        FileNotFoundError: If the key file does not exist.
        ValueError: If the file is unreadable or not a supported private key.
    """
    key_path = Path(private_key_path).expanduser()
    if not key_path.exists():
        raise FileNotFoundError(f"Private key file not found: {private_key_path}")

    last_error: Optional[Exception] = None
    for key_cls in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(str(key_path))
        except (paramiko.SSHException, OSError) as exc:
            last_error = exc
    raise ValueError(f"unreadable or unsupported private key {key_path}: {last_error}")


def log_sink(line: str) -> None:
    remote_logger.info(line)


class SSHSession:
    """
    One authenticated connection to a node.

    Each command runs on its own channel. A session is never reopened: after
    ``close()`` (or a dropped connection) callers obtain a new session from
    ``SSHConnector``.
    """

    def __init__(self, client: paramiko.SSHClient, address: str, username: str) -> None:
        self._client: Optional[paramiko.SSHClient] = client
        self.address = address
        self.username = username

    @property
    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"SSH connection closed to {self.address}")

    def __enter__(self) -> "SSHSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _open_channel(self) -> paramiko.Channel:
        if not self.is_active:
            raise BuilderError(f"SSH session to {self.address} is not connected")
        transport = self._client.get_transport()
        try:
            channel = transport.open_session()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise BuilderError(f"opening channel to {self.address}: {exc}") from exc
        channel.set_combine_stderr(True)
        return channel

    def execute(self, command: str, token: Optional[CancelToken] = None) -> str:
        """
        Run a command to completion.

        Args:
            command: Shell command to execute. Required.
            token: Cancellation token; on cancellation the remote process is killed.

        Returns:
            Combined stdout and stderr.

        Raises:
            ValueError: If command is empty.
            CommandFailed: If the command exits non-zero.
            OperationCancelled: If the token fires first.
        """
        if not command or not isinstance(command, str):
            raise ValueError("command must be a non-empty string")
        logger.debug(f"Executing on {self.address}: {command}")
        chunks: List[str] = []
        exit_code = self._run(command, chunks.append, token or CancelToken())
        output = "".join(chunks)
        if exit_code != 0:
            raise CommandFailed(command, exit_code, output)
        return output

    def execute_stream(
        self,
        command: str,
        sink: Optional[OutputSink] = None,
        token: Optional[CancelToken] = None,
        idle_timeout: Optional[float] = None,
    ) -> None:
        """
        Run a command, forwarding each output line to ``sink`` as it arrives.

        Args:
            command: Shell command to execute. Required.
            sink: Receives output lines without trailing newline. Defaults to logging.
            token: Cancellation token.
            idle_timeout: Kill the command if it is silent this long (seconds).

        Raises:
            CommandFailed: If the command exits non-zero.
            CommandStalled: If the idle timeout fires.
            OperationCancelled: If the token fires first.
        """
        if not command or not isinstance(command, str):
            raise ValueError("command must be a non-empty string")
        sink = sink or log_sink
        logger.debug(f"Streaming on {self.address}: {command}")

        pending = [""]
        tail: List[str] = []

        def on_chunk(text: str) -> None:
            pending[0] += text
            *lines, pending[0] = pending[0].split("\n")
            for line in lines:
                line = line.rstrip("\r")
                tail.append(line)
                del tail[:-50]
                sink(line)

        try:
            exit_code = self._run(command, on_chunk, token or CancelToken(), idle_timeout=idle_timeout)
        finally:
            if pending[0]:
                tail.append(pending[0])
                sink(pending[0].rstrip("\r"))
        if exit_code != 0:
            raise CommandFailed(command, exit_code, "\n".join(tail[-50:]))

    def upload(self, local_path: str, remote_path: str, token: Optional[CancelToken] = None) -> None:
        """
        Copy a small local file to the node by piping it into ``cat``.

        Raises:
            FileNotFoundError: If the local file does not exist.
            CommandFailed: If the remote write fails.
        """
        if not local_path or not isinstance(local_path, str):
            raise ValueError("local_path must be a non-empty string")
        if not remote_path or not isinstance(remote_path, str):
            raise ValueError("remote_path must be a non-empty string")

        local_file = Path(local_path)
        if not local_file.is_file():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        command = upload_command(remote_path)
        chunks: List[str] = []
        exit_code = self._run(command, chunks.append, token or CancelToken(), stdin=local_file.read_bytes())
        if exit_code != 0:
            raise CommandFailed(command, exit_code, "".join(chunks))
        logger.info(f"File uploaded: {local_path} -> {self.address}:{remote_path}")

    def start(self, command: str) -> None:
        """Start a command without waiting for it; used when the connection is expected to drop."""
        channel = self._open_channel()
        try:
            channel.exec_command(command)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise BuilderError(f"starting command on {self.address}: {exc}") from exc
        logger.debug(f"Started on {self.address} without waiting: {command}")

    def test_connection(self, token: Optional[CancelToken] = None) -> None:
        output = self.execute("echo 'SSH connection successful'", token)
        if "SSH connection successful" not in output:
            raise BuilderError(f"unexpected test output: {output}")

    def _run(
        self,
        command: str,
        on_output: OutputSink,
        token: CancelToken,
        idle_timeout: Optional[float] = None,
        stdin: Optional[bytes] = None,
    ) -> int:
        token.raise_if_cancelled()
        channel = self._open_channel()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            channel.exec_command(command)
            if stdin is not None:
                channel.sendall(stdin)
                channel.shutdown_write()

            last_output = time.monotonic()
            while True:
                if token.cancelled:
                    _kill(channel)
                    raise OperationCancelled(f"operation cancelled: {token.reason}")
                received = False
                while channel.recv_ready():
                    data = channel.recv(READ_CHUNK)
                    if not data:
                        break
                    received = True
                    on_output(decoder.decode(data))
                if received:
                    last_output = time.monotonic()
                elif channel.exit_status_ready():
                    break
                elif idle_timeout is not None and time.monotonic() - last_output > idle_timeout:
                    _kill(channel)
                    raise CommandStalled(command, idle_timeout)
                else:
                    time.sleep(POLL_INTERVAL)

            while channel.recv_ready():
                data = channel.recv(READ_CHUNK)
                if not data:
                    break
                on_output(decoder.decode(data))
            remainder = decoder.decode(b"", final=True)
            if remainder:
                on_output(remainder)
            return channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise BuilderError(f"SSH channel to {self.address} failed: {exc}") from exc
        finally:
            channel.close()


def _kill(channel: paramiko.Channel) -> None:
    """Deliver SIGKILL to the remote process (RFC 4254 section 6.9), then drop the channel."""
    try:
        message = paramiko.Message()
        message.add_byte(paramiko.common.cMSG_CHANNEL_REQUEST)
        message.add_int(channel.remote_chanid)
        message.add_string("signal")
        message.add_boolean(False)
        message.add_string("KILL")
        # paramiko has no public API for channel signals.
        channel.transport._send_user_message(message)
    except (paramiko.SSHException, EOFError, OSError) as exc:
        logger.debug(f"Could not signal remote process: {exc}")
    channel.close()


class SSHConnector:
    """Opens ``SSHSession`` values to build nodes using a private key only."""

    def __init__(
        self,
        private_key_path: str,
        username: str = "rocky",
        port: int = 22,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if not private_key_path or not isinstance(private_key_path, str):
            raise ValueError("private_key_path must be a non-empty string")
        if not username or not isinstance(username, str):
            raise ValueError("username must be a non-empty string")
        if not isinstance(port, int) or port <= 0 or port > 65535:
            raise ValueError("port must be an integer between 1 and 65535")

        self.private_key_path = private_key_path
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.retry_delay = retry_delay

    def _timeout(self, token: CancelToken) -> float:
        remaining = token.remaining()
        if remaining is None:
            return self.connect_timeout
        return max(0.1, min(self.connect_timeout, remaining))

    def connect(self, address: str, token: Optional[CancelToken] = None) -> SSHSession:
        """
        Perform one SSH handshake with key-based authentication.

        The host key is accepted without verification: the node was created
        moments ago and its address came from the EC2 API in the same run.

        Raises:
            FileNotFoundError: If the private key file does not exist.
            ValueError: If the private key file cannot be loaded.
            paramiko.SSHException / OSError: If the handshake fails.
            OperationCancelled: If the token has already fired.
        """
        if not address or not isinstance(address, str):
            raise ValueError("address must be a non-empty string")
        token = token or CancelToken()
        token.raise_if_cancelled()

        host, port = address, self.port
        if ":" in address:
            host, port_text = address.rsplit(":", 1)
            port = int(port_text)

        pkey = load_private_key(self.private_key_path)
        timeout = self._timeout(token)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=port,
                username=self.username,
                pkey=pkey,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        logger.info(f"SSH connection established to {self.username}@{host}:{port}")
        return SSHSession(client, address, self.username)

    def wait_for_connection(
        self,
        address: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        token: Optional[CancelToken] = None,
    ) -> SSHSession:
        """
        Retry ``connect`` with a fixed delay until it succeeds.

        A fresh node answers on port 22 well before sshd accepts the key, so
        failed attempts are expected and only logged at debug level.

        Raises:
            ConnectionFailed: If all attempts fail.
            OperationCancelled: If the token fires while waiting.
        """
        if not isinstance(max_attempts, int) or max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer")
        token = token or CancelToken()

        last_error: Optional[BaseException] = None
        for attempt in range(1, max_attempts + 1):
            token.raise_if_cancelled()
            try:
                session = self.connect(address, token)
                logger.info(f"SSH ready after {attempt} attempt(s)")
                return session
            except (OperationCancelled, FileNotFoundError, ValueError):
                raise
            except (paramiko.SSHException, OSError, EOFError) as exc:
                last_error = exc
                logger.debug(f"SSH attempt {attempt}/{max_attempts} to {address} failed: {type(exc).__name__}: {exc}")
            if attempt < max_attempts:
                token.wait(self.retry_delay)

        raise ConnectionFailed(
            f"failed to establish SSH connection to {address} after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
            last_error=last_error,
        )
