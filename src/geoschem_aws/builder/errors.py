"""Error types raised by the build node subsystem."""
from __future__ import annotations

from typing import Optional


class BuilderError(RuntimeError):
    """Base class for build node failures. Carries the step it happened in."""

    def __init__(self, message: str, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def at_step(self, step: str) -> "BuilderError":
        """Attach the step name unless an inner step already claimed it."""
        if self.step is None:
            self.step = step
        return self

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class InvalidDescriptor(ValueError):
    """Raised when a build descriptor fails validation."""


class ProvisionTimeout(BuilderError):
    """Node did not become running and reachable in time."""


class ImageNotFound(BuilderError):
    """No machine image matched the architecture filter."""


class CredentialConflict(BuilderError):
    """Provider key pair and local private key are out of sync."""


class KeyPersistenceError(BuilderError):
    """Private key could not be written locally after provider registration."""


class ConnectionFailed(BuilderError):
    """SSH connection attempts were exhausted."""

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class CommandFailed(BuilderError):
    """A remote command exited non-zero."""

    def __init__(self, command: str, exit_code: int, output: str = "", step: Optional[str] = None) -> None:
        message = f"command exited with status {exit_code}: {command}"
        if output.strip():
            message = f"{message}\n--- remote output ---\n{output.rstrip()}"
        super().__init__(message, step=step)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class CommandStalled(CommandFailed):
    """A streamed command produced no output for longer than its idle timeout."""

    def __init__(self, command: str, idle_seconds: float, output: str = "") -> None:
        super().__init__(command, -1, output)
        self.idle_seconds = idle_seconds
        self.message = f"no output for {idle_seconds:.0f}s, command killed: {command}"


class OperationCancelled(BuilderError):
    """The caller cancelled the run or its deadline passed."""


class RebootRecoveryFailed(BuilderError):
    """Node did not come back after a reboot."""


class DescriptorMissing(BuilderError):
    """Build descriptor file (Dockerfile) not found in the cloned source."""


class RegistryAuthFailed(BuilderError):
    """Registry login did not succeed."""


class PushFailed(BuilderError):
    """Pushing a single tag to the registry failed."""

    def __init__(self, tag: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"push of {tag} failed{detail}", step="push")
        self.tag = tag
        self.cause = cause


class TerminationFailed(BuilderError):
    """Node termination could not be confirmed."""
