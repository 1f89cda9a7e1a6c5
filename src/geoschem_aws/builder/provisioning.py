"""
Provisioning state machine for a fresh Rocky Linux build node.

The workflow refreshes packages, reboots and reconnects when the refresh
requires it, then installs the container runtime and the build toolchain.
The reboot is an explicit branch of the state machine: the connection drops
and the workflow continues on a new session obtained from ``reconnect``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from geoschem_aws.builder import commands
from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.errors import BuilderError, OperationCancelled, RebootRecoveryFailed
from geoschem_aws.builder.ssh import OutputSink, SSHSession
from geoschem_aws.builder.types import StepWarning

logger = logging.getLogger(__name__)

REBOOT_GRACE_PERIOD = 30.0


class ProvisioningState(str, Enum):
    PACKAGES_PENDING = "packages-pending"
    PACKAGES_UPDATED = "packages-updated"
    REBOOT_CHECK = "reboot-check"
    REBOOT_NOT_NEEDED = "reboot-not-needed"
    REBOOT_INITIATED = "reboot-initiated"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    RUNTIME_INSTALLED = "runtime-installed"
    TOOLS_INSTALLED = "tools-installed"
    READY = "ready"


S = ProvisioningState

TRANSITIONS: Dict[ProvisioningState, FrozenSet[ProvisioningState]] = {
    # PACKAGES_PENDING -> REBOOT_NOT_NEEDED only when the update is skipped.
    S.PACKAGES_PENDING: frozenset({S.PACKAGES_UPDATED, S.REBOOT_NOT_NEEDED}),
    S.PACKAGES_UPDATED: frozenset({S.REBOOT_CHECK}),
    S.REBOOT_CHECK: frozenset({S.REBOOT_NOT_NEEDED, S.REBOOT_INITIATED}),
    S.REBOOT_INITIATED: frozenset({S.RECONNECTING}),
    S.RECONNECTING: frozenset({S.RECONNECTED}),
    S.RECONNECTED: frozenset({S.RUNTIME_INSTALLED}),
    S.REBOOT_NOT_NEEDED: frozenset({S.RUNTIME_INSTALLED}),
    S.RUNTIME_INSTALLED: frozenset({S.TOOLS_INSTALLED}),
    S.TOOLS_INSTALLED: frozenset({S.READY}),
    S.READY: frozenset(),
}

# Step names reported with failures.
STEP_NAMES = {
    S.PACKAGES_UPDATED: "update-packages",
    S.REBOOT_CHECK: "reboot-check",
    S.RECONNECTED: "reboot-recovery",
    S.RUNTIME_INSTALLED: "install-runtime",
    S.TOOLS_INSTALLED: "install-tools",
}

Reconnect = Callable[[CancelToken], SSHSession]


@dataclass
class ProvisioningResult:
    session: SSHSession
    history: List[ProvisioningState] = field(default_factory=list)
    warnings: List[StepWarning] = field(default_factory=list)

    @property
    def rebooted(self) -> bool:
        return S.REBOOT_INITIATED in self.history


def parse_reboot_check(output: str) -> Optional[bool]:
    """Interpret ``needs-restarting -r`` exit status echoed as the last output line."""
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    if not lines:
        return None
    if lines[-1] == "1":
        return True
    if lines[-1] == "0":
        return False
    return None


class ProvisioningWorkflow:
    """Drives a node from ``PACKAGES_PENDING`` to ``READY`` in strict order."""

    def __init__(
        self,
        session: SSHSession,
        reconnect: Reconnect,
        architecture: str = "x86_64",
        login_user: str = "rocky",
        privilege_group: str = "wheel",
        skip_update: bool = False,
        reboot_grace_period: float = REBOOT_GRACE_PERIOD,
        sink: Optional[OutputSink] = None,
    ) -> None:
        if session is None:
            raise ValueError("session is required")
        if reconnect is None:
            raise ValueError("reconnect is required")
        self.session = session
        self.reconnect = reconnect
        self.architecture = architecture
        self.login_user = login_user
        self.privilege_group = privilege_group
        self.skip_update = skip_update
        self.reboot_grace_period = reboot_grace_period
        self.sink = sink
        self.state = S.PACKAGES_PENDING
        self.history: List[ProvisioningState] = [S.PACKAGES_PENDING]
        self.warnings: List[StepWarning] = []

    def _transition(self, target: ProvisioningState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise BuilderError(f"invalid provisioning transition {self.state.value} -> {target.value}")
        logger.debug(f"Provisioning: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def _stream(self, step: ProvisioningState, command: str, token: CancelToken) -> None:
        try:
            self.session.execute_stream(command, self.sink, token)
        except OperationCancelled:
            raise
        except BuilderError as exc:
            logger.error(f"Provisioning step {STEP_NAMES[step]} failed: {exc}")
            raise exc.at_step(STEP_NAMES[step])

    def run(self, token: Optional[CancelToken] = None) -> ProvisioningResult:
        """
        Execute every remaining step in order.

        Returns:
            ProvisioningResult with the (possibly new) session and visited states.

        Raises:
            CommandFailed: If a package step fails; ``step`` names it.
            RebootRecoveryFailed: If the node does not come back after a reboot.
            OperationCancelled: If the token fires.
        """
        token = token or CancelToken()
        logger.info("Preparing build instance...")

        while self.state != S.READY:
            token.raise_if_cancelled()
            handler = self._handlers()[self.state]
            handler(token)

        logger.info("Instance preparation completed")
        return ProvisioningResult(session=self.session, history=list(self.history), warnings=list(self.warnings))

    def _handlers(self) -> Dict[ProvisioningState, Callable[[CancelToken], None]]:
        return {
            S.PACKAGES_PENDING: self._update_packages,
            S.PACKAGES_UPDATED: lambda token: self._transition(S.REBOOT_CHECK),
            S.REBOOT_CHECK: self._check_reboot,
            S.REBOOT_INITIATED: self._begin_reconnect,
            S.RECONNECTING: self._reconnect,
            S.RECONNECTED: self._install_runtime,
            S.REBOOT_NOT_NEEDED: self._install_runtime,
            S.RUNTIME_INSTALLED: self._install_tools,
            S.TOOLS_INSTALLED: lambda token: self._transition(S.READY),
        }

    def _update_packages(self, token: CancelToken) -> None:
        if self.skip_update:
            logger.info("Skipping system package update")
            self._transition(S.REBOOT_NOT_NEEDED)
            return
        logger.info("Cleaning package cache and updating system packages...")
        self._stream(S.PACKAGES_UPDATED, commands.package_refresh_command(), token)
        self._transition(S.PACKAGES_UPDATED)

    def _check_reboot(self, token: CancelToken) -> None:
        logger.info("Checking if reboot is needed...")
        needs_reboot: Optional[bool] = None
        try:
            output = self.session.execute(commands.reboot_check_command(), token)
        except OperationCancelled:
            raise
        except BuilderError as exc:
            logger.warning(f"Could not check reboot status: {exc}")
            self.warnings.append(StepWarning(step="reboot-check", message=str(exc)))
        else:
            needs_reboot = parse_reboot_check(output)
            if needs_reboot is None:
                logger.warning("Reboot check gave no usable answer, assuming no reboot is needed")
                self.warnings.append(StepWarning(step="reboot-check", message=f"unparsable output: {output!r}"))

        if not needs_reboot:
            self._transition(S.REBOOT_NOT_NEEDED)
            return

        logger.info("Kernel or core library update detected, rebooting instance...")
        try:
            self.session.start(commands.reboot_command())
        except BuilderError as exc:
            logger.warning(f"Reboot command failed: {exc}")
        self.session.close()
        self._transition(S.REBOOT_INITIATED)

    def _begin_reconnect(self, token: CancelToken) -> None:
        logger.info(f"Waiting {self.reboot_grace_period:.0f}s for instance to go down...")
        token.wait(self.reboot_grace_period)
        self._transition(S.RECONNECTING)

    def _reconnect(self, token: CancelToken) -> None:
        try:
            self.session = self.reconnect(token)
        except OperationCancelled:
            raise
        except BuilderError as exc:
            raise RebootRecoveryFailed(f"node did not come back after reboot: {exc}", step="reboot-recovery") from exc
        logger.info("Successfully reconnected after reboot")
        self._transition(S.RECONNECTED)

    def _install_runtime(self, token: CancelToken) -> None:
        logger.info("Installing container runtime...")
        command = commands.runtime_install_command(self.login_user, self.privilege_group)
        self._stream(S.RUNTIME_INSTALLED, command, token)
        self._transition(S.RUNTIME_INSTALLED)

    def _install_tools(self, token: CancelToken) -> None:
        logger.info("Installing AWS CLI 2.x and build tools...")
        self._stream(S.TOOLS_INSTALLED, commands.aws_cli_install_command(self.architecture), token)
        self._stream(S.TOOLS_INSTALLED, commands.toolchain_install_command(), token)
        self._transition(S.TOOLS_INSTALLED)

    def verify_runtime(self, token: Optional[CancelToken] = None) -> List[StepWarning]:
        """
        Smoke-test the container runtime on the ready node.

        Returns:
            Warnings for optional pieces (the docker alias) that failed.

        Raises:
            CommandFailed: If podman is missing or cannot run a container.
        """
        token = token or CancelToken()
        warnings: List[StepWarning] = []
        logger.info("Testing container runtime...")
        try:
            self.session.execute("podman --version", token)
            try:
                self.session.execute_stream("sudo dnf install -y podman-docker", self.sink, token)
            except OperationCancelled:
                raise
            except BuilderError as exc:
                logger.warning(f"Could not install docker alias: {exc}")
                warnings.append(StepWarning(step="verify-runtime", message=f"docker alias: {exc}"))
            self.session.execute_stream("podman run --rm hello-world", self.sink, token)
        except OperationCancelled:
            raise
        except BuilderError as exc:
            raise exc.at_step("verify-runtime")
        logger.info("Container runtime verified")
        return warnings
