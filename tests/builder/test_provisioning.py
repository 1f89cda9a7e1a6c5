from unittest.mock import MagicMock

import pytest

from geoschem_aws.builder import commands
from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.errors import BuilderError, CommandFailed, ConnectionFailed, RebootRecoveryFailed
from geoschem_aws.builder.provisioning import (
    ProvisioningState as S,
    ProvisioningWorkflow,
    parse_reboot_check,
)


def make_session(reboot_output="0\n", reboot_error=None):
    session = MagicMock()

    def execute(command, token=None):
        if command == commands.reboot_check_command():
            if reboot_error is not None:
                raise reboot_error
            return reboot_output
        return ""

    session.execute.side_effect = execute
    return session


def streamed(session):
    return [c.args[0] for c in session.execute_stream.call_args_list]


class TestParseRebootCheck:
    """Test cases for parse_reboot_check."""

    @pytest.mark.parametrize("output,expected", [
        ("1\n", True),
        ("0\n", False),
        ("Reboot is required\n1\n", True),
        ("", None),
        ("command not found\n", None),
    ])
    def test_parse(self, output, expected):
        """Test interpretation of the echoed exit status."""
        assert parse_reboot_check(output) is expected


class TestNoReboot:
    """Test cases for the path where no reboot is needed."""

    def test_states_and_commands(self):
        """Test that every step runs once, in order, on the same session."""
        session = make_session("0\n")
        reconnect = MagicMock()
        workflow = ProvisioningWorkflow(session, reconnect, reboot_grace_period=0)

        result = workflow.run(CancelToken())

        assert result.history == [
            S.PACKAGES_PENDING,
            S.PACKAGES_UPDATED,
            S.REBOOT_CHECK,
            S.REBOOT_NOT_NEEDED,
            S.RUNTIME_INSTALLED,
            S.TOOLS_INSTALLED,
            S.READY,
        ]
        assert result.rebooted is False
        assert result.session is session
        assert result.warnings == []
        assert streamed(session) == [
            commands.package_refresh_command(),
            commands.runtime_install_command("rocky"),
            commands.aws_cli_install_command("x86_64"),
            commands.toolchain_install_command(),
        ]
        reconnect.assert_not_called()
        session.start.assert_not_called()

    def test_skip_update(self):
        """Test that skipping the update also skips the reboot check."""
        session = make_session()
        result = ProvisioningWorkflow(session, MagicMock(), skip_update=True).run()
        assert result.history[:2] == [S.PACKAGES_PENDING, S.REBOOT_NOT_NEEDED]
        assert commands.package_refresh_command() not in streamed(session)
        session.execute.assert_not_called()


class TestReboot:
    """Test cases for the reboot branch."""

    def test_reboot_and_reconnect(self):
        """Test that remaining steps run on the session returned by reconnect."""
        old_session = make_session("1\n")
        new_session = make_session()
        reconnect = MagicMock(return_value=new_session)
        workflow = ProvisioningWorkflow(old_session, reconnect, architecture="arm64", reboot_grace_period=0)

        result = workflow.run(CancelToken())

        assert result.rebooted is True
        assert result.session is new_session
        assert S.REBOOT_INITIATED in result.history
        assert result.history.index(S.RECONNECTED) < result.history.index(S.RUNTIME_INSTALLED)
        old_session.start.assert_called_once_with(commands.reboot_command())
        old_session.close.assert_called_once()
        reconnect.assert_called_once()
        assert streamed(old_session) == [commands.package_refresh_command()]
        assert streamed(new_session) == [
            commands.runtime_install_command("rocky"),
            commands.aws_cli_install_command("arm64"),
            commands.toolchain_install_command(),
        ]

    def test_reconnect_failure(self):
        """Test that a node that never comes back is reported as reboot recovery failure."""
        session = make_session("1\n")
        reconnect = MagicMock(side_effect=ConnectionFailed("gave up", attempts=30))
        workflow = ProvisioningWorkflow(session, reconnect, reboot_grace_period=0)

        with pytest.raises(RebootRecoveryFailed) as exc_info:
            workflow.run(CancelToken())
        assert exc_info.value.step == "reboot-recovery"
        assert workflow.state == S.RECONNECTING

    def test_reboot_command_error_is_tolerated(self):
        """Test that the connection dropping while starting the reboot is not fatal."""
        session = make_session("1\n")
        session.start.side_effect = BuilderError("connection reset")
        result = ProvisioningWorkflow(session, MagicMock(return_value=make_session()), reboot_grace_period=0).run()
        assert result.rebooted is True


class TestRebootCheckWarnings:
    """Test cases for reboot check failures."""

    def test_check_failure_is_warning(self):
        """Test that a failing check is recorded as a warning and treated as no reboot."""
        session = make_session(reboot_error=CommandFailed("needs-restarting", 127, "not found"))
        result = ProvisioningWorkflow(session, MagicMock()).run()
        assert result.rebooted is False
        assert len(result.warnings) == 1
        assert result.warnings[0].step == "reboot-check"

    def test_unparsable_output_is_warning(self):
        """Test that garbage output is recorded as a warning."""
        session = make_session("yum: command not found\n")
        result = ProvisioningWorkflow(session, MagicMock()).run()
        assert result.rebooted is False
        assert "unparsable" in result.warnings[0].message


class TestFailures:
    """Test cases for fatal provisioning failures."""

    def test_package_update_failure_names_step(self):
        """Test that a failed update is fatal and tagged with its step."""
        session = make_session()
        session.execute_stream.side_effect = CommandFailed("dnf update", 1, "mirror unreachable")
        with pytest.raises(CommandFailed) as exc_info:
            ProvisioningWorkflow(session, MagicMock()).run()
        assert exc_info.value.step == "update-packages"

    def test_runtime_failure_names_step(self):
        """Test that a failed runtime install is tagged with its step."""
        session = make_session()
        session.execute_stream.side_effect = [None, CommandFailed("dnf install podman", 1)]
        with pytest.raises(CommandFailed) as exc_info:
            ProvisioningWorkflow(session, MagicMock()).run()
        assert exc_info.value.step == "install-runtime"

    def test_invalid_transition(self):
        """Test that states cannot be skipped."""
        workflow = ProvisioningWorkflow(make_session(), MagicMock())
        with pytest.raises(BuilderError, match="invalid provisioning transition"):
            workflow._transition(S.READY)


class TestVerifyRuntime:
    """Test cases for verify_runtime."""

    def test_docker_alias_failure_is_warning(self):
        """Test that the optional docker alias only produces a warning."""
        session = make_session()
        session.execute_stream.side_effect = [CommandFailed("dnf install podman-docker", 1), None]
        warnings = ProvisioningWorkflow(session, MagicMock()).verify_runtime()
        assert len(warnings) == 1
        assert warnings[0].step == "verify-runtime"

    def test_hello_world_failure_is_fatal(self):
        """Test that a runtime that cannot run containers fails the step."""
        session = make_session()
        session.execute_stream.side_effect = [None, CommandFailed("podman run --rm hello-world", 125)]
        with pytest.raises(CommandFailed) as exc_info:
            ProvisioningWorkflow(session, MagicMock()).verify_runtime()
        assert exc_info.value.step == "verify-runtime"
