import shlex

import pytest

from geoschem_aws.builder import commands
from geoschem_aws.builder.types import BuildArtifact


class TestShellQuote:
    """Test cases for shell_quote."""

    def test_plain_value(self):
        """Test that a simple value is wrapped in single quotes."""
        assert commands.shell_quote("gcc") == "'gcc'"

    def test_embedded_single_quote(self):
        """Test that an embedded quote closes, escapes and reopens the string."""
        assert commands.shell_quote("it's") == "'it'\"'\"'s'"

    def test_shell_splits_back_to_original(self):
        """Test that a POSIX shell recovers the exact value."""
        for value in ["geos-chem@14.4.3 %gcc@13.2.0", "a'b", "$HOME `id` ; rm -rf /", ""]:
            assert shlex.split(commands.shell_quote(value)) == [value]


class TestBuildCommand:
    """Test cases for build_command."""

    def test_build_args_are_quoted(self):
        """Test that values with spaces and metacharacters survive as single words."""
        command = commands.build_command(
            "podman",
            "docker",
            {"COMPILER": "gcc", "SPEC": "geos-chem@14.4.3 %gcc@13.2.0"},
            "geoschem:test",
        )
        assert command.startswith("cd ~/source/'docker' && podman build")
        words = shlex.split(command.split("&&", 1)[1])
        assert words == [
            "podman", "build",
            "--build-arg", "COMPILER=gcc",
            "--build-arg", "SPEC=geos-chem@14.4.3 %gcc@13.2.0",
            "-t", "geoschem:test", ".",
        ]

    def test_value_with_quote(self):
        """Test that a build arg containing a single quote round-trips."""
        command = commands.build_command("podman", "docker", {"COMPILER": "it's"}, "geoschem:test")
        words = shlex.split(command.split("&&", 1)[1])
        assert "COMPILER=it's" in words

    def test_build_args_sorted(self):
        """Test that build args appear in a stable order."""
        command = commands.build_command("podman", "docker", {"Z": "1", "A": "2"}, "x:y")
        assert command.index("A=") < command.index("Z=")

    def test_root_dockerfile_dir(self):
        """Test building from the repository root."""
        command = commands.build_command("podman", ".", {"COMPILER": "gcc"}, "x:y")
        assert command.startswith("cd ~/source && podman build")


class TestParseRegistry:
    """Test cases for parse_registry."""

    def test_valid_url(self):
        """Test that host and region are extracted."""
        target = commands.parse_registry("123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem")
        assert target.host == "123456789012.dkr.ecr.us-west-2.amazonaws.com"
        assert target.region == "us-west-2"
        assert target.repository_url == "123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem"

    def test_scheme_is_stripped(self):
        """Test that an https:// prefix is tolerated."""
        target = commands.parse_registry("https://123456789012.dkr.ecr.eu-central-1.amazonaws.com/geoschem/")
        assert target.region == "eu-central-1"
        assert target.repository_url == "123456789012.dkr.ecr.eu-central-1.amazonaws.com/geoschem"

    @pytest.mark.parametrize("url", ["", "docker.io/library/geoschem", "ghcr.io/geoschem/geoschem"])
    def test_invalid_url(self, url):
        """Test that non-ECR URLs are rejected."""
        with pytest.raises(ValueError):
            commands.parse_registry(url)


class TestRegistryCommands:
    """Test cases for login, tag and push command builders."""

    def test_registry_tags(self):
        """Test the primary and architecture tags in the registry."""
        target = commands.parse_registry("123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem")
        artifact = BuildArtifact(image_name="geoschem", tag="test", architecture="x86_64")
        assert commands.registry_tags(target, artifact) == [
            "123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem:test",
            "123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem:test-x86_64",
        ]

    def test_login_pipes_password(self):
        """Test that the password travels only through stdin."""
        target = commands.parse_registry("123456789012.dkr.ecr.us-west-2.amazonaws.com/geoschem")
        command = commands.registry_login_command("podman", target)
        assert "aws ecr get-login-password --region 'us-west-2' |" in command
        assert "--password-stdin '123456789012.dkr.ecr.us-west-2.amazonaws.com'" in command

    def test_cleanup_commands_ignore_failures(self):
        """Test that image removal and prune never fail the shell."""
        assert commands.remove_image_command("podman", "geoschem:test").endswith("|| true")
        assert commands.prune_command("podman") == "podman system prune -f || true"


class TestProvisioningCommands:
    """Test cases for provisioning command builders."""

    def test_reboot_check_echoes_status(self):
        """Test that the reboot check reports the exit status as output."""
        assert commands.reboot_check_command().endswith("echo $?")

    def test_runtime_install_adds_user_to_group(self):
        """Test the runtime install command."""
        command = commands.runtime_install_command("rocky")
        assert "dnf install -y podman git unzip" in command
        assert command.endswith("usermod -aG 'wheel' 'rocky'")

    @pytest.mark.parametrize("arch,cli_arch", [("x86_64", "x86_64"), ("arm64", "aarch64")])
    def test_aws_cli_install(self, arch, cli_arch):
        """Test that the AWS CLI bundle matches the node architecture."""
        assert f"awscli-exe-linux-{cli_arch}.zip" in commands.aws_cli_install_command(arch)

    def test_aws_cli_install_unknown_arch(self):
        """Test that an unknown architecture is rejected."""
        with pytest.raises(ValueError):
            commands.aws_cli_install_command("riscv64")
