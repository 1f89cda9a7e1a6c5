"""
Pure builders for the shell commands sent to a build node.

Nothing here touches the network: every function returns a string, so the
quoting rules can be tested without a live session.
"""
from __future__ import annotations

from typing import List, Mapping

from geoschem_aws.builder.types import BuildArtifact, RegistryTarget

WORK_DIR = "~/source"
LOGIN_SUCCESS_MARKER = "Login Succeeded"

AWS_CLI_ARCH = {
    "x86_64": "x86_64",
    "arm64": "aarch64",
}


def shell_quote(value: str) -> str:
    """Single-quote ``value`` for a POSIX shell; embedded quotes become '"'"'."""
    return "'" + value.replace("'", "'\"'\"'") + "'"


def build_dir(dockerfile_dir: str) -> str:
    # The work dir stays unquoted so the shell expands the tilde.
    cleaned = dockerfile_dir.strip("/")
    if not cleaned or cleaned == ".":
        return WORK_DIR
    return f"{WORK_DIR}/{shell_quote(cleaned)}"


def clean_workdir_command() -> str:
    return f"rm -rf {WORK_DIR}"


def clone_command(repo_url: str, ref: str) -> str:
    return f"git clone --depth 1 --branch {shell_quote(ref)} {shell_quote(repo_url)} {WORK_DIR}"


def dockerfile_check_command(dockerfile_dir: str) -> str:
    return f"test -f {build_dir(dockerfile_dir)}/Dockerfile"


def context_info_command(dockerfile_dir: str) -> str:
    return f"cd {build_dir(dockerfile_dir)} && ls -la && echo '=== Dockerfile ===' && head -20 Dockerfile"


def build_command(tool: str, dockerfile_dir: str, build_args: Mapping[str, str], primary_tag: str) -> str:
    """
    Construct the remote container build command line.

    Args:
        tool: Container CLI on the node (podman or docker).
        dockerfile_dir: Directory in the cloned source holding the Dockerfile.
        build_args: Build argument name -> value. Values are always quoted.
        primary_tag: ``name:tag`` for the resulting image.

    Returns:
        A single command line suitable for ``sh -c``.
    """
    parts: List[str] = [f"cd {build_dir(dockerfile_dir)} && {tool} build"]
    for key in sorted(build_args):
        parts.append(f"--build-arg {key}={shell_quote(build_args[key])}")
    parts.append(f"-t {shell_quote(primary_tag)} .")
    return " ".join(parts)


def tag_command(tool: str, source: str, target: str) -> str:
    return f"{tool} tag {shell_quote(source)} {shell_quote(target)}"


def list_images_command(tool: str, image_name: str) -> str:
    return f"{tool} images | grep {shell_quote(image_name)}"


def image_info_command(tool: str, image_name: str) -> str:
    fmt = "table {{.Repository}}\t{{.Tag}}\t{{.Size}}\t{{.CreatedSince}}"
    return f"{tool} images --format {shell_quote(fmt)} | grep {shell_quote(image_name)} || echo 'No images found'"


def parse_registry(repository_url: str) -> RegistryTarget:
    """
    Derive registry host and region from an ECR repository URL.

    Raises:
        ValueError: If the URL does not look like
            ``<account>.dkr.ecr.<region>.amazonaws.com/<repo>``.
    """
    if not repository_url or not isinstance(repository_url, str):
        raise ValueError("repository_url must be a non-empty string")
    url = repository_url.strip()
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix):]
    host = url.split("/", 1)[0]
    parts = host.split(".")
    if len(parts) < 4 or parts[1:3] != ["dkr", "ecr"]:
        raise ValueError(f"invalid ECR repository format: {repository_url}")
    return RegistryTarget(repository_url=url.rstrip("/"), host=host, region=parts[3])


def registry_login_command(tool: str, target: RegistryTarget) -> str:
    # The password goes through the pipe only, never to disk or the environment.
    return (
        f"aws ecr get-login-password --region {shell_quote(target.region)} | "
        f"{tool} login --username AWS --password-stdin {shell_quote(target.host)}"
    )


def registry_tags(target: RegistryTarget, artifact: BuildArtifact) -> List[str]:
    return [
        f"{target.repository_url}:{artifact.tag}",
        f"{target.repository_url}:{artifact.tag}-{artifact.architecture}",
    ]


def push_command(tool: str, image: str) -> str:
    return f"{tool} push {shell_quote(image)}"


def remove_image_command(tool: str, image: str) -> str:
    return f"{tool} rmi {shell_quote(image)} || true"


def prune_command(tool: str) -> str:
    return f"{tool} system prune -f || true"


def upload_command(remote_path: str) -> str:
    return f"cat > {shell_quote(remote_path)}"


# Provisioning

def package_refresh_command() -> str:
    return "sudo dnf clean all && sudo dnf update -y --allowerasing"


def reboot_check_command() -> str:
    # Exit status 1 means a restart is required; echo it so it survives as output.
    return "sudo dnf needs-restarting -r >/dev/null 2>&1; echo $?"


def reboot_command() -> str:
    return "sudo systemctl reboot"


def runtime_install_command(user: str, group: str = "wheel") -> str:
    return (
        "sudo dnf install -y podman git unzip && "
        "sudo systemctl enable --now podman.socket && "
        f"sudo usermod -aG {shell_quote(group)} {shell_quote(user)}"
    )


def aws_cli_install_command(architecture: str) -> str:
    cli_arch = AWS_CLI_ARCH.get(architecture)
    if cli_arch is None:
        raise ValueError(f"unsupported architecture: {architecture}")
    return (
        f'curl -sSL "https://awscli.amazonaws.com/awscli-exe-linux-{cli_arch}.zip" -o "awscliv2.zip" && '
        "unzip -q -o awscliv2.zip && sudo ./aws/install --update && "
        "rm -rf aws awscliv2.zip && aws --version"
    )


def toolchain_install_command() -> str:
    return "sudo dnf install -y make gcc gcc-gfortran"
