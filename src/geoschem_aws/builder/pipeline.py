"""Container build pipeline executed on a provisioned build node."""
from __future__ import annotations

import logging
from typing import List, Optional

from geoschem_aws.builder import commands
from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.descriptor import BuildDescriptor
from geoschem_aws.builder.errors import (
    BuilderError,
    CommandFailed,
    DescriptorMissing,
    OperationCancelled,
    PushFailed,
    RegistryAuthFailed,
)
from geoschem_aws.builder.ssh import OutputSink, SSHSession
from geoschem_aws.builder.types import BuildArtifact, CleanupWarning, PushReport, StepWarning

logger = logging.getLogger(__name__)


class BuildPipeline:
    """Clones, builds, tags, pushes and cleans up one image over an SSH session."""

    def __init__(
        self,
        session: SSHSession,
        descriptor: BuildDescriptor,
        tool: str = "podman",
        sink: Optional[OutputSink] = None,
        build_idle_timeout: Optional[float] = None,
    ) -> None:
        if session is None:
            raise ValueError("session is required")
        if not tool or not isinstance(tool, str):
            raise ValueError("tool must be a non-empty string")
        self.session = session
        self.descriptor = descriptor.validate()
        self.tool = tool
        self.sink = sink
        self.build_idle_timeout = build_idle_timeout
        self.artifact: BuildArtifact = descriptor.artifact()
        self.warnings: List[StepWarning] = []

    def clone(self, token: Optional[CancelToken] = None) -> None:
        """
        Shallow-clone the source ref into a clean work directory.

        Raises:
            CommandFailed: If the clone fails; carries the git output.
        """
        d = self.descriptor
        logger.info(f"Cloning {d.source_repo}@{d.source_ref}...")
        try:
            self.session.execute(commands.clean_workdir_command(), token)
        except CommandFailed as exc:
            logger.debug(f"Removing old work directory failed: {exc}")
        try:
            self.session.execute(commands.clone_command(d.source_repo, d.source_ref), token)
        except CommandFailed as exc:
            logger.error(f"git clone failed: {exc}")
            raise exc.at_step("clone")
        logger.info("Repository cloned successfully")

    def verify_descriptor_file(self, token: Optional[CancelToken] = None) -> None:
        """
        Ensure the Dockerfile exists in the cloned source.

        Raises:
            DescriptorMissing: If it is not there.
        """
        directory = self.descriptor.dockerfile_dir
        try:
            self.session.execute(commands.dockerfile_check_command(directory), token)
        except CommandFailed as exc:
            raise DescriptorMissing(f"Dockerfile not found in ~/source/{directory}", step="verify-descriptor") from exc

        try:
            output = self.session.execute(commands.context_info_command(directory), token)
            logger.info(f"Build context:\n{output}")
        except OperationCancelled:
            raise
        except BuilderError as exc:
            logger.warning(f"Could not show build context info: {exc}")
            self.warnings.append(StepWarning(step="verify-descriptor", message=str(exc)))

    def build(self, token: Optional[CancelToken] = None) -> None:
        """
        Run the container build with streamed output.

        Raises:
            CommandFailed: If the build fails.
            CommandStalled: If the build is silent longer than the idle timeout.
        """
        command = commands.build_command(
            self.tool,
            self.descriptor.dockerfile_dir,
            self.descriptor.build_args,
            self.artifact.primary_tag,
        )
        logger.info(f"Executing build command: {command}")
        try:
            self.session.execute_stream(command, self.sink, token, idle_timeout=self.build_idle_timeout)
        except CommandFailed as exc:
            raise exc.at_step("build")
        logger.info(f"Container build completed: {self.artifact.primary_tag}")

    def tag(self, token: Optional[CancelToken] = None) -> BuildArtifact:
        """Add the architecture-qualified tag next to the primary one."""
        command = commands.tag_command(self.tool, self.artifact.primary_tag, self.artifact.arch_tag)
        try:
            self.session.execute(command, token)
        except CommandFailed as exc:
            raise exc.at_step("tag")

        try:
            output = self.session.execute(commands.list_images_command(self.tool, self.artifact.image_name), token)
            logger.info(f"Built images:\n{output}")
        except OperationCancelled:
            raise
        except BuilderError as exc:
            logger.warning(f"Could not list images: {exc}")
        return self.artifact

    def login(self, repository_url: str, token: Optional[CancelToken] = None) -> None:
        """
        Log the container tool in to ECR with a short-lived password.

        Raises:
            ValueError: If the repository URL is not an ECR URL.
            RegistryAuthFailed: If the login output lacks the success marker.
        """
        target = commands.parse_registry(repository_url)
        logger.info(f"Logging in to {target.host}...")
        try:
            output = self.session.execute(commands.registry_login_command(self.tool, target), token)
        except CommandFailed as exc:
            raise RegistryAuthFailed(f"registry login command failed: {exc}", step="push") from exc
        # Substring match on tool output; there is no structured success signal.
        if commands.LOGIN_SUCCESS_MARKER not in output:
            raise RegistryAuthFailed(f"registry login did not succeed, output: {output}", step="push")
        logger.info("Registry login successful")

    def push(self, repository_url: str, token: Optional[CancelToken] = None) -> PushReport:
        """
        Tag for the registry and push the primary and architecture tags.

        Each tag is pushed once; a failure on one does not stop or retry the other.

        Returns:
            PushReport listing pushed tags and per-tag ``PushFailed`` errors.

        Raises:
            RegistryAuthFailed: If login fails (nothing is pushed).
        """
        self.login(repository_url, token)
        target = commands.parse_registry(repository_url)
        report = PushReport()

        for source, remote in zip(self.artifact.tags, commands.registry_tags(target, self.artifact)):
            try:
                self.session.execute(commands.tag_command(self.tool, source, remote), token)
                logger.info(f"Pushing {remote}...")
                self.session.execute_stream(commands.push_command(self.tool, remote), self.sink, token)
            except OperationCancelled:
                raise
            except BuilderError as exc:
                logger.error(f"Push of {remote} failed: {exc}")
                report.failures.append(PushFailed(remote, exc))
                continue
            report.pushed.append(remote)

        for remote in report.pushed:
            logger.info(f"Pushed {remote}")
        return report

    def cleanup(self, token: Optional[CancelToken] = None, registry_tags: Optional[List[str]] = None) -> List[CleanupWarning]:
        """Remove local images and prune the build cache; failures only become warnings."""
        logger.info("Cleaning up container images...")
        warnings: List[CleanupWarning] = []
        for image in self.artifact.tags + list(registry_tags or []):
            try:
                self.session.execute(commands.remove_image_command(self.tool, image), token)
            except OperationCancelled:
                raise
            except BuilderError as exc:
                logger.warning(f"Failed to remove image {image}: {exc}")
                warnings.append(CleanupWarning(step="cleanup", message=f"rmi {image}: {exc}"))

        try:
            self.session.execute(commands.prune_command(self.tool), token)
        except OperationCancelled:
            raise
        except BuilderError as exc:
            logger.warning(f"Failed to prune build cache: {exc}")
            warnings.append(CleanupWarning(step="cleanup", message=f"prune: {exc}"))

        self.warnings.extend(warnings)
        logger.info("Cleanup completed")
        return warnings

    def image_info(self, token: Optional[CancelToken] = None) -> str:
        return self.session.execute(commands.image_info_command(self.tool, self.artifact.image_name), token)
