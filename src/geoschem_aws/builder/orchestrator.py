"""
Build orchestration: launch -> connect -> provision -> build -> push -> cleanup.

The node is terminated from a ``finally`` block with its own deadline, so a
failure or cancellation anywhere after launch still tears it down exactly once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, TypeVar

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.descriptor import BuildDescriptor
from geoschem_aws.builder.errors import BuilderError
from geoschem_aws.builder.keypair import KeyPairManager
from geoschem_aws.builder.lifecycle import InstanceLifecycleManager
from geoschem_aws.builder.pipeline import BuildPipeline
from geoschem_aws.builder.provisioning import ProvisioningResult, ProvisioningWorkflow
from geoschem_aws.builder.quotas import QuotaAdvisor
from geoschem_aws.builder.ssh import OutputSink, SSHConnector, SSHSession
from geoschem_aws.builder.types import (
    BuildNode,
    BuildRunResult,
    KeyCredential,
    StepRecord,
    StepStatus,
    StepWarning,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConnectorFactory = Callable[[KeyCredential], SSHConnector]


@dataclass
class RunOptions:
    """Per-run switches and timeouts."""
    key_dir: Path = Path("/tmp")
    ecr_repository: str = ""
    skip_build: bool = False
    skip_push: bool = False
    keep_instance: bool = False
    skip_update: bool = False
    verify_runtime: bool = True
    container_tool: str = "podman"
    login_user: str = "rocky"
    run_timeout: Optional[float] = 2 * 60 * 60
    launch_timeout: float = 5 * 60
    terminate_timeout: float = 10 * 60
    ssh_max_attempts: int = 30
    reboot_grace_period: float = 30.0
    build_idle_timeout: Optional[float] = None
    sink: Optional[OutputSink] = None

    def key_name(self, architecture: str) -> str:
        return f"geoschem-builder-{architecture}"

    def private_key_path(self, architecture: str) -> Path:
        return Path(self.key_dir) / f"{self.key_name(architecture)}.pem"


class Orchestrator:
    """Runs one build per descriptor on its own ephemeral node."""

    def __init__(
        self,
        lifecycle: InstanceLifecycleManager,
        keys: KeyPairManager,
        connector_factory: ConnectorFactory,
        options: Optional[RunOptions] = None,
        advisor: Optional[QuotaAdvisor] = None,
    ) -> None:
        if lifecycle is None or keys is None or connector_factory is None:
            raise ValueError("lifecycle, keys and connector_factory are required")
        self.lifecycle = lifecycle
        self.keys = keys
        self.connector_factory = connector_factory
        self.options = options or RunOptions()
        self.advisor = advisor

    @staticmethod
    def _step(result: BuildRunResult, name: str, action: Callable[[], T]) -> T:
        logger.info(f"=== {name} ===")
        record = StepRecord(name=name, status=StepStatus.STARTED)
        result.steps.append(record)
        try:
            value = action()
        except BuilderError as exc:
            record.status = StepStatus.FAILED
            record.detail = str(exc)
            raise exc.at_step(name)
        except Exception as exc:
            record.status = StepStatus.FAILED
            record.detail = f"{type(exc).__name__}: {exc}"
            raise BuilderError(record.detail, step=name) from exc
        record.status = StepStatus.SUCCEEDED
        return value

    @staticmethod
    def _skip(result: BuildRunResult, name: str, reason: str) -> None:
        logger.info(f"Skipping {name}: {reason}")
        result.steps.append(StepRecord(name=name, status=StepStatus.SKIPPED, detail=reason))

    def _advise(self, result: BuildRunResult) -> None:
        if self.advisor is None:
            return
        try:
            report = self.advisor.check()
        except Exception as exc:
            # Advisory only.
            logger.warning(f"Quota check failed: {exc}")
            result.warnings.append(StepWarning(step="quota-check", message=str(exc)))
            return
        logger.info(report.summary())
        for quota in report.critical:
            result.warnings.append(StepWarning(step="quota-check", message=quota.message))

    def run(self, descriptor: BuildDescriptor, token: Optional[CancelToken] = None) -> BuildRunResult:
        """
        Build (and optionally push) one image on a fresh node.

        Args:
            descriptor: What to build. Validated before anything is launched.
            token: Cancellation for the whole run; defaults to ``run_timeout``.

        Returns:
            BuildRunResult. ``error`` holds the fatal failure (with its step),
            ``termination_error`` any teardown failure, kept separate.

        Raises:
            InvalidDescriptor: If the descriptor is invalid (nothing is launched).
        """
        descriptor.validate()
        opts = self.options
        token = token or CancelToken(opts.run_timeout)
        result = BuildRunResult(descriptor_name=descriptor.name)
        logger.info(f"Starting GeosChem build: {descriptor.name} ({descriptor.architecture}, {descriptor.compiler})")

        self._advise(result)

        key_name = opts.key_name(descriptor.architecture)
        try:
            credential = self._step(
                result,
                "credentials",
                lambda: self.keys.get_or_create(key_name, str(opts.private_key_path(descriptor.architecture))),
            )
            instance_id = self._step(result, "launch", lambda: self.lifecycle.launch(descriptor, credential.name))
        except BuilderError as exc:
            logger.error(f"Build {descriptor.name} failed before a node was launched: {exc}")
            result.error = exc
            return result

        result.node = BuildNode(instance_id=instance_id, key_name=credential.name)
        holder: List[Optional[SSHSession]] = [None]
        try:
            self._drive(descriptor, credential, result, holder, token)
        except BuilderError as exc:
            logger.error(f"Build {descriptor.name} failed: {exc}")
            result.error = exc
        finally:
            if holder[0] is not None:
                holder[0].close()
            self._teardown(result, descriptor.architecture)

        if result.ok:
            logger.info(f"GeosChem build completed successfully: {descriptor.name}")
        return result

    def _drive(
        self,
        descriptor: BuildDescriptor,
        credential: KeyCredential,
        result: BuildRunResult,
        holder: List[Optional[SSHSession]],
        token: CancelToken,
    ) -> None:
        opts = self.options
        node = result.node
        instance_id = node.instance_id

        running = self._step(result, "wait-running", lambda: self.lifecycle.wait_running(instance_id, opts.launch_timeout, token))
        node.state, node.address = running.state, running.address

        def connect() -> Tuple[SSHConnector, SSHSession]:
            connector = self.connector_factory(credential)
            session = connector.wait_for_connection(node.address, opts.ssh_max_attempts, token)
            holder[0] = session
            session.test_connection(token)
            return connector, session

        connector, session = self._step(result, "connect", connect)

        def reconnect(reconnect_token: CancelToken) -> SSHSession:
            again = self.lifecycle.wait_running(instance_id, opts.launch_timeout, reconnect_token)
            node.state, node.address = again.state, again.address
            fresh = connector.wait_for_connection(node.address, opts.ssh_max_attempts, reconnect_token)
            holder[0] = fresh
            return fresh

        def provision() -> Tuple[ProvisioningWorkflow, ProvisioningResult]:
            workflow = ProvisioningWorkflow(
                session,
                reconnect,
                architecture=descriptor.architecture,
                login_user=opts.login_user,
                skip_update=opts.skip_update,
                reboot_grace_period=opts.reboot_grace_period,
                sink=opts.sink,
            )
            return workflow, workflow.run(token)

        workflow, provisioned = self._step(result, "provision", provision)
        session = provisioned.session
        result.rebooted = provisioned.rebooted
        result.warnings.extend(provisioned.warnings)

        if opts.verify_runtime:
            result.warnings.extend(self._step(result, "verify-runtime", lambda: workflow.verify_runtime(token)))

        if opts.skip_build:
            self._skip(result, "build", "skip_build requested")
            return

        def clone() -> BuildPipeline:
            pipeline = BuildPipeline(
                session,
                descriptor,
                tool=opts.container_tool,
                sink=opts.sink,
                build_idle_timeout=opts.build_idle_timeout,
            )
            pipeline.clone(token)
            return pipeline

        pipeline: Optional[BuildPipeline] = None
        built = False
        try:
            pipeline = self._step(result, "clone", clone)
            self._step(result, "verify-descriptor", lambda: pipeline.verify_descriptor_file(token))
            self._step(result, "build", lambda: pipeline.build(token))
            built = True
            result.artifact = self._step(result, "tag", lambda: pipeline.tag(token))
            self._push(pipeline, result, token)
        finally:
            if pipeline is not None:
                # The primary tag exists once the build step succeeded.
                if built and not token.cancelled:
                    self._cleanup(pipeline, result, token)
                result.warnings.extend(pipeline.warnings)

    def _push(self, pipeline: BuildPipeline, result: BuildRunResult, token: CancelToken) -> None:
        opts = self.options
        if not opts.ecr_repository:
            self._skip(result, "push", "no registry configured")
            return
        if opts.skip_push:
            self._skip(result, "push", "skip_push requested")
            return

        def push() -> None:
            report = pipeline.push(opts.ecr_repository, token)
            result.push = report
            if len(report.failures) == 1:
                raise report.failures[0]
            if report.failures:
                tags = ", ".join(failure.tag for failure in report.failures)
                raise BuilderError(f"push failed for tags: {tags}")

        self._step(result, "push", push)

    def _cleanup(self, pipeline: BuildPipeline, result: BuildRunResult, token: CancelToken) -> None:
        registry_tags: List[str] = []
        if result.push is not None:
            registry_tags = result.push.pushed + [failure.tag for failure in result.push.failures]
        try:
            self._step(result, "cleanup", lambda: pipeline.cleanup(token, registry_tags))
        except BuilderError as exc:
            # Cleanup failures never replace the run error.
            logger.warning(f"Cleanup failed: {exc}")
            result.warnings.append(StepWarning(step="cleanup", message=str(exc)))

    def _teardown(self, result: BuildRunResult, architecture: str) -> None:
        opts = self.options
        node = result.node
        if opts.keep_instance:
            self._skip(result, "terminate", "keep_instance requested")
            logger.warning(f"Instance {node.instance_id} kept running as requested")
            if node.address:
                logger.warning(f"To connect: ssh -i {opts.private_key_path(architecture)} {opts.login_user}@{node.address}")
            logger.warning("Don't forget to terminate the instance manually!")
            return

        # Fresh token: the run token may already be cancelled.
        terminate_token = CancelToken(opts.terminate_timeout)
        record = StepRecord(name="terminate", status=StepStatus.STARTED)
        result.steps.append(record)
        try:
            self.lifecycle.terminate(node.instance_id, opts.terminate_timeout, terminate_token)
        except BuilderError as exc:
            record.status = StepStatus.FAILED
            record.detail = str(exc)
            result.termination_error = exc.at_step("terminate")
            logger.error(f"Failed to terminate instance {node.instance_id}: {exc}")
            return
        except Exception as exc:
            record.status = StepStatus.FAILED
            record.detail = f"{type(exc).__name__}: {exc}"
            result.termination_error = BuilderError(record.detail, step="terminate")
            logger.error(f"Failed to terminate instance {node.instance_id}: {exc}")
            return
        record.status = StepStatus.SUCCEEDED
        node.state = "terminated"
        result.terminated = True

    def build_matrix(self, descriptors: List[BuildDescriptor], token: Optional[CancelToken] = None) -> List[BuildRunResult]:
        """Run independent builds one after another; stops early only on cancellation."""
        results: List[BuildRunResult] = []
        for descriptor in descriptors:
            if token is not None and token.cancelled:
                logger.warning(f"Cancelled before building {descriptor.name}")
                break
            child = token.child(self.options.run_timeout) if token is not None else None
            results.append(self.run(descriptor, child))
        return results
