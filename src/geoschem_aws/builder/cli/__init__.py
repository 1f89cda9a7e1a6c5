"""CLI interface for building GEOS-Chem container images on ephemeral EC2 nodes."""
from __future__ import annotations

import argparse
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.config import BuilderConfig, get_builder_config
from geoschem_aws.builder.descriptor import DEFAULT_SOURCE_REPO, get_descriptor, list_available
from geoschem_aws.builder.keypair import KeyPairManager
from geoschem_aws.builder.lifecycle import InstanceLifecycleManager
from geoschem_aws.builder.orchestrator import Orchestrator, RunOptions
from geoschem_aws.builder.quotas import QuotaAdvisor
from geoschem_aws.builder.ssh import SSHConnector
from geoschem_aws.builder.types import BuildRunResult, KeyCredential

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    else:
        root.setLevel(level)
    # boto and paramiko are chatty at DEBUG
    for name in ("botocore", "boto3", "urllib3", "paramiko"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config-file", type=str, default=None, help="YAML config file (aws, architectures, ecr_repository)")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file (defaults to ./.env)")
    parser.add_argument("--profile", type=str, default=None, help="AWS profile (defaults to GEOSCHEM_AWS_PROFILE / AWS_PROFILE)")
    parser.add_argument("--region", type=str, default=None, help="AWS region (default: us-west-2)")


def _load_config(args: argparse.Namespace) -> BuilderConfig:
    config = get_builder_config(
        env_file=Path(args.env_file) if args.env_file else None,
        config_file=Path(args.config_file) if args.config_file else None,
    )
    if args.profile:
        config.profile = args.profile
    if args.region:
        config.region = args.region
    return config


@contextmanager
def _cancel_on_signals(token: CancelToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into token cancellation so teardown still runs."""

    def handler(signum, frame) -> None:
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, cancelling build (the instance will still be terminated)")
        token.cancel(f"received {name}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _print_result(result: BuildRunResult) -> None:
    status = "SUCCESS" if result.ok else "FAILED"
    print(f"Build {result.descriptor_name}: {status}")
    if result.node is not None:
        print(f"  Instance    : {result.node.instance_id} ({result.node.state})")
    if result.artifact is not None:
        print(f"  Image tags  : {', '.join(result.artifact.tags)}")
    if result.push is not None:
        for tag in result.push.pushed:
            print(f"  Pushed      : {tag}")
        for failure in result.push.failures:
            print(f"  Push failed : {failure.tag}")
    print(f"  Steps       : {' -> '.join(result.step_names())}")
    for warning in result.warnings:
        print(f"  Warning     : [{warning.step}] {warning.message}")
    if result.error is not None:
        print(f"  Error       : {result.error}")
    if result.termination_error is not None:
        print(f"  TEARDOWN    : {result.termination_error}")
        print("  The instance may still be running; terminate it manually.")


def handle_list(args: argparse.Namespace) -> int:
    print(list_available())
    return 0


def handle_quotas(args: argparse.Namespace) -> int:
    config = _load_config(args)
    session = config.create_session()
    advisor = QuotaAdvisor(session.client("service-quotas"), session.client("ec2"), config.region)
    report = advisor.check()
    print(report.summary())
    return 1 if report.critical else 0


def handle_build(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if args.subnet:
        config.subnet_id = args.subnet
    if args.security_group:
        config.security_group_id = args.security_group
    if args.ecr:
        config.ecr_repository = args.ecr
    config.require_network()

    descriptors = [
        get_descriptor(name, args.repo, args.branch, args.tag, image_name=args.image_name)
        for name in args.configs
    ]

    session = config.create_session()
    ec2 = session.client("ec2")
    lifecycle = InstanceLifecycleManager(
        ec2,
        config.subnet_id,
        config.security_group_id,
        instance_types=config.instance_types,
    )
    keys = KeyPairManager(ec2)
    advisor = None if args.no_quota_check else QuotaAdvisor(session.client("service-quotas"), ec2, config.region)

    def connector_factory(credential: KeyCredential) -> SSHConnector:
        return SSHConnector(
            str(credential.private_key_path),
            username=config.ssh_user,
            retry_delay=config.ssh_retry_delay,
        )

    options = RunOptions(
        key_dir=config.key_dir,
        ecr_repository=config.ecr_repository,
        skip_build=args.skip_build,
        skip_push=args.skip_push,
        keep_instance=args.keep_instance,
        skip_update=args.skip_update,
        container_tool=config.container_tool,
        login_user=config.ssh_user,
        run_timeout=config.run_timeout,
        launch_timeout=config.launch_timeout,
        terminate_timeout=config.terminate_timeout,
        ssh_max_attempts=config.ssh_max_attempts,
        build_idle_timeout=args.idle_timeout,
    )
    orchestrator = Orchestrator(lifecycle, keys, connector_factory, options=options, advisor=advisor)

    token = CancelToken()
    with _cancel_on_signals(token):
        results: List[BuildRunResult] = orchestrator.build_matrix(descriptors, token)

    for result in results:
        _print_result(result)
    failed = [r for r in results if not r.ok or r.termination_error is not None]
    if len(results) < len(descriptors):
        logger.error(f"Only {len(results)} of {len(descriptors)} builds ran before cancellation")
        return 1
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build GEOS-Chem container images on ephemeral EC2 instances")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # build
    build_cmd = subparsers.add_parser("build", help="Launch a build node, build the image and push it to ECR")
    _add_config_arguments(build_cmd)
    build_cmd.add_argument("configs", nargs="+", help="Build configuration name(s), see 'list'")
    build_cmd.add_argument("--repo", type=str, default=DEFAULT_SOURCE_REPO, help="GEOS-Chem source repository")
    build_cmd.add_argument("--branch", type=str, default="main", help="Git branch or tag to build (default: main)")
    build_cmd.add_argument("--tag", type=str, default="latest", help="Image tag (default: latest)")
    build_cmd.add_argument("--image-name", type=str, default=None, help="Image name (defaults to the configuration name)")
    build_cmd.add_argument("--subnet", type=str, default=None, help="Subnet ID for the build instance")
    build_cmd.add_argument("--security-group", type=str, default=None, help="Security group ID allowing SSH")
    build_cmd.add_argument("--ecr", type=str, default=None, help="ECR repository URL to push to")
    build_cmd.add_argument("--idle-timeout", type=float, default=None, help="Abort the build after this many silent seconds")
    build_cmd.add_argument("--skip-build", action="store_true", help="Only provision the node")
    build_cmd.add_argument("--skip-push", action="store_true", help="Build but do not push")
    build_cmd.add_argument("--skip-update", action="store_true", help="Skip the OS package update and reboot check")
    build_cmd.add_argument("--keep-instance", action="store_true", help="Keep the instance running after the build")
    build_cmd.add_argument("--no-quota-check", action="store_true", help="Skip the advisory quota check")
    build_cmd.set_defaults(handler=handle_build)

    # list
    list_parser = subparsers.add_parser("list", help="List the standard build configurations")
    list_parser.set_defaults(handler=handle_list)

    # quotas
    quotas_parser = subparsers.add_parser("quotas", help="Show EC2 quota usage relevant to build nodes")
    _add_config_arguments(quotas_parser)
    quotas_parser.set_defaults(handler=handle_quotas)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - CLI safety net
        logger.error(f"Command failed: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
