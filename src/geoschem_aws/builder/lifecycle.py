"""EC2 instance lifecycle for ephemeral build nodes: launch, wait, terminate."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from botocore.exceptions import ClientError

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.descriptor import BuildDescriptor
from geoschem_aws.builder.errors import BuilderError, ImageNotFound, ProvisionTimeout, TerminationFailed
from geoschem_aws.builder.types import BuildNode

logger = logging.getLogger(__name__)

# CIQ publishes the official Rocky Linux AMIs.
ROCKY_OWNER_ID = "679593333241"

IMAGE_FILTERS = {
    "x86_64": ("Rocky-9-EC2-Base-9.*x86_64*", "x86_64"),
    "arm64": ("Rocky-9-EC2-Base-9.*aarch64*", "arm64"),
}

DEFAULT_INSTANCE_TYPES = {
    "x86_64": "c5.2xlarge",
    "arm64": "c6g.2xlarge",
}

GONE_STATES = {"shutting-down", "terminated", "stopping", "stopped"}


class InstanceLifecycleManager:
    """Launches build instances from the latest Rocky Linux 9 image and tears them down."""

    def __init__(
        self,
        ec2_client: Any,
        subnet_id: str,
        security_group_id: str,
        instance_types: Optional[Mapping[str, str]] = None,
        poll_interval: float = 5.0,
        project: str = "geoschem-aws",
    ) -> None:
        if ec2_client is None:
            raise ValueError("ec2_client is required")
        if not subnet_id or not isinstance(subnet_id, str):
            raise ValueError("subnet_id must be a non-empty string")
        if not security_group_id or not isinstance(security_group_id, str):
            raise ValueError("security_group_id must be a non-empty string")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be a positive number")

        self.ec2 = ec2_client
        self.subnet_id = subnet_id
        self.security_group_id = security_group_id
        self.instance_types = dict(DEFAULT_INSTANCE_TYPES)
        if instance_types:
            self.instance_types.update(instance_types)
        self.poll_interval = poll_interval
        self.project = project

    def find_latest_image(self, architecture: str) -> str:
        """
        Return the newest available Rocky Linux 9 AMI for the architecture.

        Raises:
            ValueError: If the architecture is not supported.
            ImageNotFound: If no image matches.
        """
        if architecture not in IMAGE_FILTERS:
            raise ValueError(f"unsupported architecture: {architecture}")
        name_pattern, image_arch = IMAGE_FILTERS[architecture]

        try:
            response = self.ec2.describe_images(
                Owners=[ROCKY_OWNER_ID],
                Filters=[
                    {"Name": "name", "Values": [name_pattern]},
                    {"Name": "architecture", "Values": [image_arch]},
                    {"Name": "root-device-type", "Values": ["ebs"]},
                    {"Name": "virtualization-type", "Values": ["hvm"]},
                    {"Name": "state", "Values": ["available"]},
                ],
            )
        except ClientError as exc:
            raise BuilderError(f"describing Rocky Linux AMIs: {exc}", step="launch") from exc

        images: List[Dict[str, Any]] = response.get("Images", [])
        if not images:
            raise ImageNotFound(f"no Rocky Linux 9 AMIs found for architecture {architecture}", step="launch")

        latest = max(
            images,
            key=lambda image: (image.get("CreationDate", ""), image.get("Name", ""), image.get("ImageId", "")),
        )
        logger.info(f"Selected Rocky Linux 9 AMI: {latest['ImageId']} ({latest.get('Name', '-')})")
        return latest["ImageId"]

    def launch(self, descriptor: BuildDescriptor, key_name: str) -> str:
        """
        Request one build instance and return its id without waiting for it.

        Raises:
            BuilderError: If EC2 rejects the request.
        """
        if not key_name or not isinstance(key_name, str):
            raise ValueError("key_name must be a non-empty string")

        image_id = self.find_latest_image(descriptor.architecture)
        instance_type = self.instance_types.get(descriptor.architecture)
        if not instance_type:
            raise ValueError(f"no instance type configured for {descriptor.architecture}")

        try:
            response = self.ec2.run_instances(
                ImageId=image_id,
                InstanceType=instance_type,
                MinCount=1,
                MaxCount=1,
                KeyName=key_name,
                SecurityGroupIds=[self.security_group_id],
                SubnetId=self.subnet_id,
                TagSpecifications=[
                    {
                        "ResourceType": "instance",
                        "Tags": [
                            {"Key": "Name", "Value": "geoschem-builder"},
                            {"Key": "Project", "Value": self.project},
                            {"Key": "BuildName", "Value": descriptor.name},
                            {"Key": "Architecture", "Value": descriptor.architecture},
                        ],
                    }
                ],
            )
        except ClientError as exc:
            raise BuilderError(f"launching instance: {exc}", step="launch") from exc

        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"Launched instance: {instance_id} ({instance_type}, Rocky Linux 9)")
        return instance_id

    def describe(self, instance_id: str) -> BuildNode:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            raise BuilderError(f"describing instance {instance_id}: {exc}") from exc

        reservations = response.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise BuilderError(f"instance {instance_id} not found in describe result")
        instance = reservations[0]["Instances"][0]
        return BuildNode(
            instance_id=instance_id,
            state=instance.get("State", {}).get("Name", "unknown"),
            address=instance.get("PublicIpAddress"),
            key_name=instance.get("KeyName"),
        )

    def wait_running(self, instance_id: str, timeout: float = 300, token: Optional[CancelToken] = None) -> BuildNode:
        """
        Poll until the instance is running and has a public address.

        Raises:
            ProvisionTimeout: If that does not happen within ``timeout`` seconds,
                or the instance goes away while waiting.
            OperationCancelled: If the token fires.
        """
        token = token or CancelToken()
        logger.info(f"Waiting for instance {instance_id} to be running...")
        deadline = time.monotonic() + timeout

        while True:
            node = self._describe_tolerant(instance_id)
            if node is not None:
                if node.state == "running" and node.address:
                    logger.info(f"Instance {instance_id} running at {node.address}")
                    return node
                if node.state in GONE_STATES:
                    raise ProvisionTimeout(
                        f"instance {instance_id} entered state {node.state} before becoming reachable",
                        step="wait-running",
                    )
            if time.monotonic() + self.poll_interval > deadline:
                raise ProvisionTimeout(
                    f"instance {instance_id} was not running with a public IP after {timeout:.0f}s",
                    step="wait-running",
                )
            token.wait(self.poll_interval)

    def _describe_tolerant(self, instance_id: str) -> Optional[BuildNode]:
        # A freshly launched instance can be briefly invisible to DescribeInstances.
        try:
            return self.describe(instance_id)
        except BuilderError as exc:
            if isinstance(exc.__cause__, ClientError) and "InvalidInstanceID.NotFound" in str(exc.__cause__):
                logger.debug(f"Instance {instance_id} not visible yet")
                return None
            raise

    def terminate(self, instance_id: str, timeout: float = 300, token: Optional[CancelToken] = None) -> None:
        """
        Terminate the instance and wait for EC2 to confirm it.

        Raises:
            TerminationFailed: If the request fails or is not confirmed in time.
        """
        token = token or CancelToken()
        logger.info(f"Terminating instance: {instance_id}")
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as exc:
            raise TerminationFailed(f"terminating instance {instance_id}: {exc}", step="terminate") from exc

        deadline = time.monotonic() + timeout
        while True:
            try:
                node = self.describe(instance_id)
            except BuilderError as exc:
                raise TerminationFailed(str(exc), step="terminate") from exc
            if node.state == "terminated":
                logger.info(f"Instance {instance_id} terminated successfully")
                return
            if time.monotonic() + self.poll_interval > deadline:
                raise TerminationFailed(
                    f"instance {instance_id} still {node.state} after {timeout:.0f}s", step="terminate"
                )
            token.wait(self.poll_interval)
