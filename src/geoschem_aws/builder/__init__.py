"""Build node subsystem: launch, provision, build, push and always terminate."""

from geoschem_aws.builder.cancellation import CancelToken
from geoschem_aws.builder.config import BuilderConfig, get_builder_config
from geoschem_aws.builder.descriptor import BuildDescriptor, get_descriptor, standard_descriptors
from geoschem_aws.builder.errors import BuilderError, InvalidDescriptor
from geoschem_aws.builder.keypair import KeyPairManager
from geoschem_aws.builder.lifecycle import InstanceLifecycleManager
from geoschem_aws.builder.orchestrator import Orchestrator, RunOptions
from geoschem_aws.builder.pipeline import BuildPipeline
from geoschem_aws.builder.provisioning import ProvisioningState, ProvisioningWorkflow
from geoschem_aws.builder.quotas import QuotaAdvisor
from geoschem_aws.builder.ssh import SSHConnector, SSHSession
from geoschem_aws.builder.types import BuildArtifact, BuildNode, BuildRunResult, PushReport

__all__ = [
    "CancelToken",
    "BuilderConfig",
    "get_builder_config",
    "BuildDescriptor",
    "get_descriptor",
    "standard_descriptors",
    "BuilderError",
    "InvalidDescriptor",
    "KeyPairManager",
    "InstanceLifecycleManager",
    "Orchestrator",
    "RunOptions",
    "BuildPipeline",
    "ProvisioningState",
    "ProvisioningWorkflow",
    "QuotaAdvisor",
    "SSHConnector",
    "SSHSession",
    "BuildArtifact",
    "BuildNode",
    "BuildRunResult",
    "PushReport",
]
