"""Type definitions for the build node subsystem."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from geoschem_aws.builder.errors import BuilderError, PushFailed


@dataclass
class BuildNode:
    """An ephemeral EC2 instance owned by a single build run."""
    instance_id: str
    state: str = "pending"
    address: Optional[str] = None
    key_name: Optional[str] = None


@dataclass(frozen=True)
class KeyCredential:
    """SSH key pair: public half registered with EC2, private half on disk."""
    name: str
    private_key_path: Path
    public_key: Optional[str] = None
    created: bool = False


@dataclass(frozen=True)
class BuildArtifact:
    """Image produced on the node, addressed by its primary and arch tags."""
    image_name: str
    tag: str
    architecture: str

    @property
    def primary_tag(self) -> str:
        return f"{self.image_name}:{self.tag}"

    @property
    def arch_tag(self) -> str:
        return f"{self.image_name}:{self.tag}-{self.architecture}"

    @property
    def tags(self) -> List[str]:
        return [self.primary_tag, self.arch_tag]


@dataclass(frozen=True)
class RegistryTarget:
    """ECR repository parsed from ``<account>.dkr.ecr.<region>.amazonaws.com/<repo>``."""
    repository_url: str
    host: str
    region: str


class Severity(str, Enum):
    WARNING = "warning"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepWarning:
    """A non-fatal failure, e.g. a cleanup command that did not succeed."""
    step: str
    message: str
    severity: Severity = Severity.WARNING


@dataclass(frozen=True)
class CleanupWarning(StepWarning):
    """Best-effort removal of local images or build cache did not succeed."""


@dataclass
class PushReport:
    """Outcome of pushing every registry tag; failures are kept per tag."""
    pushed: List[str] = field(default_factory=list)
    failures: List[PushFailed] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class StepStatus(str, Enum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepRecord:
    name: str
    status: StepStatus
    detail: str = ""


@dataclass
class BuildRunResult:
    """Structured result of one orchestrated build."""
    descriptor_name: str
    node: Optional[BuildNode] = None
    artifact: Optional[BuildArtifact] = None
    push: Optional[PushReport] = None
    steps: List[StepRecord] = field(default_factory=list)
    warnings: List[StepWarning] = field(default_factory=list)
    error: Optional[BuilderError] = None
    termination_error: Optional[BuilderError] = None
    terminated: bool = False
    rebooted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def fatal_errors(self) -> List[BuilderError]:
        return [self.error] if self.error is not None else []

    def step_names(self, status: Optional[StepStatus] = StepStatus.SUCCEEDED) -> List[str]:
        return [step.name for step in self.steps if status is None or step.status == status]
