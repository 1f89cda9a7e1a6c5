"""GEOS-Chem build descriptors and the catalog of standard configurations."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from geoschem_aws.builder.errors import InvalidDescriptor
from geoschem_aws.builder.types import BuildArtifact

ALLOWED_ARCHITECTURES = ("x86_64", "arm64")
REQUIRED_BUILD_ARGS = ("COMPILER",)

DEFAULT_SOURCE_REPO = "https://github.com/geoschem/GeosChem.git"
DEFAULT_DOCKERFILE_DIR = "docker"


@dataclass(frozen=True)
class BuildDescriptor:
    """Everything needed to build and tag one GEOS-Chem container image."""
    name: str
    architecture: str
    compiler: str
    base_image: str
    build_args: Mapping[str, str] = field(default_factory=dict)
    mpi: str = ""
    source_repo: str = DEFAULT_SOURCE_REPO
    source_ref: str = "main"
    image_name: str = "geoschem"
    image_tag: str = "latest"
    dockerfile_dir: str = DEFAULT_DOCKERFILE_DIR
    description: str = ""

    def __post_init__(self) -> None:
        # Freeze the build args so the descriptor is immutable end to end.
        object.__setattr__(self, "build_args", MappingProxyType(dict(self.build_args)))

    def validate(self) -> "BuildDescriptor":
        """
        Check the descriptor before any remote work is done.

        Returns:
            The descriptor itself, for chaining.

        Raises:
            InvalidDescriptor: If a required field or build arg is missing, or the
                architecture is not supported.
        """
        for attr in ("name", "base_image", "source_repo", "source_ref", "image_name", "image_tag"):
            value = getattr(self, attr)
            if not value or not isinstance(value, str):
                raise InvalidDescriptor(f"{attr} must be a non-empty string")

        if self.architecture not in ALLOWED_ARCHITECTURES:
            raise InvalidDescriptor(
                f"architecture must be one of {', '.join(ALLOWED_ARCHITECTURES)}, got: {self.architecture}"
            )

        for arg in REQUIRED_BUILD_ARGS:
            if arg not in self.build_args:
                raise InvalidDescriptor(f"required build arg '{arg}' is missing")

        for key, value in self.build_args.items():
            if not key or not key.replace("_", "").isalnum():
                raise InvalidDescriptor(f"invalid build arg name: {key!r}")
            if not isinstance(value, str):
                raise InvalidDescriptor(f"build arg '{key}' must be a string")

        return self

    def artifact(self) -> BuildArtifact:
        return BuildArtifact(image_name=self.image_name, tag=self.image_tag, architecture=self.architecture)

    def with_source(self, source_repo: str, source_ref: str, image_tag: str, image_name: Optional[str] = None) -> "BuildDescriptor":
        return replace(
            self,
            source_repo=source_repo,
            source_ref=source_ref,
            image_tag=image_tag,
            image_name=image_name or self.image_name,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BuildDescriptor":
        """Build a descriptor from a YAML/JSON mapping; unknown keys are rejected."""
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise InvalidDescriptor(f"unknown descriptor keys: {', '.join(sorted(unknown))}")
        missing = [key for key in ("name", "architecture", "compiler", "base_image") if key not in data]
        if missing:
            raise InvalidDescriptor(f"missing descriptor keys: {', '.join(missing)}")
        values = dict(data)
        values["build_args"] = {str(k): str(v) for k, v in (data.get("build_args") or {}).items()}
        return cls(**values)


def standard_descriptors() -> List[BuildDescriptor]:
    """The standard GEOS-Chem compiler/architecture combinations."""
    return [
        BuildDescriptor(
            name="geoschem-gcc-x86_64",
            architecture="x86_64",
            compiler="gcc13",
            base_image="rockylinux:9",
            build_args={
                "COMPILER": "gcc",
                "COMPILER_VERSION": "13",
                "ARCHITECTURE": "x86_64",
                "SPACK_SPEC": "geos-chem@14.4.3 %gcc@13.2.0",
            },
            description="GeosChem with GCC 13 on x86_64",
        ),
        BuildDescriptor(
            name="geoschem-intel-x86_64",
            architecture="x86_64",
            compiler="intel2024",
            base_image="rockylinux:9",
            build_args={
                "COMPILER": "intel",
                "COMPILER_VERSION": "2024.0",
                "ARCHITECTURE": "x86_64",
                "SPACK_SPEC": "geos-chem@14.4.3 %intel@2024.0.0",
            },
            description="GeosChem with Intel Compiler 2024 on x86_64",
        ),
        BuildDescriptor(
            name="geoschem-gcc-arm64",
            architecture="arm64",
            compiler="gcc13",
            base_image="rockylinux:9",
            build_args={
                "COMPILER": "gcc",
                "COMPILER_VERSION": "13",
                "ARCHITECTURE": "arm64",
                "SPACK_SPEC": "geos-chem@14.4.3 %gcc@13.2.0",
            },
            description="GeosChem with GCC 13 on ARM64/Graviton",
        ),
        BuildDescriptor(
            name="geoschem-aocc-x86_64",
            architecture="x86_64",
            compiler="aocc4",
            base_image="rockylinux:9",
            build_args={
                "COMPILER": "aocc",
                "COMPILER_VERSION": "4.0.0",
                "ARCHITECTURE": "x86_64",
                "SPACK_SPEC": "geos-chem@14.4.3 %aocc@4.0.0",
            },
            description="GeosChem with AMD AOCC 4 on x86_64",
        ),
    ]


def get_descriptor(
    name: str,
    source_repo: str = DEFAULT_SOURCE_REPO,
    source_ref: str = "main",
    image_tag: str = "latest",
    image_name: Optional[str] = None,
) -> BuildDescriptor:
    """
    Look up a standard configuration by name and bind it to a source ref.

    Raises:
        InvalidDescriptor: If no configuration has that name.
    """
    for descriptor in standard_descriptors():
        if descriptor.name == name:
            return descriptor.with_source(source_repo, source_ref, image_tag, image_name=image_name or descriptor.name)
    raise InvalidDescriptor(f"build configuration '{name}' not found")


def list_available() -> str:
    lines = ["Available GeosChem Build Configurations:", ""]
    for descriptor in standard_descriptors():
        lines.append(f"- {descriptor.name}")
        lines.append(f"  Architecture: {descriptor.architecture}")
        lines.append(f"  Compiler: {descriptor.compiler}")
        lines.append(f"  Description: {descriptor.description}")
        lines.append("")
    return "\n".join(lines)


def descriptors_by_architecture(descriptors: List[BuildDescriptor]) -> Dict[str, List[BuildDescriptor]]:
    grouped: Dict[str, List[BuildDescriptor]] = {}
    for descriptor in descriptors:
        grouped.setdefault(descriptor.architecture, []).append(descriptor)
    return grouped
