"""
Configuration for the GEOS-Chem builder.
Loads settings from a .env file, the environment and an optional YAML file.
"""
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
import yaml

from geoschem_aws.builder.lifecycle import DEFAULT_INSTANCE_TYPES


class BuilderConfig:
    """Load and validate builder configuration."""

    def __init__(self, env_file: Optional[Path] = None, config_file: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file. If None, looks for .env in the working directory.
            config_file: Optional YAML file with ``aws``, ``architectures`` and
                ``ecr_repository`` sections. Values there win over the environment.

        Raises:
            ValueError: If the YAML file is malformed or a timeout is not a number.
        """
        self._load_env_file(env_file)
        self.profile = os.getenv("GEOSCHEM_AWS_PROFILE") or os.getenv("AWS_PROFILE")
        self.region = os.getenv("GEOSCHEM_AWS_REGION") or os.getenv("AWS_REGION", "us-west-2")
        self.subnet_id = os.getenv("GEOSCHEM_SUBNET_ID", "")
        self.security_group_id = os.getenv("GEOSCHEM_SECURITY_GROUP", "")
        self.ecr_repository = os.getenv("GEOSCHEM_ECR_REPOSITORY", "")
        self.ssh_user = os.getenv("GEOSCHEM_SSH_USER", "rocky")
        self.key_dir = Path(os.getenv("GEOSCHEM_KEY_DIR", tempfile.gettempdir())).expanduser()
        self.container_tool = os.getenv("GEOSCHEM_CONTAINER_TOOL", "podman")
        self.instance_types: Dict[str, str] = dict(DEFAULT_INSTANCE_TYPES)

        self.run_timeout = self._get_float_env("GEOSCHEM_RUN_TIMEOUT", 2 * 60 * 60)
        self.launch_timeout = self._get_float_env("GEOSCHEM_LAUNCH_TIMEOUT", 5 * 60)
        self.terminate_timeout = self._get_float_env("GEOSCHEM_TERMINATE_TIMEOUT", 10 * 60)
        self.ssh_max_attempts = int(self._get_float_env("GEOSCHEM_SSH_MAX_ATTEMPTS", 30))
        self.ssh_retry_delay = self._get_float_env("GEOSCHEM_SSH_RETRY_DELAY", 10)

        if config_file is not None:
            self._apply_yaml(config_file)

    def _load_env_file(self, env_file: Optional[Path]) -> None:
        """Load .env file if it exists."""
        if env_file is None:
            env_file = Path.cwd() / ".env"

        if env_file.exists():
            self._parse_env_file(env_file)

    @staticmethod
    def _parse_env_file(env_file: Path) -> None:
        """Parse and load .env file into os.environ."""
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    value = value.strip()
                    # Remove surrounding quotes if present
                    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                        value = value[1:-1]
                    os.environ.setdefault(key.strip(), value)

    @staticmethod
    def _get_float_env(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None or not raw.strip():
            return float(default)
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"Environment variable '{key}' must be a number, got {raw!r}") from exc

    def _apply_yaml(self, config_file: Path) -> None:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")

        aws: Dict[str, Any] = data.get("aws") or {}
        self.profile = aws.get("profile", self.profile)
        self.region = aws.get("region", self.region)
        self.subnet_id = aws.get("subnet_id", self.subnet_id)
        self.security_group_id = aws.get("security_group", self.security_group_id)
        self.ecr_repository = data.get("ecr_repository", self.ecr_repository)

        for arch, arch_config in (data.get("architectures") or {}).items():
            instance_type = (arch_config or {}).get("instance_type")
            if instance_type:
                self.instance_types[arch] = instance_type

    def require_network(self) -> None:
        """
        Raises:
            ValueError: If subnet or security group is not configured.
        """
        if not self.subnet_id or not self.security_group_id:
            raise ValueError(
                "Both subnet and security group are required. "
                "Set GEOSCHEM_SUBNET_ID and GEOSCHEM_SECURITY_GROUP or pass them on the command line."
            )

    def key_name(self, architecture: str) -> str:
        return f"geoschem-builder-{architecture}"

    def private_key_path(self, architecture: str) -> Path:
        return self.key_dir / f"{self.key_name(architecture)}.pem"

    def create_session(self) -> boto3.session.Session:
        return boto3.session.Session(profile_name=self.profile, region_name=self.region)


def get_builder_config(env_file: Optional[Path] = None, config_file: Optional[Path] = None) -> BuilderConfig:
    """
    Get builder configuration.

    Args:
        env_file: Path to .env file (for testing).
        config_file: Optional YAML config file.

    Returns:
        BuilderConfig instance.
    """
    return BuilderConfig(env_file, config_file)
