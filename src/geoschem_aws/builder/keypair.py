"""EC2 key pair management for builder SSH access."""
from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Any, List, Optional

import paramiko
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives import serialization

from geoschem_aws.builder.errors import BuilderError, CredentialConflict, KeyPersistenceError
from geoschem_aws.builder.types import KeyCredential

logger = logging.getLogger(__name__)

PROJECT_TAG = "geoschem-aws"
KEY_BITS = 2048


def generate_key_pair() -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(KEY_BITS)


def public_key_line(key: paramiko.PKey, comment: str = "") -> str:
    line = f"{key.get_name()} {key.get_base64()}"
    return f"{line} {comment}" if comment else line


def md5_fingerprint(key: paramiko.RSAKey) -> str:
    """Colon-separated MD5 of the DER public key, as EC2 reports for imported keys."""
    der = key.key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    digest = hashlib.md5(der).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def save_key_pair(key: paramiko.PKey, private_key_path: Path, public_key: str) -> None:
    """
    Write the private key with owner-only permissions and the public key beside it.

    Raises:
        OSError: If either file cannot be written.
    """
    private_key_path.parent.mkdir(parents=True, exist_ok=True)
    # Create with 0600 from the start so the key is never world-readable.
    fd = os.open(str(private_key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        key.write_private_key(handle)
    os.chmod(private_key_path, 0o600)

    public_key_path = Path(f"{private_key_path}.pub")
    public_key_path.write_text(public_key + "\n")
    os.chmod(public_key_path, 0o644)


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class KeyPairManager:
    """Creates, looks up and deletes the EC2 key pairs used by build nodes."""

    def __init__(self, ec2_client: Any, project: str = PROJECT_TAG) -> None:
        if ec2_client is None:
            raise ValueError("ec2_client is required")
        self.ec2 = ec2_client
        self.project = project

    def describe(self, name: str) -> Optional[dict]:
        """Return the EC2 key pair record, or None if it is not registered."""
        try:
            response = self.ec2.describe_key_pairs(KeyNames=[name])
        except ClientError as exc:
            if _error_code(exc) == "InvalidKeyPair.NotFound":
                return None
            raise BuilderError(f"checking key pair {name}: {exc}") from exc
        pairs = response.get("KeyPairs", [])
        return pairs[0] if pairs else None

    def exists(self, name: str) -> bool:
        return self.describe(name) is not None

    def create(self, name: str) -> tuple:
        """
        Generate a key locally and import its public half into EC2.

        Returns:
            Tuple of (paramiko key, OpenSSH public key line).
        """
        key = generate_key_pair()
        public_key = public_key_line(key)
        try:
            self.ec2.import_key_pair(
                KeyName=name,
                PublicKeyMaterial=public_key.encode("utf-8"),
                TagSpecifications=[
                    {
                        "ResourceType": "key-pair",
                        "Tags": [
                            {"Key": "Name", "Value": name},
                            {"Key": "Project", "Value": self.project},
                            {"Key": "Purpose", "Value": "builder-ssh"},
                        ],
                    }
                ],
            )
        except ClientError as exc:
            raise BuilderError(f"importing key pair {name} to AWS: {exc}") from exc
        return key, public_key

    def delete(self, name: str) -> None:
        try:
            self.ec2.delete_key_pair(KeyName=name)
        except ClientError as exc:
            raise BuilderError(f"deleting key pair {name}: {exc}") from exc

    def list_project_keys(self) -> List[str]:
        try:
            response = self.ec2.describe_key_pairs(
                Filters=[{"Name": "tag:Project", "Values": [self.project]}]
            )
        except ClientError as exc:
            raise BuilderError(f"listing key pairs: {exc}") from exc
        return [pair["KeyName"] for pair in response.get("KeyPairs", []) if pair.get("KeyName")]

    def get_or_create(self, name: str, local_path: str) -> KeyCredential:
        """
        Ensure a usable key pair exists both in EC2 and on disk.

        Args:
            name: EC2 key pair name. Required.
            local_path: Where the private key lives (or will be written). Required.

        Returns:
            KeyCredential for the pair; ``created`` tells whether it is new.

        Raises:
            CredentialConflict: If EC2 has the key but the local file is missing
                or does not match. Nothing is deleted or regenerated.
            KeyPersistenceError: If the new private key could not be written.
        """
        if not name or not isinstance(name, str):
            raise ValueError("name must be a non-empty string")
        if not local_path or not isinstance(local_path, str):
            raise ValueError("local_path must be a non-empty string")

        private_key_path = Path(local_path).expanduser()
        registered = self.describe(name)

        if registered is not None:
            if not private_key_path.is_file():
                raise CredentialConflict(
                    f"key pair {name} exists in AWS but no local private key found at {private_key_path}",
                    step="credentials",
                )
            self._check_pairing(name, private_key_path, registered.get("KeyFingerprint", ""))
            logger.info(f"Reusing key pair {name} ({private_key_path})")
            return KeyCredential(name=name, private_key_path=private_key_path)

        key, public_key = self.create(name)
        try:
            save_key_pair(key, private_key_path, public_key)
        except OSError as exc:
            try:
                self.delete(name)
            except BuilderError as cleanup_exc:
                logger.warning(f"Could not remove orphaned key pair {name}: {cleanup_exc}")
            raise KeyPersistenceError(
                f"saving private key for {name} to {private_key_path}: {exc}", step="credentials"
            ) from exc

        logger.info(f"Created new key pair {name} and saved to {private_key_path}")
        return KeyCredential(name=name, private_key_path=private_key_path, public_key=public_key, created=True)

    def _check_pairing(self, name: str, private_key_path: Path, fingerprint: str) -> None:
        # Only imported keys carry an MD5 fingerprint (16 bytes, 47 chars).
        if len(fingerprint) != 47:
            return
        try:
            local_key = paramiko.RSAKey.from_private_key_file(str(private_key_path))
        except (paramiko.SSHException, OSError) as exc:
            raise CredentialConflict(
                f"local private key {private_key_path} for {name} is unreadable: {exc}", step="credentials"
            ) from exc
        if md5_fingerprint(local_key) != fingerprint.lower():
            raise CredentialConflict(
                f"local private key {private_key_path} does not match key pair {name} in AWS",
                step="credentials",
            )
