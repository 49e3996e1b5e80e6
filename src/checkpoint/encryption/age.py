"""
age encryption of backup artifacts.

Artifacts destined for the cloud can be encrypted with age (https://age-encryption.org)
using an X25519 identity kept on the local machine. Encrypted files carry a
``.age`` suffix. The identity file is the only thing needed to decrypt; losing
it makes every encrypted artifact unrecoverable.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from checkpoint.tools import ToolError, run_tool

logger = logging.getLogger(__name__)

AGE_SUFFIX = ".age"
KEYGEN_TIMEOUT_SECONDS = 30
CRYPT_TIMEOUT_SECONDS = 1800


class EncryptionError(Exception):
    """Raised when an age operation fails or the key is unusable."""

    pass


class AgeEncryptor:
    """
    Encrypt and decrypt files with an age identity file.

    Args:
        key_path: Path to the age identity (private key) file.
    """

    def __init__(self, key_path: Path) -> None:
        self.key_path = Path(key_path).expanduser()
        self._recipient: str | None = None

    def has_key(self) -> bool:
        """Return True if the identity file exists."""
        return self.key_path.is_file()

    def generate_key(self, overwrite: bool = False) -> str:
        """
        Create a new identity file.

        Args:
            overwrite: Replace an existing identity. Artifacts encrypted
                with the old key can no longer be decrypted.

        Returns:
            The public recipient of the new key.

        Raises:
            EncryptionError: If a key exists and overwrite is not set, or
                age-keygen fails.
        """
        if self.has_key() and not overwrite:
            raise EncryptionError(f"Key already exists: {self.key_path}")

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        if self.key_path.exists():
            self.key_path.unlink()

        try:
            run_tool(["age-keygen", "-o", str(self.key_path)], timeout=KEYGEN_TIMEOUT_SECONDS)
        except ToolError as e:
            raise EncryptionError(f"Key generation failed: {e}") from e

        try:
            os.chmod(self.key_path, 0o600)
        except OSError:
            pass

        self._recipient = None
        recipient = self.recipient()
        logger.info(f"Generated age key {self.key_path}")
        return recipient

    def recipient(self) -> str:
        """
        Return the public recipient for the identity file.

        Raises:
            EncryptionError: If the key is missing or unreadable.
        """
        if self._recipient is not None:
            return self._recipient
        if not self.has_key():
            raise EncryptionError(
                f"Encryption key not found: {self.key_path}. Run 'checkpoint keygen'."
            )
        try:
            result = run_tool(
                ["age-keygen", "-y", str(self.key_path)],
                timeout=KEYGEN_TIMEOUT_SECONDS,
            )
        except ToolError as e:
            raise EncryptionError(f"Cannot read key {self.key_path}: {e}") from e

        recipient = result.stdout.strip()
        if not recipient.startswith("age1"):
            raise EncryptionError(f"Unexpected recipient from {self.key_path}")
        self._recipient = recipient
        return recipient

    def encrypt_file(self, source: Path, destination: Path | None = None) -> Path:
        """
        Encrypt a file to the identity's recipient.

        Args:
            source: Plain file.
            destination: Output path; defaults to source + ".age".

        Returns:
            Path to the encrypted file.
        """
        destination = destination or source.with_name(source.name + AGE_SUFFIX)
        try:
            run_tool(
                ["age", "-r", self.recipient(), "-o", str(destination), str(source)],
                timeout=CRYPT_TIMEOUT_SECONDS,
            )
        except ToolError as e:
            destination.unlink(missing_ok=True)
            raise EncryptionError(f"Encryption of {source.name} failed: {e}") from e
        return destination

    def decrypt_file(self, source: Path, destination: Path | None = None) -> Path:
        """
        Decrypt an .age file with the identity.

        Args:
            source: Encrypted file.
            destination: Output path; defaults to source without ".age".

        Returns:
            Path to the decrypted file.

        Raises:
            EncryptionError: If the key is missing or decryption fails.
        """
        if not self.has_key():
            raise EncryptionError(
                f"Encryption key not found: {self.key_path}. Cannot decrypt {source.name}."
            )
        if destination is None:
            if source.name.endswith(AGE_SUFFIX):
                destination = source.with_name(source.name[: -len(AGE_SUFFIX)])
            else:
                destination = source.with_name(source.name + ".dec")
        try:
            run_tool(
                ["age", "-d", "-i", str(self.key_path), "-o", str(destination), str(source)],
                timeout=CRYPT_TIMEOUT_SECONDS,
            )
        except ToolError as e:
            destination.unlink(missing_ok=True)
            raise EncryptionError(f"Decryption of {source.name} failed: {e}") from e
        return destination
