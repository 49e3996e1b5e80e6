"""
Encrypted storage for database passwords.

Restores of server databases need credentials. The project's .env file is
the first source; when a password is not kept there it can be stored here,
encrypted at rest with Fernet using a key derived from a passphrase with
PBKDF2-HMAC-SHA256.

Layout:
    ~/.config/checkpoint/credentials.salt  random 256-bit salt
    ~/.config/checkpoint/credentials.enc   Fernet token of a JSON document
                                           {"<service>": {"<account>": "<secret>"}}

Services are named ``db-<engine>`` and accounts are database names, for
example service "db-postgres", account "shop".

Lookup order used by restores (``resolve_database_password``):
    1. the password from the project's .env (handled by the caller)
    2. environment variable CHECKPOINT_DB_<ENGINE>_<DATABASE>
    3. this store, if it has been unlocked
"""

import base64
import json
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from checkpoint.config.settings import DEFAULT_CONFIG_DIR

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32
SESSION_TIMEOUT_SECONDS = 3600
MIN_PASSPHRASE_LENGTH = 12


class CredentialError(Exception):
    """Base exception for credential-related errors."""

    pass


class CredentialStoreNotInitializedError(CredentialError):
    """Raised when the credential store has not been created yet."""

    pass


class CredentialStoreLockedError(CredentialError):
    """Raised when the store must be unlocked first."""

    pass


class InvalidPassphraseError(CredentialError):
    """Raised when the passphrase cannot decrypt the store."""

    pass


class CredentialNotFoundError(CredentialError):
    """Raised when no secret exists for a service and account."""

    pass


@dataclass
class CredentialSession:
    """Decryption capability that expires after a timeout."""

    fernet: Fernet | None
    created_at: float = field(default_factory=time.time)
    timeout_seconds: int = SESSION_TIMEOUT_SECONDS

    def is_expired(self) -> bool:
        """Check if this session has expired."""
        return time.time() - self.created_at > self.timeout_seconds


def database_service(engine: str) -> str:
    """Credential service name for a database engine."""
    return f"db-{engine.lower()}"


def database_env_var(engine: str, database: str) -> str:
    """Environment variable consulted for a database password."""
    normalized = re.sub(r"[^A-Za-z0-9]+", "_", database).strip("_").upper()
    return f"CHECKPOINT_DB_{engine.upper()}_{normalized}"


class CredentialStore:
    """
    Passphrase-protected secret storage.

    Usage:
        store = CredentialStore()
        if not store.is_initialized():
            store.initialize("a long passphrase")
        store.unlock("a long passphrase")
        store.set_secret("db-mysql", "shop", "s3cret")
        password = store.get_secret("db-mysql", "shop")
        store.lock()

    Attributes:
        config_dir: Directory containing the credential files.
        salt_path: Path to the salt file.
        credentials_path: Path to the encrypted credentials file.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.salt_path = self.config_dir / "credentials.salt"
        self.credentials_path = self.config_dir / "credentials.enc"
        self._session: CredentialSession | None = None

    def is_initialized(self) -> bool:
        """Return True if salt and credentials files exist."""
        return self.salt_path.exists() and self.credentials_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create an empty store protected by a passphrase and unlock it.

        Raises:
            CredentialError: If the store already exists.
            ValueError: If the passphrase is shorter than 12 characters.
        """
        if self.is_initialized():
            raise CredentialError(
                f"Credential store already initialized in {self.config_dir}"
            )
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        self.config_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.config_dir, 0o700)
        except OSError:
            pass

        salt = secrets.token_bytes(SALT_LENGTH)
        self._write_secure_file(self.salt_path, salt)

        fernet = self._derive_key(passphrase, salt)
        self._write_secure_file(self.credentials_path, fernet.encrypt(b"{}"))
        self._session = CredentialSession(fernet=fernet)

    def unlock(self, passphrase: str, timeout_seconds: int | None = None) -> None:
        """
        Unlock the store for a limited time.

        Raises:
            CredentialStoreNotInitializedError: If the store does not exist.
            InvalidPassphraseError: If the passphrase is wrong.
        """
        if not self.is_initialized():
            raise CredentialStoreNotInitializedError(
                "Credential store not initialized. Run 'checkpoint credentials set' first."
            )

        fernet = self._derive_key(passphrase, self.salt_path.read_bytes())
        try:
            fernet.decrypt(self.credentials_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError(
                "Invalid passphrase. Cannot decrypt credentials."
            ) from e

        self._session = CredentialSession(
            fernet=fernet,
            timeout_seconds=timeout_seconds or SESSION_TIMEOUT_SECONDS,
        )

    def lock(self) -> None:
        """Forget the derived key."""
        if self._session is not None:
            self._session.fernet = None
            self._session = None

    def is_unlocked(self) -> bool:
        """Return True if unlocked and the session has not expired."""
        if self._session is None:
            return False
        if self._session.is_expired():
            self.lock()
            return False
        return True

    def get_secret(self, service: str, account: str) -> str:
        """
        Return a stored secret.

        Raises:
            CredentialStoreLockedError: If the store is locked.
            CredentialNotFoundError: If nothing is stored for service/account.
        """
        secrets_by_service = self._load()
        try:
            return secrets_by_service[service][account]
        except KeyError:
            raise CredentialNotFoundError(
                f"No secret stored for {service}/{account}"
            ) from None

    def set_secret(self, service: str, account: str, value: str) -> None:
        """Store or replace a secret."""
        secrets_by_service = self._load()
        secrets_by_service.setdefault(service, {})[account] = value
        self._save(secrets_by_service)

    def delete_secret(self, service: str, account: str) -> None:
        """
        Remove a secret.

        Raises:
            CredentialNotFoundError: If nothing is stored for service/account.
        """
        secrets_by_service = self._load()
        if account not in secrets_by_service.get(service, {}):
            raise CredentialNotFoundError(f"No secret stored for {service}/{account}")
        del secrets_by_service[service][account]
        if not secrets_by_service[service]:
            del secrets_by_service[service]
        self._save(secrets_by_service)

    def list_accounts(self, service: str) -> list[str]:
        """List account names stored for a service."""
        return sorted(self._load().get(service, {}))

    def _require_fernet(self) -> Fernet:
        if not self.is_unlocked():
            raise CredentialStoreLockedError(
                "Credential store is locked. Call unlock() with passphrase first."
            )
        assert self._session is not None and self._session.fernet is not None
        return self._session.fernet

    def _derive_key(self, passphrase: str, salt: bytes) -> Fernet:
        """Derive a Fernet key from a passphrase with PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode())))

    def _load(self) -> dict[str, dict[str, str]]:
        fernet = self._require_fernet()
        decrypted = fernet.decrypt(self.credentials_path.read_bytes())
        data: dict[str, dict[str, str]] = json.loads(decrypted.decode())
        return data

    def _save(self, data: dict[str, dict[str, str]]) -> None:
        fernet = self._require_fernet()
        self._write_secure_file(
            self.credentials_path,
            fernet.encrypt(json.dumps(data, sort_keys=True).encode()),
        )

    def _write_secure_file(self, path: Path, data: bytes) -> None:
        """Write owner-only data via a temporary file and an atomic rename."""
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_bytes(data)
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise


def resolve_database_password(
    engine: str,
    database: str,
    store: CredentialStore | None = None,
) -> str | None:
    """
    Find a database password outside the project's .env.

    Args:
        engine: Engine name ("mysql", "postgres", "mongodb").
        database: Database name.
        store: Optional credential store; consulted only if unlocked.

    Returns:
        The password, or None if no source has one.
    """
    value = os.environ.get(database_env_var(engine, database))
    if value:
        return value

    if store is not None and store.is_unlocked():
        try:
            return store.get_secret(database_service(engine), database)
        except CredentialNotFoundError:
            return None
    return None
