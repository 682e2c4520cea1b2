"""
Encrypted storage for blob store service keys.

The HTTP blob store authenticates with a service key that can read and
write every ranch's photos, so the key never goes in config.yaml. It is
kept in credentials.enc, a Fernet token over a JSON map of blob endpoint
to key, with the Fernet key derived from a passphrase by PBKDF2-SHA256.

Keys are stored per endpoint (url and bucket), so one operator can hold
keys for a staging and a production photo store side by side.

File layout (owner-only permissions):
    ~/.ranchvault/salt            - random 256-bit salt
    ~/.ranchvault/credentials.enc - encrypted {"<url>#<bucket>": "<key>"}

For unattended runs the RANCHVAULT_BLOB_KEY environment variable takes
precedence over the encrypted store.
"""

import base64
import json
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ranchvault.config.settings import DEFAULT_CONFIG_DIR, BlobStoreConfig

PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32
SESSION_TIMEOUT_SECONDS = 3600
MIN_PASSPHRASE_LENGTH = 12

BLOB_KEY_ENV_VAR = "RANCHVAULT_BLOB_KEY"


class CredentialError(Exception):
    """Base exception for service key storage errors."""

    pass


class CredentialStoreNotInitializedError(CredentialError):
    """Raised before `ranchvault configure` has created the store."""

    pass


class CredentialStoreLockedError(CredentialError):
    """Raised when the store must be unlocked with its passphrase first."""

    pass


class InvalidPassphraseError(CredentialError):
    """Raised when a passphrase does not decrypt credentials.enc."""

    pass


class CredentialNotFoundError(CredentialError):
    """Raised when no service key is stored for a blob endpoint."""

    pass


def blob_endpoint(config: BlobStoreConfig) -> str:
    """The key a blob store's service key is filed under."""
    return f"{config.url.rstrip('/')}#{config.bucket}"


@dataclass
class CredentialSession:
    """An unlocked session; expires after timeout_seconds."""

    fernet: Fernet | None
    created_at: float = field(default_factory=time.time)
    timeout_seconds: int = SESSION_TIMEOUT_SECONDS

    def is_expired(self) -> bool:
        return time.time() - self.created_at > self.timeout_seconds


class CredentialStore:
    """
    Passphrase-protected map of blob endpoint to service key.

    Usage:
        store = CredentialStore()
        if not store.is_initialized():
            store.initialize("my-secure-passphrase")
        else:
            store.unlock("my-secure-passphrase")
        store.set_blob_key(blob_endpoint(settings.blob_store), "eyJhbGciOi...")
        store.lock()
    """

    kdf_iterations: int = PBKDF2_ITERATIONS

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.salt_path = self.config_dir / "salt"
        self.credentials_path = self.config_dir / "credentials.enc"
        self._session: CredentialSession | None = None

    def is_initialized(self) -> bool:
        return self.salt_path.exists() and self.credentials_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create the salt and an empty encrypted key map, leaving the store unlocked.

        Raises:
            CredentialError: If the store already exists.
            ValueError: If the passphrase is shorter than 12 characters.
        """
        if self.is_initialized():
            raise CredentialError(
                f"Credential store already exists in {self.config_dir}. "
                "Delete the salt and credentials.enc files to start over."
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
        self._write_private(self.salt_path, salt)
        self._session = CredentialSession(fernet=self._derive_key(passphrase, salt))
        self._write_keys({})

    def unlock(self, passphrase: str, timeout_seconds: int | None = None) -> None:
        """
        Raises:
            CredentialStoreNotInitializedError: If the store does not exist yet.
            InvalidPassphraseError: If the passphrase does not decrypt it.
        """
        if not self.is_initialized():
            raise CredentialStoreNotInitializedError(
                "No credential store yet. Run 'ranchvault configure' first."
            )

        fernet = self._derive_key(passphrase, self.salt_path.read_bytes())
        try:
            fernet.decrypt(self.credentials_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError(
                "Passphrase does not match this credential store."
            ) from e

        self._session = CredentialSession(
            fernet=fernet,
            timeout_seconds=timeout_seconds or SESSION_TIMEOUT_SECONDS,
        )

    def lock(self) -> None:
        self._session = None

    def is_unlocked(self) -> bool:
        if self._session is not None and self._session.is_expired():
            self.lock()
        return self._session is not None

    def get_blob_key(self, endpoint: str) -> str:
        """
        Raises:
            CredentialStoreLockedError: If the store is locked.
            CredentialNotFoundError: If no key is stored for the endpoint.
        """
        keys = self._read_keys()
        if endpoint not in keys:
            raise CredentialNotFoundError(f"No service key stored for blob store {endpoint}")
        return keys[endpoint]

    def set_blob_key(self, endpoint: str, service_key: str) -> None:
        keys = self._read_keys()
        keys[endpoint] = service_key
        self._write_keys(keys)

    def _fernet(self) -> Fernet:
        if not self.is_unlocked():
            raise CredentialStoreLockedError(
                "Credential store is locked. Unlock it with the passphrase first."
            )
        assert self._session is not None and self._session.fernet is not None
        return self._session.fernet

    def _derive_key(self, passphrase: str, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.kdf_iterations,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode())))

    def _read_keys(self) -> dict[str, str]:
        decrypted = self._fernet().decrypt(self.credentials_path.read_bytes())
        keys: dict[str, str] = json.loads(decrypted.decode())
        return keys

    def _write_keys(self, keys: dict[str, str]) -> None:
        token = self._fernet().encrypt(json.dumps(keys, sort_keys=True).encode())
        self._write_private(self.credentials_path, token)

    def _write_private(self, path: Path, data: bytes) -> None:
        """Write an owner-only file via a temp file and rename."""
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_bytes(data)
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            temp_path.replace(path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise


def resolve_blob_service_key(
    config: BlobStoreConfig, credential_store: CredentialStore | None = None
) -> str:
    """
    Find the service key for the configured blob store.

    RANCHVAULT_BLOB_KEY wins if set; otherwise the key filed under the
    store's endpoint is read from an unlocked credential store.

    Raises:
        CredentialStoreLockedError: If the store is locked.
        CredentialNotFoundError: If no key is configured anywhere.
    """
    env_value = os.environ.get(BLOB_KEY_ENV_VAR)
    if env_value:
        return env_value

    if credential_store is None:
        raise CredentialNotFoundError(
            f"No blob store key: set {BLOB_KEY_ENV_VAR} or run 'ranchvault configure'"
        )

    return credential_store.get_blob_key(blob_endpoint(config))
