"""
Secret storage for account passwords.

Passwords never live in config.yaml. EnvSecretStore keeps them in a dotenv
file next to the configuration, one variable per account:

    MAILWATCH_PASSWORD_USER_AT_EXAMPLE_COM=...

Lookups check the process environment first (so deployments can inject
secrets without a file) and then the dotenv file. Writes go through
python-dotenv's set_key/unset_key so the file stays hand-editable.

Any object with get/set/delete matching SecretStore can be used in its place.
"""
import logging
import os
import re
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from dotenv import dotenv_values, set_key, unset_key

logger = logging.getLogger(__name__)

SECRET_PREFIX = "MAILWATCH_PASSWORD_"


class SecretStoreError(Exception):
    """Raised when the secret backend cannot be read or written."""
    pass


class SecretNotFoundError(SecretStoreError):
    """Raised when no secret is stored for the requested account."""
    pass


class SecretStore(Protocol):
    """Capability interface for account secrets, keyed by account email."""

    def get(self, account_key: str) -> str: ...

    def set(self, account_key: str, secret: str) -> None: ...

    def delete(self, account_key: str) -> None: ...


def secret_key_for(account_key: str) -> str:
    """
    Map an account email to its environment variable name.

    >>> secret_key_for('user@example.com')
    'MAILWATCH_PASSWORD_USER_AT_EXAMPLE_COM'
    """
    name = account_key.strip().upper().replace("@", "_AT_")
    name = re.sub(r'[^A-Z0-9_]', '_', name)
    return SECRET_PREFIX + name


class EnvSecretStore:
    """
    SecretStore backed by os.environ and a dotenv file.

    Args:
        env_path: Path of the dotenv file holding the passwords
        use_environ: Whether process environment variables take precedence
    """

    def __init__(self, env_path: Union[str, Path], use_environ: bool = True):
        self.env_path = Path(env_path)
        self.use_environ = use_environ
        self._lock = threading.Lock()

    def _file_values(self) -> Dict[str, Optional[str]]:
        if not self.env_path.exists():
            return {}
        try:
            return dotenv_values(self.env_path)
        except OSError as e:
            raise SecretStoreError(f"Cannot read secrets file {self.env_path}: {e}") from e

    def get(self, account_key: str) -> str:
        """
        Return the stored password for an account.

        Raises:
            SecretNotFoundError: If no password is stored
            SecretStoreError: If the secrets file cannot be read
        """
        name = secret_key_for(account_key)
        if self.use_environ:
            value = os.environ.get(name)
            if value:
                return value

        with self._lock:
            value = self._file_values().get(name)
        if not value:
            raise SecretNotFoundError(
                f"No password stored for {account_key} (expected {name} in environment or {self.env_path})"
            )
        return value

    def set(self, account_key: str, secret: str) -> None:
        """
        Store or replace the password for an account.

        Raises:
            SecretStoreError: If the secrets file cannot be written
        """
        name = secret_key_for(account_key)
        with self._lock:
            try:
                self.env_path.parent.mkdir(parents=True, exist_ok=True)
                if not self.env_path.exists():
                    self.env_path.touch(mode=0o600)
                success, _, _ = set_key(str(self.env_path), name, secret, quote_mode="always")
            except OSError as e:
                raise SecretStoreError(f"Cannot write secrets file {self.env_path}: {e}") from e
        if not success:
            raise SecretStoreError(f"Failed to store password for {account_key} in {self.env_path}")
        if self.use_environ and name in os.environ:
            # Keep an environment copy (e.g. from load_dotenv) in step with the file
            os.environ[name] = secret
        logger.info(f"[{account_key}] Password stored in {self.env_path}")

    def delete(self, account_key: str) -> None:
        """
        Remove the password for an account. Deleting a missing secret is a no-op.

        Raises:
            SecretStoreError: If the secrets file cannot be written
        """
        name = secret_key_for(account_key)
        with self._lock:
            if name not in self._file_values():
                logger.debug(f"[{account_key}] No stored password to delete")
                return
            try:
                success, _ = unset_key(str(self.env_path), name)
            except OSError as e:
                raise SecretStoreError(f"Cannot write secrets file {self.env_path}: {e}") from e
        if not success:
            raise SecretStoreError(f"Failed to delete password for {account_key} from {self.env_path}")
        if self.use_environ:
            os.environ.pop(name, None)
        logger.info(f"[{account_key}] Password removed from {self.env_path}")
