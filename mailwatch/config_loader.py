"""
Configuration loader for mail-watch.

All state lives in one application directory (see get_app_dir):

    <app_dir>/
        config.yaml                 account list
        .env                        account passwords (see mailwatch.secrets)
        notification_history/       one JSON history file per account
        mail-watch.log              rotating log file

config.yaml holds a single 'accounts' list. Each entry uses these keys:

    email, server, port, username, protocol (imap|pop3),
    include_keyword, exclude_keyword, include_email, exclude_email,
    check_interval, check_history, enable_notification_sound,
    folder_mode (all|include|exclude), include_folders, exclude_folders

Passwords are never written to config.yaml. A 'password' key found on load is
moved into the secret store and the file is re-saved without it.

Usage:
    >>> loader = ConfigLoader(get_app_dir())
    >>> accounts = loader.load(secret_store=EnvSecretStore(loader.env_path))
"""
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml
from dotenv import load_dotenv

from mailwatch.models import (
    DEFAULT_CHECK_HISTORY,
    DEFAULT_CHECK_INTERVAL,
    AccountConfig,
    FolderMode,
    FolderPolicy,
    Protocol,
)
from mailwatch.rules import InvalidFilterError, build_filter_policy, filter_policy_to_dict
from mailwatch.secrets import SecretStore, SecretStoreError

logger = logging.getLogger(__name__)

APP_NAME = "mail-watch"
CONFIG_FILENAME = "config.yaml"
ENV_FILENAME = ".env"
HISTORY_DIRNAME = "notification_history"
LOG_FILENAME = "mail-watch.log"

DEFAULT_PORTS = {
    Protocol.IMAP: 993,
    Protocol.POP3: 995,
}

REQUIRED_FIELDS = ('email', 'server', 'username')


class ConfigurationError(Exception):
    """Custom exception for configuration-related errors."""
    pass


def get_app_dir() -> Path:
    """
    Resolve the per-user application directory.

    $XDG_CONFIG_HOME/mail-watch when set, otherwise the platform's usual
    config location: ~/Library/Application Support (macOS), %APPDATA%
    (Windows) or ~/.config (everything else).

    Raises:
        ConfigurationError: If no suitable base directory can be determined
    """
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / APP_NAME

    home = Path.home()
    if sys.platform == 'darwin':
        base_dir = home / 'Library' / 'Application Support'
    elif sys.platform.startswith('win'):
        appdata = os.environ.get('APPDATA')
        if not appdata:
            raise ConfigurationError("Unable to determine user config directory: APPDATA is not set")
        base_dir = Path(appdata)
    else:
        base_dir = home / '.config'
    return base_dir / APP_NAME


def _parse_enum(enum_cls, raw: Any, key: str, default, where: str):
    if raw is None or raw == '':
        return default
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ConfigurationError(f"{where}: invalid {key} {raw!r} (expected one of: {allowed})")


def _parse_int(raw: Any, key: str, default: int, where: str) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise ConfigurationError(f"{where}: {key} must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}: {key} must be an integer, got {raw!r}")


def _parse_folder_list(raw: Any, key: str, where: str) -> tuple:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
        raise ConfigurationError(f"{where}: {key} must be a list of folder names")
    return tuple(str(name) for name in raw if str(name).strip())


def account_from_dict(raw: Dict[str, Any], index: int = 0) -> AccountConfig:
    """
    Build an AccountConfig from one raw 'accounts' entry, applying defaults.

    Args:
        raw: Mapping as parsed from YAML
        index: Position in the accounts list, used in error messages

    Raises:
        ConfigurationError: If a required field is missing or a value is invalid
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Account #{index + 1} must be a mapping, got {type(raw).__name__}")

    where = f"Account #{index + 1} ({raw.get('email') or 'no email'})"

    missing = [key for key in REQUIRED_FIELDS if not str(raw.get(key) or '').strip()]
    if missing:
        raise ConfigurationError(f"{where}: missing required field(s): {', '.join(missing)}")

    protocol = _parse_enum(Protocol, raw.get('protocol'), 'protocol', Protocol.IMAP, where)

    port = _parse_int(raw.get('port'), 'port', DEFAULT_PORTS[protocol], where)
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"{where}: port must be between 1 and 65535, got {port}")

    check_interval = _parse_int(raw.get('check_interval'), 'check_interval', DEFAULT_CHECK_INTERVAL, where)
    if check_interval < 1:
        raise ConfigurationError(f"{where}: check_interval must be at least 1 second, got {check_interval}")

    check_history = _parse_int(raw.get('check_history'), 'check_history', DEFAULT_CHECK_HISTORY, where)
    if check_history < 1:
        raise ConfigurationError(f"{where}: check_history must be at least 1, got {check_history}")

    folders = FolderPolicy(
        mode=_parse_enum(FolderMode, raw.get('folder_mode'), 'folder_mode', FolderMode.ALL, where),
        include=_parse_folder_list(raw.get('include_folders'), 'include_folders', where),
        exclude=_parse_folder_list(raw.get('exclude_folders'), 'exclude_folders', where),
    )

    try:
        filters = build_filter_policy(raw)
    except InvalidFilterError as e:
        raise ConfigurationError(f"{where}: {e}") from e

    sound = raw.get('enable_notification_sound', True)

    return AccountConfig(
        email=str(raw['email']).strip(),
        server=str(raw['server']).strip(),
        port=port,
        username=str(raw['username']).strip(),
        protocol=protocol,
        filters=filters,
        folders=folders,
        check_interval=check_interval,
        check_history=check_history,
        enable_notification_sound=bool(sound) if sound is not None else True,
    )


def account_to_dict(account: AccountConfig) -> Dict[str, Any]:
    """Serialize an AccountConfig back to its config.yaml form (no password)."""
    data = {
        'email': account.email,
        'server': account.server,
        'port': account.port,
        'username': account.username,
        'protocol': account.protocol.value,
    }
    data.update(filter_policy_to_dict(account.filters))
    data.update({
        'check_interval': account.check_interval,
        'check_history': account.check_history,
        'enable_notification_sound': account.enable_notification_sound,
        'folder_mode': account.folders.mode.value,
        'include_folders': list(account.folders.include),
        'exclude_folders': list(account.folders.exclude),
    })
    return data


SAMPLE_ACCOUNT = {
    'email': 'user@example.com',
    'server': 'imap.example.com',
    'port': 993,
    'username': 'user@example.com',
    'protocol': 'imap',
    'include_keyword': [],
    'exclude_keyword': [],
    'include_email': [],
    'exclude_email': [],
    'check_interval': DEFAULT_CHECK_INTERVAL,
    'check_history': DEFAULT_CHECK_HISTORY,
    'enable_notification_sound': True,
    'folder_mode': 'all',
    'include_folders': [],
    'exclude_folders': [],
}


class ConfigLoader:
    """
    Loads and persists the account list in <base_dir>/config.yaml.

    Args:
        base_dir: Application directory (see get_app_dir)
        filename: Name of the YAML config file (default: 'config.yaml')

    Example:
        >>> loader = ConfigLoader('/tmp/mail-watch')
        >>> loader.config_path
        PosixPath('/tmp/mail-watch/config.yaml')
    """

    def __init__(self, base_dir: Union[Path, str], filename: str = CONFIG_FILENAME) -> None:
        self.base_dir = Path(base_dir)
        self.config_path = self.base_dir / filename
        self.env_path = self.base_dir / ENV_FILENAME
        self.history_dir = self.base_dir / HISTORY_DIRNAME
        self.log_path = self.base_dir / LOG_FILENAME
        logger.debug(f"ConfigLoader initialized with base_dir={self.base_dir}")

    def load_environment(self) -> bool:
        """
        Load <base_dir>/.env into os.environ without overriding existing variables.

        Returns:
            True if the file existed and was loaded
        """
        if not self.env_path.exists():
            return False
        load_dotenv(self.env_path, override=False)
        logger.debug(f"Loaded environment from {self.env_path}")
        return True

    def _load_yaml_file(self, path: Path) -> Dict:
        """
        Load a YAML file whose root must be a mapping.

        Raises:
            ConfigurationError: If the file cannot be read, is invalid YAML,
                or the root element is not a mapping
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML parse error in {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Error reading configuration file {path}: {e}") from e

        if raw_data is None:
            return {}

        if not isinstance(raw_data, dict):
            raise ConfigurationError(
                f"Configuration file {path} root must be a mapping (dict), "
                f"got {type(raw_data).__name__}"
            )

        return raw_data

    def create_sample_config(self) -> Path:
        """
        Write a sample config.yaml with one placeholder account.

        Returns:
            Path of the written file
        """
        self._write_yaml({'accounts': [dict(SAMPLE_ACCOUNT)]})
        logger.info(f"Created sample config file: {self.config_path}")
        return self.config_path

    def load(self, secret_store: Optional[SecretStore] = None) -> List[AccountConfig]:
        """
        Load, validate and default the configured accounts.

        When the config file does not exist a sample is written and
        ConfigurationError is raised asking the operator to edit it.

        Args:
            secret_store: Where plaintext 'password' entries are migrated to.
                Without one, plaintext passwords are left in place with a warning.

        Returns:
            Accounts in file order

        Raises:
            ConfigurationError: On a missing file, invalid YAML, no accounts,
                invalid fields or duplicate emails
        """
        if not self.config_path.exists():
            self.create_sample_config()
            raise ConfigurationError(
                f"Sample config created at {self.config_path}. "
                f"Please edit it with your email settings and restart. "
                f"Passwords are stored in {self.env_path}, not in the config file."
            )

        logger.debug(f"Loading configuration from {self.config_path}")
        raw = self._load_yaml_file(self.config_path)

        raw_accounts = raw.get('accounts')
        if raw_accounts is None or raw_accounts == []:
            raise ConfigurationError(f"No accounts configured in {self.config_path}")
        if not isinstance(raw_accounts, list):
            raise ConfigurationError(f"'accounts' in {self.config_path} must be a list")

        accounts = [account_from_dict(entry, index) for index, entry in enumerate(raw_accounts)]
        self._check_unique(accounts)

        if self._migrate_passwords(raw_accounts, secret_store):
            self.save(accounts)

        logger.info(f"Loaded {len(accounts)} account(s) from {self.config_path}")
        return accounts

    @staticmethod
    def _check_unique(accounts: Sequence[AccountConfig]) -> None:
        seen = set()
        for account in accounts:
            key = account.email.lower()
            if key in seen:
                raise ConfigurationError(f"Duplicate account email: {account.email}")
            seen.add(key)

    def _migrate_passwords(self, raw_accounts: List[Dict[str, Any]], secret_store: Optional[SecretStore]) -> bool:
        """
        Move plaintext passwords into the secret store.

        Returns True when the file should be re-saved without passwords: at
        least one moved and none failed, so no password is lost.
        """
        migrated = False
        failed = False
        for entry in raw_accounts:
            password = entry.get('password')
            if not password:
                continue
            email = str(entry['email']).strip()
            if secret_store is None:
                logger.warning(f"[{email}] Plaintext password found in {self.config_path}")
                continue
            try:
                secret_store.set(email, str(password))
            except SecretStoreError as e:
                logger.error(f"[{email}] Failed to migrate password to secret store: {e}")
                failed = True
                continue
            logger.info(f"[{email}] Migrated password from config file to secret store")
            migrated = True
        return migrated and not failed

    def save(self, accounts: Sequence[AccountConfig]) -> None:
        """
        Persist the account list. Passwords are never written.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        self._write_yaml({'accounts': [account_to_dict(account) for account in accounts]})
        logger.info(f"Saved {len(accounts)} account(s) to {self.config_path}")

    def _write_yaml(self, data: Dict[str, Any]) -> None:
        tmp_path = self.config_path.with_name(self.config_path.name + '.tmp')
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, self.config_path)
        except OSError as e:
            raise ConfigurationError(f"Error writing configuration file {self.config_path}: {e}") from e
