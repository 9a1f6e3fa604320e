"""
Configuration for nightbackup.

Defaults live on the Config class (overridable through environment
variables). The settings file `<config_root>/backup.yml` is layered on top,
then command line overrides. The result is an immutable Settings value that
is handed to every component explicitly.
"""

import os
import socket
import logging
import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from nightbackup.utils.crypto import InvalidToken, SecretCipher


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


class Config:
    """Base configuration"""

    # Locations
    CONFIG_ROOT = os.environ.get('NIGHTBACKUP_CONFIG_ROOT') or '/etc/nightbackup'
    SETTINGS_FILENAME = 'backup.yml'
    BACKUP_ROOT = os.environ.get('NIGHTBACKUP_BACKUP_ROOT') or '/var/backups/nightly'
    LOG_FILE = os.environ.get('NIGHTBACKUP_LOG_FILE')

    # Remote store
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_DEFAULT_REGION') or 'us-east-1'

    # Retention
    RECENT_DAYS = 14
    WEEKLY_DAYS = 62
    MIN_RECENT = 14
    MONTHLY_ANCHOR_DAYS = (8, 14)  # second Monday of the month
    REMOTE_KEEP_COUNT = 3

    # Pipeline
    ARTIFACT_EXTENSION = '.tgz.enc'
    COMPRESS_COMMAND = ('gzip', '-c')
    ENCRYPT_COMMAND = (
        'openssl', 'enc', '-aes-256-cbc', '-salt', '-pbkdf2',
        '-pass', 'file:{key_file}'
    )


def default_host(domain: Optional[str] = None) -> str:
    """
    Host identity used in bucket names.

    With a domain, the short host name is qualified with it; otherwise the
    resolver's FQDN is used.
    """
    if domain:
        short_name = socket.gethostname().split('.')[0]
        return f"{short_name}.{domain.strip('.')}".lower()
    return socket.getfqdn().lower()


@dataclass(frozen=True)
class Settings:
    """Process-wide, read-only settings for one invocation."""

    host: str = ''
    domain: Optional[str] = None
    config_root: str = Config.CONFIG_ROOT
    backup_root: str = Config.BACKUP_ROOT
    log_file: Optional[str] = Config.LOG_FILE
    encryption_key_file: Optional[str] = None

    aws_access_key_id: Optional[str] = Config.AWS_ACCESS_KEY_ID
    aws_secret_access_key: Optional[str] = Config.AWS_SECRET_ACCESS_KEY
    aws_secret_access_key_encrypted: Optional[str] = None
    secrets_salt: Optional[str] = None
    aws_region: str = Config.AWS_REGION
    s3_endpoint_url: Optional[str] = None

    verbose: bool = False
    force: bool = False
    skip_remote: bool = False
    skip_cleanup: bool = False
    dry_run: bool = False
    mirror_unless_exists: bool = True
    continue_on_error: bool = False

    plugins: Tuple[str, ...] = ()
    items: Tuple[Any, ...] = ()

    recent_days: int = Config.RECENT_DAYS
    weekly_days: int = Config.WEEKLY_DAYS
    min_recent: int = Config.MIN_RECENT
    monthly_anchor_days: Tuple[int, int] = Config.MONTHLY_ANCHOR_DAYS
    remote_keep_count: int = Config.REMOTE_KEEP_COUNT

    artifact_extension: str = Config.ARTIFACT_EXTENSION
    compress_command: Tuple[str, ...] = Config.COMPRESS_COMMAND
    encrypt_command: Tuple[str, ...] = Config.ENCRYPT_COMMAND

    def __post_init__(self):
        if not self.host:
            object.__setattr__(self, 'host', default_host(self.domain))

        if self.remote_keep_count < 1:
            raise ConfigurationError(
                f"remote_keep_count must be at least 1 (got {self.remote_keep_count})"
            )

        if len(self.monthly_anchor_days) != 2:
            raise ConfigurationError(
                f"monthly_anchor_days must be a [first, last] pair, got {self.monthly_anchor_days}"
            )

        low, high = self.monthly_anchor_days
        if not 1 <= low <= high <= 31:
            raise ConfigurationError(
                f"monthly_anchor_days must be a day-of-month range, got {self.monthly_anchor_days}"
            )

    def with_overrides(self, **changes) -> 'Settings':
        """
        Return a copy with the given fields replaced.

        None values are ignored so unset command line options fall through.
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    @property
    def remote_configured(self) -> bool:
        """True if credentials for the remote store are available."""
        return bool(self.aws_access_key_id) and bool(
            self.aws_secret_access_key or self.aws_secret_access_key_encrypted
        )

    def require_encryption_key(self) -> str:
        """
        Get the encryption key file path.

        Returns:
            Path of the key file

        Raises:
            ConfigurationError: If no key file is configured or it is missing
        """
        if not self.encryption_key_file:
            raise ConfigurationError("encryption_key_file is not configured")

        key_path = Path(self.encryption_key_file).expanduser()
        if not key_path.is_file():
            raise ConfigurationError(f"Encryption key file not found: {key_path}")

        return str(key_path)

    def resolve_aws_secret(self) -> str:
        """
        Get the AWS secret access key, decrypting it if stored encrypted.

        Raises:
            ConfigurationError: If the secret is missing or cannot be decrypted
        """
        if self.aws_secret_access_key:
            return self.aws_secret_access_key

        if not self.aws_secret_access_key_encrypted:
            raise ConfigurationError("aws_secret_access_key is not configured")

        if not self.secrets_salt:
            raise ConfigurationError(
                "secrets_salt is required to decrypt aws_secret_access_key_encrypted"
            )

        passphrase = read_passphrase(self.require_encryption_key())

        try:
            cipher = SecretCipher.from_encoded_salt(passphrase, self.secrets_salt)
        except ValueError:
            raise ConfigurationError("secrets_salt is not valid base64")

        try:
            return cipher.decrypt(self.aws_secret_access_key_encrypted)
        except InvalidToken:
            raise ConfigurationError(
                "Failed to decrypt aws_secret_access_key_encrypted (wrong key or salt)"
            )


def read_passphrase(key_file: str) -> str:
    """Read the passphrase from an encryption key file."""
    try:
        with open(key_file, 'r', encoding='utf-8') as f:
            passphrase = f.read().strip()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Cannot read encryption key file {key_file}: {e}")

    if not passphrase:
        raise ConfigurationError(f"Encryption key file is empty: {key_file}")

    return passphrase


_FIELD_NAMES = {f.name for f in dataclasses.fields(Settings)}

# Fields stored as tuples so the settings stay read-only
_TUPLE_FIELDS = {
    'plugins', 'items', 'monthly_anchor_days', 'compress_command', 'encrypt_command'
}


def _normalize(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and coerce values read from the settings file."""
    values = {}

    for key, value in raw.items():
        if key not in _FIELD_NAMES:
            logger.warning(f"Ignoring unknown setting: {key}")
            continue

        # An empty key (`items:`) means "use the default"
        if value is None:
            continue

        if key in _TUPLE_FIELDS:
            if isinstance(value, str):
                value = value.split() if key.endswith('_command') else [value]
            if not isinstance(value, (list, tuple)):
                raise ConfigurationError(f"Setting '{key}' must be a list")
            value = tuple(value)

        values[key] = value

    return values


def load_settings(config_root: Optional[str] = None, **overrides) -> Settings:
    """
    Load settings from `<config_root>/backup.yml`.

    A missing file is not an error: defaults are used.

    Args:
        config_root: Directory holding backup.yml (default: Config.CONFIG_ROOT)
        **overrides: Field values taking precedence over the file (None is ignored)

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If the file cannot be parsed or holds invalid values
    """
    config_root = config_root or Config.CONFIG_ROOT
    settings_path = Path(config_root) / Config.SETTINGS_FILENAME

    raw = {}
    if settings_path.exists():
        try:
            with open(settings_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {settings_path}: {e}")

        if not isinstance(raw, dict):
            raise ConfigurationError(f"{settings_path} must contain a mapping of settings")

        logger.debug(f"Loaded settings from {settings_path}")
    else:
        logger.debug(f"No settings file at {settings_path}, using defaults")

    values = _normalize(raw)
    values['config_root'] = str(config_root)

    try:
        settings = Settings(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid settings: {e}")

    return settings.with_overrides(**overrides)
