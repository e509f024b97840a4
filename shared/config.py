"""
Configuration for storage access and accounting limits.

Loaded from ~/.config/stemvault/config.json, then overridden by
STEMVAULT_* environment variables (a local .env file is honoured).
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from shared.constants import (
    CONFIG_FILENAME,
    DEFAULT_BUCKET,
    DEFAULT_CONFIG_DIR,
    DEFAULT_DATA_DIR,
    DEFAULT_DB_FILENAME,
    DEFAULT_PARALLEL_UPLOADS,
    DEFAULT_QUOTA_BYTES,
    DEFAULT_SIGNED_URL_TTL,
    DURATION_PROBE_TIMEOUT,
    ENV_PREFIX,
    HEARTBEAT_INTERVAL_SEC,
    MAX_PARALLEL_UPLOADS,
    MAX_UPLOAD_BYTES,
    PRESENCE_TTL_SEC,
)
from shared.crypto import CredentialManager
from shared.errors import ValidationError
from shared.models import StorageProvider

logger = logging.getLogger(__name__)


@dataclass
class VaultConfig:
    """
    Storage credentials and limits for one deployment.

    Credentials are encrypted on disk and decrypted in memory.
    """
    provider: StorageProvider = StorageProvider.LOCAL
    endpoint: str = DEFAULT_DATA_DIR + "/objects"
    bucket: str = DEFAULT_BUCKET
    access_key_id: str = ""
    secret_access_key: str = ""
    region: Optional[str] = None
    db_path: str = DEFAULT_DATA_DIR + "/" + DEFAULT_DB_FILENAME
    signing_secret: str = ""
    default_quota_bytes: int = DEFAULT_QUOTA_BYTES
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    signed_url_ttl: int = DEFAULT_SIGNED_URL_TTL
    duration_timeout: float = DURATION_PROBE_TIMEOUT
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SEC
    presence_ttl: float = PRESENCE_TTL_SEC
    parallel_uploads: int = DEFAULT_PARALLEL_UPLOADS
    is_encrypted: bool = False

    def __post_init__(self):
        if isinstance(self.provider, str):
            self.provider = StorageProvider(self.provider)
        self.validate()

    def validate(self) -> None:
        """Reject limits that would make the accounting meaningless."""
        if self.default_quota_bytes <= 0:
            raise ValidationError("default_quota_bytes must be positive")
        if self.max_upload_bytes <= 0:
            raise ValidationError("max_upload_bytes must be positive")
        if self.signed_url_ttl <= 0:
            raise ValidationError("signed_url_ttl must be positive")
        if self.duration_timeout <= 0:
            raise ValidationError("duration_timeout must be positive")
        if self.heartbeat_interval <= 0:
            raise ValidationError("heartbeat_interval must be positive")
        if not 1 <= self.parallel_uploads <= MAX_PARALLEL_UPLOADS:
            raise ValidationError(
                f"parallel_uploads must be between 1 and {MAX_PARALLEL_UPLOADS}"
            )

    def credentials(self) -> Dict[str, Any]:
        """Credential mapping understood by S3StorageProvider.authenticate()."""
        return {
            'access_key_id': self.access_key_id,
            'secret_access_key': self.secret_access_key,
            'region': self.region,
            'endpoint': self.endpoint,
            'bucket': self.bucket,
            'base_path': self.endpoint if self.provider == StorageProvider.LOCAL else None,
            'signing_secret': self.signing_secret,
        }

    def to_dict(self, encrypt: bool = True) -> Dict[str, Any]:
        """Convert config to dictionary, optionally encrypting credentials."""
        data = asdict(self)
        data['provider'] = self.provider.value

        if encrypt and not self.is_encrypted:
            for key in ('access_key_id', 'secret_access_key', 'signing_secret'):
                if data[key]:
                    data[key] = CredentialManager.encrypt(data[key])
            data['is_encrypted'] = True

        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VaultConfig':
        """Create VaultConfig from dictionary, decrypting if necessary."""
        field_names = {f.name for f in dataclasses.fields(cls)}
        filtered = {k: v for k, v in data.items() if k in field_names}

        if filtered.get('is_encrypted', False):
            decrypted = {}
            for key in ('access_key_id', 'secret_access_key', 'signing_secret'):
                value = filtered.get(key)
                if value:
                    decrypted[key] = CredentialManager.decrypt(value)
            # Wrong machine: keep the encrypted strings, auth will fail later
            if all(v is not None for v in decrypted.values()):
                filtered.update(decrypted)
                filtered['is_encrypted'] = False

        return cls(**filtered)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> 'VaultConfig':
        return cls.from_dict(json.loads(json_str))

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the encrypted config to disk."""
        path = path or default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding='utf-8')
        return path


def default_config_path() -> Path:
    return Path(DEFAULT_CONFIG_DIR).expanduser() / CONFIG_FILENAME


_INT_FIELDS = {'default_quota_bytes', 'max_upload_bytes', 'signed_url_ttl', 'parallel_uploads'}
_FLOAT_FIELDS = {'duration_timeout', 'heartbeat_interval', 'presence_ttl'}


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for f in dataclasses.fields(VaultConfig):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None or f.name == 'is_encrypted':
            continue
        try:
            if f.name in _INT_FIELDS:
                overrides[f.name] = int(raw)
            elif f.name in _FLOAT_FIELDS:
                overrides[f.name] = float(raw)
            else:
                overrides[f.name] = raw
        except ValueError:
            raise ValidationError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")
    return overrides


def load_config(path: Optional[Path] = None,
                environ: Optional[Dict[str, str]] = None) -> VaultConfig:
    """
    Load configuration from disk and environment.

    Args:
        path: Config file, defaults to ~/.config/stemvault/config.json
        environ: Environment mapping, defaults to os.environ after .env loading

    Returns:
        VaultConfig with environment overrides applied
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    path = path or default_config_path()
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Corrupt config file {path}: {e}")
    else:
        logger.debug(f"No config at {path}, using defaults")

    config = VaultConfig.from_dict(data)
    overrides = _env_overrides(environ)
    if overrides:
        merged = config.to_dict(encrypt=False)
        merged.update(overrides)
        config = VaultConfig.from_dict(merged)
    return config
