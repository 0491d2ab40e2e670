#!/usr/bin/env python3
"""
Migration Configuration
Loads connection strings and media host credentials from the environment
(optionally seeded from a .env file) and validates them before any
connection is attempted.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from core.errors import ConfigurationError, sanitize_error

DEFAULT_SCHEMA_COMMAND = "alembic upgrade head"
DEFAULT_SKIP_TABLES = ("_prisma_migrations", "alembic_version")

# (setting, primary variable, fallback variable)
REQUIRED_VARIABLES: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ('source_database_url', 'DATABASE_URL_SOURCE', 'DATABASE_URL'),
    ('target_database_url', 'DATABASE_URL_TARGET', None),
    ('source_cloud_name', 'CLOUDINARY_SOURCE_CLOUD_NAME', 'CLOUDINARY_CLOUD_NAME'),
    ('source_api_key', 'CLOUDINARY_SOURCE_API_KEY', 'CLOUDINARY_API_KEY'),
    ('source_api_secret', 'CLOUDINARY_SOURCE_API_SECRET', 'CLOUDINARY_API_SECRET'),
    ('target_cloud_name', 'CLOUDINARY_TARGET_CLOUD_NAME', None),
    ('target_api_key', 'CLOUDINARY_TARGET_API_KEY', None),
    ('target_api_secret', 'CLOUDINARY_TARGET_API_SECRET', None),
)


@dataclass
class MigrationConfig:
    """Environment migration settings"""

    # Databases
    source_database_url: str = ""
    target_database_url: str = ""

    # Media hosts
    source_cloud_name: str = ""
    source_api_key: str = ""
    source_api_secret: str = ""
    target_cloud_name: str = ""
    target_api_key: str = ""
    target_api_secret: str = ""
    media_delivery_host: str = "res.cloudinary.com"
    media_api_base_url: str = "https://api.cloudinary.com/v1_1"
    media_http_timeout: float = 60.0

    # Runtime settings
    schema_command: Optional[str] = DEFAULT_SCHEMA_COMMAND
    skip_tables: Tuple[str, ...] = DEFAULT_SKIP_TABLES
    progress_every: int = 10
    log_level: str = "INFO"
    temp_dir: Optional[Path] = None

    missing: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'MigrationConfig':
        """Build a config from ``environ`` (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        config = cls()

        for attr, primary, fallback in REQUIRED_VARIABLES:
            value = (env.get(primary) or "").strip()
            if not value and fallback:
                value = (env.get(fallback) or "").strip()
            if value:
                setattr(config, attr, value)
            else:
                config.missing.append(primary)

        if 'MIGRATION_SCHEMA_COMMAND' in env:
            config.schema_command = env['MIGRATION_SCHEMA_COMMAND'].strip() or None
        if 'MIGRATION_SKIP_TABLES' in env:
            config.skip_tables = tuple(
                name.strip() for name in env['MIGRATION_SKIP_TABLES'].split(',') if name.strip())

        config.media_delivery_host = env.get('MEDIA_DELIVERY_HOST', config.media_delivery_host)
        config.media_api_base_url = env.get('MEDIA_API_BASE_URL', config.media_api_base_url).rstrip('/')
        config.log_level = env.get('MIGRATION_LOG_LEVEL', config.log_level).upper()
        if env.get('MIGRATION_TEMP_DIR'):
            config.temp_dir = Path(env['MIGRATION_TEMP_DIR'])

        try:
            config.progress_every = int(env.get('MIGRATION_PROGRESS_EVERY', config.progress_every))
            config.media_http_timeout = float(env.get('MEDIA_HTTP_TIMEOUT', config.media_http_timeout))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e
        if config.progress_every < 1:
            raise ConfigurationError("MIGRATION_PROGRESS_EVERY must be a positive integer")
        if not isinstance(logging.getLevelName(config.log_level), int):
            raise ConfigurationError(f"Unknown MIGRATION_LOG_LEVEL: {config.log_level}")

        return config

    def validate(self) -> 'MigrationConfig':
        """Raise ConfigurationError listing every missing required variable."""
        if self.missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(self.missing)}",
                missing=list(self.missing),
            )
        return self

    def get_safe_dict(self) -> Dict[str, object]:
        """Configuration as dict without sensitive values"""
        return {
            'source_database_url': sanitize_error(self.source_database_url),
            'target_database_url': sanitize_error(self.target_database_url),
            'source_cloud_name': self.source_cloud_name,
            'target_cloud_name': self.target_cloud_name,
            'source_api_key': _mask(self.source_api_key),
            'target_api_key': _mask(self.target_api_key),
            'source_api_secret': '***' if self.source_api_secret else '',
            'target_api_secret': '***' if self.target_api_secret else '',
            'media_delivery_host': self.media_delivery_host,
            'schema_command': self.schema_command,
            'skip_tables': list(self.skip_tables),
            'progress_every': self.progress_every,
            'log_level': self.log_level,
        }


def _mask(value: str) -> str:
    if len(value) <= 4:
        return '***' if value else ''
    return f"{value[:2]}***{value[-2:]}"


def load_env_file(env_file: Path, environ: Optional[Dict[str, str]] = None) -> int:
    """Load KEY=VALUE lines from ``env_file`` into the environment.

    Only sets keys not already present, so exported variables take precedence
    over the file. Returns the number of variables set.
    """
    env = os.environ if environ is None else environ
    if not env_file.exists():
        return 0

    loaded = 0
    with open(env_file, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            key = key.strip()
            if key.startswith('export '):
                key = key[len('export '):].strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            if key and key not in env:
                env[key] = value
                loaded += 1
    return loaded


def get_config(env_file: Optional[Path] = None) -> MigrationConfig:
    """Load .env (if present), read the environment and validate it."""
    load_env_file(env_file or Path.cwd() / '.env')
    return MigrationConfig.from_env().validate()
