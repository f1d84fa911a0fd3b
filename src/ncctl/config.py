"""Configuration loader for ncctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/ncctl/config.yml`` (or an override path).
3. A legacy ``.env``/``.conf`` key-value file as written for the original
   shell scripts (``DB_NAME=...``, ``RETAIN_DAYS=...``, ``R2_BUCKET=...``).
4. Environment variables prefixed with ``NCCTL_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NCCTL_RETENTION__KEEP_LAST=14
    export NCCTL_REMOTE__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally; credential-like leaves are kept verbatim. The resulting
configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ncctl configuration. Install with "
        "`pip install ncctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from dotenv import dotenv_values

ENV_PREFIX = "NCCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
ENV_FILE_ENV_VAR = f"{ENV_PREFIX}ENV_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, ENV_FILE_ENV_VAR}

# Leaves that must never be type-coerced (a password of ``0123`` stays a string).
RAW_STRING_LEAVES = {
    "password",
    "access_key_id",
    "secret_access_key",
    "bucket",
    "name",
    "user",
    "web_user",
    "prefix",
}

MASK = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NextcloudConfig:
    """Location of the Nextcloud installation and how to reach ``occ``."""

    root: Path = Path("/var/www/nextcloud")
    data_dir: Path = Path("/var/www/nextcloud/data")
    web_user: str = "www-data"
    php_bin: str = "php"
    cron_timer: str = "nextcloudcron.timer"

    @property
    def occ_path(self) -> Path:
        """Return the path of the ``occ`` script."""
        return self.root / "occ"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "data_dir": str(self.data_dir),
            "web_user": self.web_user,
            "php_bin": self.php_bin,
            "cron_timer": self.cron_timer,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection used for dumps and restores."""

    type: str = "mysql"
    host: str = "localhost"
    port: int = 3306
    name: str = "nextcloud"
    user: str = "nextcloud"
    password: str = ""
    table_prefix: str = "oc_"

    @property
    def is_postgres(self) -> bool:
        """Return ``True`` when the database is PostgreSQL."""
        return self.type in {"postgresql", "postgres"}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password masked)."""
        return {
            "type": self.type,
            "host": self.host,
            "port": self.port,
            "name": self.name,
            "user": self.user,
            "password": MASK if self.password else "",
            "table_prefix": self.table_prefix,
        }


@dataclass(frozen=True)
class BackupComponents:
    """Toggles for the parts of an installation captured by a backup."""

    config: bool = True
    data: bool = True
    apps: bool = True
    database: bool = True
    system: bool = True
    redis: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config": self.config,
            "data": self.data,
            "apps": self.apps,
            "database": self.database,
            "system": self.system,
            "redis": self.redis,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage, naming and compression defaults."""

    root: Path
    index: Path
    prefix: str = "nextcloud_backup"
    force_full: bool = False
    max_chain_length: int = 7
    archive: bool = False
    compression: str = "gzip"
    compression_level: int | None = 6
    components: BackupComponents = BackupComponents()
    excludes: tuple[str, ...] = ()
    system_files: tuple[Path, ...] = ()

    @property
    def archive_dir(self) -> Path:
        """Return the directory holding compressed archives."""
        return self.root / "archives"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "prefix": self.prefix,
            "force_full": self.force_full,
            "max_chain_length": self.max_chain_length,
            "archive": self.archive,
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
            "components": self.components.to_dict(),
            "excludes": list(self.excludes),
            "system_files": [str(path) for path in self.system_files],
        }


@dataclass(frozen=True)
class RetentionConfig:
    """Retention policy applied after each backup and by ``backup prune``."""

    strategy: str = "chain"
    keep_last: int = 30
    min_age_days: int = 7
    prune_orphans: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "strategy": self.strategy,
            "keep_last": self.keep_last,
            "min_age_days": self.min_age_days,
            "prune_orphans": self.prune_orphans,
        }


@dataclass(frozen=True)
class RemoteConfig:
    """S3-compatible object storage (Cloudflare R2 by default)."""

    enabled: bool = False
    bucket: str = ""
    endpoint: str | None = None
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = "auto"
    prefix: str = ""
    keep_local_archive: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets masked)."""
        return {
            "enabled": self.enabled,
            "bucket": self.bucket,
            "endpoint": self.endpoint,
            "access_key_id": MASK if self.access_key_id else "",
            "secret_access_key": MASK if self.secret_access_key else "",
            "region": self.region,
            "prefix": self.prefix,
            "keep_local_archive": self.keep_local_archive,
        }


@dataclass(frozen=True)
class NotificationConfig:
    """Where backup/update outcomes are reported."""

    method: str = "log"
    email_to: str | None = None
    email_from: str | None = None
    webhook_url: str | None = None
    mail_bin: str = "mail"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "method": self.method,
            "email_to": self.email_to,
            "email_from": self.email_from,
            "webhook_url": self.webhook_url,
            "mail_bin": self.mail_bin,
        }


@dataclass(frozen=True)
class MaintenanceConfig:
    """Maintenance-mode handling around mutating operations."""

    enabled: bool = True
    services: tuple[str, ...] = ("apache2", "php8.4-fpm")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "services": list(self.services)}


@dataclass(frozen=True)
class MonitoringConfig:
    """Thresholds and targets for ``ncctl status``."""

    status_file: Path
    services: tuple[str, ...] = ("apache2", "mysql", "redis-server", "php8.4-fpm", "cron")
    disk_warn_percent: int = 80
    disk_critical_percent: int = 90

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status_file": str(self.status_file),
            "services": list(self.services),
            "disk_warn_percent": self.disk_warn_percent,
            "disk_critical_percent": self.disk_critical_percent,
        }


@dataclass(frozen=True)
class StepsConfig:
    """Timeout and retry defaults for external command steps."""

    timeout: float = 3600.0
    retries: int = 0
    backoff_min: float = 1.0
    backoff_max: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "retries": self.retries,
            "backoff_min": self.backoff_min,
            "backoff_max": self.backoff_max,
        }


@dataclass(frozen=True)
class CleanupConfig:
    """Targets for ``ncctl cleanup``."""

    log_dirs: tuple[Path, ...] = (Path("/var/log/nextcloud"),)
    temp_globs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "log_dirs": [str(path) for path in self.log_dirs],
            "temp_globs": list(self.temp_globs),
        }


@dataclass(frozen=True)
class ToolsConfig:
    """Names or paths of the external binaries ncctl shells out to."""

    rsync: str = "rsync"
    tar: str = "tar"
    mysqldump: str = "mysqldump"
    mysql: str = "mysql"
    pg_dump: str = "pg_dump"
    psql: str = "psql"
    sudo: str = "sudo"
    systemctl: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "rsync": self.rsync,
            "tar": self.tar,
            "mysqldump": self.mysqldump,
            "mysql": self.mysql,
            "pg_dump": self.pg_dump,
            "psql": self.psql,
            "sudo": self.sudo,
            "systemctl": self.systemctl,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ncctl."""

    config_file: Path
    env_file: Path | None
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    log_level: str
    log_retention_days: int
    require_root: bool
    nextcloud: NextcloudConfig
    database: DatabaseConfig
    backups: BackupConfig
    retention: RetentionConfig
    remote: RemoteConfig
    notifications: NotificationConfig
    maintenance: MaintenanceConfig
    monitoring: MonitoringConfig
    steps: StepsConfig
    cleanup: CleanupConfig
    tools: ToolsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "env_file": str(self.env_file) if self.env_file else None,
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "log_level": self.log_level,
            "log_retention_days": self.log_retention_days,
            "require_root": self.require_root,
            "nextcloud": self.nextcloud.to_dict(),
            "database": self.database.to_dict(),
            "backups": self.backups.to_dict(),
            "retention": self.retention.to_dict(),
            "remote": self.remote.to_dict(),
            "notifications": self.notifications.to_dict(),
            "maintenance": self.maintenance.to_dict(),
            "monitoring": self.monitoring.to_dict(),
            "steps": self.steps.to_dict(),
            "cleanup": self.cleanup.to_dict(),
            "tools": self.tools.to_dict(),
        }


DEFAULT_DATA_EXCLUDES = [
    "*/cache/*",
    "*/appdata_*/preview/*",
    "*/files_*/cache/*",
    "*/updater*",
]

DEFAULT_SYSTEM_FILES = [
    "/etc/apache2/sites-available/000-default.conf",
    "/etc/apache2/sites-available/000-default-le-ssl.conf",
    "/etc/apache2/sites-available/nextcloud-ssl.conf",
    "/etc/php/8.4/fpm/conf.d/nextcloud.ini",
    "/etc/php/8.4/fpm/conf.d/20-redis-session.ini",
]

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ncctl/config.yml",
    "env_file": None,
    "logs_dir": "/var/log/ncctl",
    "runtime_dir": "/run/ncctl",
    "lock_timeout": 30.0,
    "log_level": "INFO",
    "log_retention_days": 30,
    "require_root": True,
    "nextcloud": {
        "root": "/var/www/nextcloud",
        "data_dir": None,  # derived from root when absent
        "web_user": "www-data",
        "php_bin": "php",
        "cron_timer": "nextcloudcron.timer",
    },
    "database": {
        "type": "mysql",
        "host": "localhost",
        "port": 3306,
        "name": "nextcloud",
        "user": "nextcloud",
        "password": "",
        "table_prefix": "oc_",
    },
    "backups": {
        "root": "/var/backups/nextcloud",
        "index": None,
        "prefix": "nextcloud_backup",
        "force_full": False,
        "max_chain_length": 7,
        "archive": False,
        "compression": {"algorithm": "gzip", "level": 6},
        "components": {
            "config": True,
            "data": True,
            "apps": True,
            "database": True,
            "system": True,
            "redis": False,
        },
        "excludes": list(DEFAULT_DATA_EXCLUDES),
        "system_files": list(DEFAULT_SYSTEM_FILES),
    },
    "retention": {
        "strategy": "chain",
        "keep_last": 30,
        "min_age_days": 7,
        "prune_orphans": True,
    },
    "remote": {
        "enabled": False,
        "bucket": "",
        "endpoint": None,
        "access_key_id": "",
        "secret_access_key": "",
        "region": "auto",
        "prefix": "",
        "keep_local_archive": False,
    },
    "notifications": {
        "method": "log",
        "email_to": None,
        "email_from": None,
        "webhook_url": None,
        "mail_bin": "mail",
    },
    "maintenance": {
        "enabled": True,
        "services": ["apache2", "php8.4-fpm"],
    },
    "monitoring": {
        "status_file": None,  # derived from logs_dir when absent
        "services": ["apache2", "mysql", "redis-server", "php8.4-fpm", "cron"],
        "disk_warn_percent": 80,
        "disk_critical_percent": 90,
    },
    "steps": {
        "timeout": 3600.0,
        "retries": 0,
        "backoff_min": 1.0,
        "backoff_max": 30.0,
    },
    "cleanup": {
        "log_dirs": ["/var/log/nextcloud"],
        "temp_globs": [
            "/var/www/nextcloud/updater-*",
            "/var/www/nextcloud/data/appdata_*/preview",
            "/tmp/nextcloud-*",
        ],
    },
    "tools": {
        "rsync": "rsync",
        "tar": "tar",
        "mysqldump": "mysqldump",
        "mysql": "mysql",
        "pg_dump": "pg_dump",
        "psql": "psql",
        "sudo": "sudo",
        "systemctl": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
ALLOWED_DATABASE_TYPES = {"mysql", "mariadb", "postgresql", "postgres"}
ALLOWED_RETENTION_STRATEGIES = {"chain", "legacy"}
ALLOWED_BACKUP_COMPRESSION = {"gzip", "none"}
ALLOWED_NOTIFICATION_METHODS = {"log", "email", "webhook"}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}

# Legacy shell-script keys -> (config path, coerce with YAML?)
LEGACY_ENV_KEYS: dict[str, tuple[tuple[str, ...], bool]] = {
    "DB_TYPE": (("database", "type"), False),
    "DB_HOST": (("database", "host"), False),
    "DB_PORT": (("database", "port"), True),
    "DB_NAME": (("database", "name"), False),
    "DB_USER": (("database", "user"), False),
    "DB_PASS": (("database", "password"), False),
    "DB_PASSWORD": (("database", "password"), False),
    "BACKUP_DIR": (("backups", "root"), False),
    "FORCE_FULL_BACKUP": (("backups", "force_full"), True),
    "COMPRESSION_LEVEL": (("backups", "compression", "level"), True),
    "BACKUP_DATA": (("backups", "components", "data"), True),
    "BACKUP_CONFIG": (("backups", "components", "config"), True),
    "BACKUP_APPS": (("backups", "components", "apps"), True),
    "BACKUP_DATABASE": (("backups", "components", "database"), True),
    "BACKUP_REDIS": (("backups", "components", "redis"), True),
    "RETAIN_DAYS": (("retention", "keep_last"), True),
    "BACKUP_RETENTION_DAYS": (("retention", "keep_last"), True),
    "R2_ACCESS_KEY_ID": (("remote", "access_key_id"), False),
    "R2_SECRET_ACCESS_KEY": (("remote", "secret_access_key"), False),
    "R2_BUCKET": (("remote", "bucket"), False),
    "R2_ENDPOINT": (("remote", "endpoint"), False),
    "MAINTENANCE_MODE": (("maintenance", "enabled"), True),
    "NEXTCLOUD_ROOT": (("nextcloud", "root"), False),
    "NEXTCLOUD_INSTALL_DIR": (("nextcloud", "root"), False),
    "NEXTCLOUD_DATA_DIR": (("nextcloud", "data_dir"), False),
    "WEB_SERVER_USER": (("nextcloud", "web_user"), False),
    "LOG_LEVEL": (("log_level",), False),
    "LOG_RETENTION_DAYS": (("log_retention_days",), True),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env_file: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_file_path = _determine_env_file(env_file, resolved_env, merged.get("env_file"))
    if env_file_path is not None:
        legacy_values = _load_env_file(env_file_path)
        if legacy_values:
            _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)
    merged["env_file"] = str(env_file_path) if env_file_path is not None else None

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _determine_env_file(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
    file_value: object,
) -> Path | None:
    if cli_override:
        return Path(cli_override).expanduser()
    if ENV_FILE_ENV_VAR in env and env[ENV_FILE_ENV_VAR].strip():
        return Path(env[ENV_FILE_ENV_VAR]).expanduser()
    if isinstance(file_value, str) and file_value.strip():
        return Path(file_value).expanduser()
    return None


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _load_env_file(path: Path) -> dict[str, object]:
    """Translate a legacy ``KEY=VALUE`` file into nested config overrides."""
    if not path.exists():
        raise ConfigError(f"Environment file not found: {path}")
    raw = dotenv_values(path)
    overrides: dict[str, object] = {}
    for key, value in raw.items():
        if value is None or key not in LEGACY_ENV_KEYS:
            continue
        target, coerce = LEGACY_ENV_KEYS[key]
        _assign_nested(overrides, list(target), _coerce_value(value) if coerce else value)

    if raw.get("R2_BUCKET"):
        _assign_nested(overrides, ["remote", "enabled"], True)

    email = raw.get("EMAIL_NOTIFY") or raw.get("EMAIL_TO")
    webhook = raw.get("SLACK_WEBHOOK_URL") or raw.get("WEBHOOK_URL")
    if email:
        _assign_nested(overrides, ["notifications", "method"], "email")
        _assign_nested(overrides, ["notifications", "email_to"], email)
    elif webhook:
        _assign_nested(overrides, ["notifications", "method"], "webhook")
    if webhook:
        _assign_nested(overrides, ["notifications", "webhook_url"], webhook)
    return overrides


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    log_level = str(raw.get("log_level", "INFO")).upper()
    if log_level not in ALLOWED_LOG_LEVELS:
        allowed_levels = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported log_level '{log_level}'. Allowed: {allowed_levels}.")

    database_map = _as_dict(raw.get("database"), "database")
    db_type = str(database_map.get("type", "mysql")).lower()
    if db_type not in ALLOWED_DATABASE_TYPES:
        allowed = ", ".join(sorted(ALLOWED_DATABASE_TYPES))
        raise ConfigError(f"Unsupported database type '{db_type}'. Allowed: {allowed}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "gzip"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")

    components_map = _as_dict(backups_map.get("components"), "backups.components")
    unknown_components = set(components_map.keys()) - set(BackupComponents().to_dict())
    if unknown_components:
        joined = ", ".join(sorted(unknown_components))
        raise ConfigError(f"Unknown backups components: {joined}.")

    retention_map = _as_dict(raw.get("retention"), "retention")
    strategy = str(retention_map.get("strategy", "chain"))
    if strategy not in ALLOWED_RETENTION_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_RETENTION_STRATEGIES))
        raise ConfigError(f"Unsupported retention strategy '{strategy}'. Allowed: {allowed}.")

    notifications_map = _as_dict(raw.get("notifications"), "notifications")
    method = str(notifications_map.get("method", "log"))
    if method not in ALLOWED_NOTIFICATION_METHODS:
        allowed = ", ".join(sorted(ALLOWED_NOTIFICATION_METHODS))
        raise ConfigError(f"Unsupported notification method '{method}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    env_file_value = raw.get("env_file")
    env_file = _to_path(env_file_value) if env_file_value else None
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    log_retention_days = _expect_non_negative_int(
        raw.get("log_retention_days"), "log_retention_days", default=30
    )

    nextcloud_map = _as_dict(raw.get("nextcloud"), "nextcloud")
    nextcloud_root = _to_path(nextcloud_map.get("root", "/var/www/nextcloud"))
    data_dir_value = nextcloud_map.get("data_dir")
    nextcloud = NextcloudConfig(
        root=nextcloud_root,
        data_dir=_to_path(data_dir_value) if data_dir_value else nextcloud_root / "data",
        web_user=str(nextcloud_map.get("web_user", "www-data")),
        php_bin=str(nextcloud_map.get("php_bin", "php")),
        cron_timer=str(nextcloud_map.get("cron_timer", "nextcloudcron.timer")),
    )

    database_map = _as_dict(raw.get("database"), "database")
    db_type = str(database_map.get("type", "mysql")).lower()
    default_port = 5432 if db_type in {"postgresql", "postgres"} else 3306
    database = DatabaseConfig(
        type=db_type,
        host=str(database_map.get("host", "localhost")),
        port=_expect_int(database_map.get("port"), "database.port", default=default_port),
        name=str(database_map.get("name", "nextcloud")),
        user=str(database_map.get("user", "nextcloud")),
        password=str(database_map.get("password") or ""),
        table_prefix=str(database_map.get("table_prefix", "oc_")),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_map.get("root", "/var/backups/nextcloud"))
    index_value = backups_map.get("index")
    backups_index = _to_path(index_value) if index_value else backups_root / "backups.json"
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    compression_level_raw = compression_map.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        compression_level = _expect_int(
            compression_level_raw, "backups.compression.level", default=6
        )
        if not 1 <= compression_level <= 9:
            raise ConfigError("backups.compression.level must be between 1 and 9.")
    components_map = _as_dict(backups_map.get("components"), "backups.components")
    components = BackupComponents(
        **{
            key: _expect_bool(components_map.get(key), f"backups.components.{key}", default)
            for key, default in BackupComponents().to_dict().items()
        }
    )
    max_chain_length = _expect_int(
        backups_map.get("max_chain_length"), "backups.max_chain_length", default=7
    )
    if max_chain_length < 1:
        raise ConfigError("backups.max_chain_length must be at least 1.")
    prefix = str(backups_map.get("prefix", "nextcloud_backup")).strip()
    if not prefix:
        raise ConfigError("backups.prefix must be a non-empty string.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        prefix=prefix,
        force_full=_expect_bool(backups_map.get("force_full"), "backups.force_full", False),
        max_chain_length=max_chain_length,
        archive=_expect_bool(backups_map.get("archive"), "backups.archive", False),
        compression=str(compression_map.get("algorithm", "gzip")),
        compression_level=compression_level,
        components=components,
        excludes=tuple(
            str(item) for item in _as_sequence(backups_map.get("excludes", []), "backups.excludes")
        ),
        system_files=tuple(
            _to_path(item)
            for item in _as_sequence(backups_map.get("system_files", []), "backups.system_files")
        ),
    )

    retention_map = _as_dict(raw.get("retention"), "retention")
    retention = RetentionConfig(
        strategy=str(retention_map.get("strategy", "chain")),
        keep_last=_expect_non_negative_int(
            retention_map.get("keep_last"), "retention.keep_last", default=30
        ),
        min_age_days=_expect_non_negative_int(
            retention_map.get("min_age_days"), "retention.min_age_days", default=7
        ),
        prune_orphans=_expect_bool(
            retention_map.get("prune_orphans"), "retention.prune_orphans", True
        ),
    )

    remote_map = _as_dict(raw.get("remote"), "remote")
    remote_enabled = _expect_bool(remote_map.get("enabled"), "remote.enabled", False)
    endpoint_value = remote_map.get("endpoint")
    remote = RemoteConfig(
        enabled=remote_enabled,
        bucket=str(remote_map.get("bucket") or ""),
        endpoint=str(endpoint_value) if endpoint_value else None,
        access_key_id=str(remote_map.get("access_key_id") or ""),
        secret_access_key=str(remote_map.get("secret_access_key") or ""),
        region=str(remote_map.get("region", "auto")),
        prefix=str(remote_map.get("prefix") or "").strip("/"),
        keep_local_archive=_expect_bool(
            remote_map.get("keep_local_archive"), "remote.keep_local_archive", False
        ),
    )
    if remote.enabled and not remote.bucket:
        raise ConfigError("remote.bucket is required when remote storage is enabled.")

    notifications_map = _as_dict(raw.get("notifications"), "notifications")
    notifications = NotificationConfig(
        method=str(notifications_map.get("method", "log")),
        email_to=_optional_str(notifications_map.get("email_to")),
        email_from=_optional_str(notifications_map.get("email_from")),
        webhook_url=_optional_str(notifications_map.get("webhook_url")),
        mail_bin=str(notifications_map.get("mail_bin", "mail")),
    )
    if notifications.method == "email" and not notifications.email_to:
        raise ConfigError("notifications.email_to is required for the email method.")
    if notifications.method == "webhook" and not notifications.webhook_url:
        raise ConfigError("notifications.webhook_url is required for the webhook method.")

    maintenance_map = _as_dict(raw.get("maintenance"), "maintenance")
    maintenance = MaintenanceConfig(
        enabled=_expect_bool(maintenance_map.get("enabled"), "maintenance.enabled", True),
        services=tuple(
            str(item)
            for item in _as_sequence(maintenance_map.get("services", []), "maintenance.services")
        ),
    )

    monitoring_map = _as_dict(raw.get("monitoring"), "monitoring")
    status_file_value = monitoring_map.get("status_file")
    warn_percent = _expect_non_negative_int(
        monitoring_map.get("disk_warn_percent"), "monitoring.disk_warn_percent", default=80
    )
    critical_percent = _expect_non_negative_int(
        monitoring_map.get("disk_critical_percent"),
        "monitoring.disk_critical_percent",
        default=90,
    )
    if warn_percent > critical_percent:
        raise ConfigError(
            "monitoring.disk_warn_percent must not exceed monitoring.disk_critical_percent."
        )
    monitoring = MonitoringConfig(
        status_file=(
            _to_path(status_file_value) if status_file_value else logs_dir / "status.json"
        ),
        services=tuple(
            str(item)
            for item in _as_sequence(monitoring_map.get("services", []), "monitoring.services")
        ),
        disk_warn_percent=warn_percent,
        disk_critical_percent=critical_percent,
    )

    steps_map = _as_dict(raw.get("steps"), "steps")
    steps = StepsConfig(
        timeout=_expect_positive_float(steps_map.get("timeout"), "steps.timeout", default=3600.0),
        retries=_expect_non_negative_int(steps_map.get("retries"), "steps.retries", default=0),
        backoff_min=_expect_positive_float(
            steps_map.get("backoff_min"), "steps.backoff_min", default=1.0
        ),
        backoff_max=_expect_positive_float(
            steps_map.get("backoff_max"), "steps.backoff_max", default=30.0
        ),
    )

    cleanup_map = _as_dict(raw.get("cleanup"), "cleanup")
    cleanup = CleanupConfig(
        log_dirs=tuple(
            _to_path(item) for item in _as_sequence(cleanup_map.get("log_dirs", []), "cleanup.log_dirs")
        ),
        temp_globs=tuple(
            str(item)
            for item in _as_sequence(cleanup_map.get("temp_globs", []), "cleanup.temp_globs")
        ),
    )

    tools_map = _as_dict(raw.get("tools"), "tools")
    tools = ToolsConfig(
        **{key: str(tools_map.get(key, default)) for key, default in ToolsConfig().to_dict().items()}
    )

    return AppConfig(
        config_file=config_file,
        env_file=env_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        log_level=str(raw.get("log_level", "INFO")).upper(),
        log_retention_days=log_retention_days,
        require_root=_expect_bool(raw.get("require_root"), "require_root", True),
        nextcloud=nextcloud,
        database=database,
        backups=backups,
        retention=retention,
        remote=remote,
        notifications=notifications,
        maintenance=maintenance,
        monitoring=monitoring,
        steps=steps,
        cleanup=cleanup,
        tools=tools,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[-1] in RAW_STRING_LEAVES:
            _assign_nested(overrides, path_segments, value)
        else:
            _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)):
        # Comma-separated strings come from environment overrides.
        text = value.decode() if isinstance(value, bytes) else value
        return [item.strip() for item in text.split(",") if item.strip()]
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0", ""}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_non_negative_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number < 0:
        raise ConfigError(f"{label} must be zero or a positive integer.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupComponents",
    "BackupConfig",
    "CleanupConfig",
    "ConfigError",
    "DatabaseConfig",
    "MaintenanceConfig",
    "MonitoringConfig",
    "NextcloudConfig",
    "NotificationConfig",
    "RemoteConfig",
    "RetentionConfig",
    "StepsConfig",
    "ToolsConfig",
    "load_config",
]
