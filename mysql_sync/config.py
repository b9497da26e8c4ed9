import os
from typing import Dict, List, Mapping, Optional

import yaml
from apscheduler.triggers.cron import CronTrigger
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError
from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_ENV_FILE = ".env"
DEFAULT_RETENTION_COUNT = 10
DEFAULT_INTERVAL_HOURS = 2
DEFAULT_TARGET_HOST = "127.0.0.1"
DEFAULT_TARGET_PORT = 3306
DEFAULT_PROXY_PORT = 3307
DEFAULT_PROXY_WAIT = 5.0

CONNECTOR_DIRECT = "direct"
CONNECTOR_CLOUD_SQL_PROXY = "cloud_sql_proxy"
CONNECTORS = (CONNECTOR_DIRECT, CONNECTOR_CLOUD_SQL_PROXY)


class SourceSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    connector: str = CONNECTOR_DIRECT
    host: str
    port: int = Field(ge=1, le=65535)
    user: str
    password: str = Field(repr=False)
    database: Optional[str] = None
    cloud_sql_instance: Optional[str] = None
    proxy_wait_seconds: float = DEFAULT_PROXY_WAIT
    credentials_file: Optional[str] = None

    @property
    def all_databases(self) -> bool:
        return not self.database


class TargetSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = DEFAULT_TARGET_HOST
    port: int = Field(DEFAULT_TARGET_PORT, ge=1, le=65535)
    root_password: str = Field(repr=False)
    database: Optional[str] = None
    container: Optional[str] = None


class SyncConfiguration(BaseModel):
    """Everything one process needs, read once at start-up and never mutated."""

    model_config = ConfigDict(frozen=True)

    source: SourceSettings
    target: TargetSettings
    backup_dir: str
    log_dir: str
    retention_count: int = Field(DEFAULT_RETENTION_COUNT, ge=1)
    schedule: str = f"0 */{DEFAULT_INTERVAL_HOURS} * * *"
    timezone: str = "UTC"
    history_db: str
    metrics_file: Optional[str] = None
    users_json: str = Field("[]", repr=False)
    compose_file: str = "docker-compose.yml"
    log_level: str = "INFO"

    @property
    def all_databases(self) -> bool:
        return self.source.all_databases

    @property
    def mode(self) -> str:
        return "all" if self.all_databases else "single"


def read_settings(
    config_path: Optional[str] = None,
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Merge the flat setting sources, lowest precedence first:
    YAML file, ``.env`` file, process environment.
    """
    settings: Dict[str, str] = {}

    # 1. Optional YAML file with a flat mapping of the same keys
    if config_path:
        try:
            with open(config_path, "r") as f:
                yaml_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing {config_path}: {e}")

        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping of settings")
        for key, value in yaml_config.items():
            if isinstance(value, (dict, list)):
                raise ConfigurationError(f"Setting '{key}' in {config_path} must be a scalar value")
            if value is not None:
                settings[str(key)] = str(value)

    # 2. The .env file; its values are never exported into os.environ
    if env_file is None and os.path.exists(DEFAULT_ENV_FILE):
        env_file = DEFAULT_ENV_FILE
    if env_file:
        if not os.path.exists(env_file):
            raise ConfigurationError(f".env file not found at {env_file}")
        logger.debug(f"Loading settings from {env_file}")
        settings.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})

    # 3. Process environment wins
    environ = os.environ if environ is None else environ
    settings.update(environ)
    return settings


class _SettingsReader:
    def __init__(self, values: Mapping[str, str]):
        self.values = values
        self.errors: List[str] = []

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.values.get(key)
        if value is None or not str(value).strip():
            return default
        return str(value).strip()

    def require(self, key: str, reason: str = "") -> Optional[str]:
        value = self.get(key)
        if value is None:
            self.errors.append(f"Required variable ${key} is not set{reason}")
        return value

    def integer(self, key: str, default: Optional[int], minimum: int = 1, maximum: Optional[int] = None,
                required: bool = False) -> Optional[int]:
        raw = self.require(key) if required else self.get(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            self.errors.append(f"${key} must be an integer, got '{raw}'")
            return default
        if value < minimum or (maximum is not None and value > maximum):
            bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
            self.errors.append(f"${key} must be {bounds}, got {value}")
            return default
        return value

    def number(self, key: str, default: float) -> float:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            self.errors.append(f"${key} must be a number, got '{raw}'")
            return default
        if value < 0:
            self.errors.append(f"${key} must not be negative, got {value}")
            return default
        return value


def _schedule_expression(reader: _SettingsReader, timezone: str) -> str:
    expression = reader.get("SYNC_CRON_OVERRIDE")
    if expression is None:
        hours = reader.integer("SYNC_INTERVAL_HOURS", DEFAULT_INTERVAL_HOURS, minimum=1, maximum=23)
        expression = f"0 */{hours} * * *"
    try:
        CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, KeyError) as e:
        reader.errors.append(f"Invalid schedule '{expression}' (timezone {timezone}): {e}")
    return expression


def build_configuration(values: Mapping[str, str]) -> SyncConfiguration:
    """Validate a flat settings mapping and build the immutable configuration."""
    reader = _SettingsReader(values)

    connector = (reader.get("SOURCE_CONNECTOR", CONNECTOR_DIRECT) or "").lower()
    if connector not in CONNECTORS:
        reader.errors.append(f"$SOURCE_CONNECTOR must be one of {', '.join(CONNECTORS)}, got '{connector}'")

    if connector == CONNECTOR_CLOUD_SQL_PROXY:
        cloud_sql_instance = reader.require("CLOUD_SQL_INSTANCE", " (required by the cloud_sql_proxy connector)")
        source_host = "127.0.0.1"
        source_port = reader.integer("CLOUD_SQL_PROXY_PORT", DEFAULT_PROXY_PORT, maximum=65535)
    else:
        cloud_sql_instance = None
        source_host = reader.require("SOURCE_HOST")
        source_port = reader.integer("SOURCE_PORT", None, maximum=65535, required=True)

    source_database = reader.get("SOURCE_DB")
    source_user = reader.require("SOURCE_USER")
    source_password = reader.require("SOURCE_PASSWORD")
    root_password = reader.require("MYSQL_ROOT_PASSWORD")
    if source_database:
        target_database = reader.require("MYSQL_DATABASE", " (required when $SOURCE_DB is set)")
    else:
        target_database = reader.get("MYSQL_DATABASE")
    backup_dir = reader.require("BACKUP_DIR")
    log_dir = reader.require("LOG_DIR")

    target_port = reader.integer("MYSQL_PORT", DEFAULT_TARGET_PORT, maximum=65535)
    retention_count = reader.integer("RETENTION_COUNT", DEFAULT_RETENTION_COUNT)
    proxy_wait = reader.number("CLOUD_SQL_PROXY_WAIT", DEFAULT_PROXY_WAIT)
    timezone = reader.get("SYNC_TIMEZONE") or reader.get("TZ") or "UTC"
    schedule = _schedule_expression(reader, timezone)

    if reader.errors:
        for error in reader.errors:
            logger.error(error)
        raise ConfigurationError("Invalid configuration: " + "; ".join(reader.errors))

    try:
        return SyncConfiguration(
            source=SourceSettings(
                connector=connector,
                host=source_host,
                port=source_port,
                user=source_user,
                password=source_password,
                database=source_database,
                cloud_sql_instance=cloud_sql_instance,
                proxy_wait_seconds=proxy_wait,
                credentials_file=reader.get("GOOGLE_APPLICATION_CREDENTIALS"),
            ),
            target=TargetSettings(
                host=reader.get("TARGET_HOST", DEFAULT_TARGET_HOST),
                port=target_port,
                root_password=root_password,
                database=target_database,
                container=reader.get("TARGET_CONTAINER"),
            ),
            backup_dir=backup_dir,
            log_dir=log_dir,
            retention_count=retention_count,
            schedule=schedule,
            timezone=timezone,
            history_db=reader.get("HISTORY_DB") or os.path.join(log_dir, "sync_history.db"),
            metrics_file=reader.get("METRICS_FILE"),
            users_json=reader.get("MYSQL_USERS_JSON", "[]"),
            compose_file=reader.get("COMPOSE_FILE", "docker-compose.yml"),
            log_level=reader.get("LOG_LEVEL", "INFO").upper(),
        )
    except ValidationError as e:
        details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ConfigurationError(f"Invalid configuration: {details}")


def load_config(
    config_path: Optional[str] = None,
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncConfiguration:
    return build_configuration(read_settings(config_path, env_file, environ))
