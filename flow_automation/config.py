import os
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def normalize_database_url(url):
    """Normalize the database URL so Postgres URLs use the psycopg2 driver"""
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+psycopg2://', 1)
    elif url.startswith('postgresql://') and '+psycopg2' not in url:
        return url.replace('postgresql://', 'postgresql+psycopg2://', 1)
    return url


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, '') else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, '') else default


class Config:
    # Database
    _db_url = os.getenv('DATABASE_URL', 'sqlite:///flow_automation.db')
    SQLALCHEMY_DATABASE_URI = normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Security
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

    # Flask
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')
    DEBUG = os.getenv('FLASK_ENV') == 'development'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Execution engine
    FLOW_MAX_CONCURRENCY = _env_int('FLOW_MAX_CONCURRENCY', 4)
    FLOW_DEFAULT_TIMEOUT_MS = _env_int('FLOW_DEFAULT_TIMEOUT_MS', 300000)
    FLOW_DEFAULT_RETRY_ATTEMPTS = _env_int('FLOW_DEFAULT_RETRY_ATTEMPTS', 3)
    FLOW_DEFAULT_RETRY_DELAY_MS = _env_int('FLOW_DEFAULT_RETRY_DELAY_MS', 1000)
    FLOW_MAX_RETRY_DELAY_MS = _env_int('FLOW_MAX_RETRY_DELAY_MS', 60000)
    FLOW_RETRY_JITTER = _env_float('FLOW_RETRY_JITTER', 0.1)

    # Triggers
    SCHEDULE_TICK_SECONDS = _env_int('SCHEDULE_TICK_SECONDS', 60)
    WEBHOOK_SIGNATURE_HEADER = os.getenv('WEBHOOK_SIGNATURE_HEADER', 'X-Webhook-Signature')


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    FLOW_DEFAULT_RETRY_DELAY_MS = 0


# Credential lookup: (source name, lookup callable). Order matters.
ConfigSource = Tuple[str, Callable[[str], Any]]


def mapping_source(name: str, values: Optional[Mapping[str, Any]]) -> ConfigSource:
    values = values or {}
    return name, lambda key: values.get(key)


def environment_source(prefix: str = '') -> ConfigSource:
    return 'environment', lambda key: os.getenv(f'{prefix}{key}'.upper())


def resolve_integration_config(key: str, sources: Iterable[ConfigSource]) -> Any:
    """
    Resolve an integration credential from an explicit, ordered list of sources.

    Each source is a ``(name, lookup)`` pair. The first source returning a
    non-empty value wins.

    Example:
        resolve_integration_config('messaging_api_key', [
            mapping_source('overrides', overrides),
            variable_source(store),
            environment_source(),
        ])

    Raises:
        ConfigurationError: if no source yields a value
    """
    from flow_automation.flow_engine.errors import ConfigurationError

    consulted = []
    for name, lookup in sources:
        consulted.append(name)
        value = lookup(key)
        if value not in (None, ''):
            return value

    raise ConfigurationError(key, consulted)


def config_value(config, key: str, default: Any = None) -> Any:
    """Read a setting from a Config class or a Flask config mapping"""
    if config is None:
        return default
    if isinstance(config, Mapping):
        return config.get(key, default)
    return getattr(config, key, default)
