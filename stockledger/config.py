from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

_DEFAULT_ENV = "development"
_ENV_KEY = "FLASK_ENV"
_VALID_ENVS = {"development", "testing", "staging", "production"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EnvironmentInfo:
    name: str
    source: str
    raw_value: str


class EnvReader:
    def __init__(self, data: Mapping[str, str] | None = None):
        self._data = dict(data if data is not None else os.environ)
        self.warnings: list[str] = []

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def _value(self, key: str) -> str | None:
        value = self._data.get(key)
        if value is None:
            return None
        stripped = value.strip()
        return stripped if stripped else None

    def str(self, key: str, default: str | None = None) -> str | None:
        value = self._value(key)
        return value if value is not None else default

    def int(self, key: str, default: int = 0) -> int:
        value = self._value(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            self.warn(f"{key} expected integer but received {value!r}; falling back to {default}.")
            return default

    def float(self, key: str, default: float = 0.0) -> float:
        value = self._value(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            self.warn(f"{key} expected float but received {value!r}; falling back to {default}.")
            return default

    def decimal(self, key: str, default: str = "0") -> Decimal:
        value = self._value(key)
        if value is None:
            return Decimal(default)
        try:
            return Decimal(value)
        except ArithmeticError:
            self.warn(f"{key} expected decimal but received {value!r}; falling back to {default}.")
            return Decimal(default)

    def bool(self, key: str, default: bool = False) -> bool:
        value = self._value(key)
        if value is None:
            return default
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        self.warn(f"{key} expected boolean but received {value!r}; falling back to {default}.")
        return default

    def csv(self, key: str, default: str = "") -> tuple[str, ...]:
        value = self.str(key, default) or ""
        return tuple(part.strip().lower() for part in value.split(",") if part.strip())

    def raw(self, key: str) -> str | None:
        return self._data.get(key)


def _normalized_env(value: str | None, *, default: str = _DEFAULT_ENV) -> str:
    if not value:
        return default
    return value.strip().lower() or default


def _normalize_db_url(url: str | None) -> str | None:
    if not url:
        return None
    return 'postgresql://' + url[len('postgres://'):] if url.startswith('postgres://') else url


def _resolve_ratelimit_uri(reader: EnvReader) -> str:
    candidate = reader.str('RATELIMIT_STORAGE_URI')
    if candidate:
        return candidate
    redis_url = reader.str('REDIS_URL')
    if redis_url:
        return redis_url
    return 'memory://'


def _resolve_environment(reader: EnvReader) -> EnvironmentInfo:
    raw_value = reader.str(_ENV_KEY, _DEFAULT_ENV) or _DEFAULT_ENV
    normalized = _normalized_env(raw_value)
    if normalized not in _VALID_ENVS:
        raise RuntimeError(
            f"Invalid {_ENV_KEY}={raw_value!r}. Expected one of {sorted(_VALID_ENVS)}."
        )
    return EnvironmentInfo(name=normalized, source=_ENV_KEY, raw_value=raw_value)


env = EnvReader()
ENV_INFO = _resolve_environment(env)


class BaseConfig:
    FLASK_ENV = ENV_INFO.name
    SECRET_KEY = env.str('FLASK_SECRET_KEY', 'devkey-please-change-in-production')

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_CONTENT_LENGTH = 4 * 1024 * 1024

    RATELIMIT_STORAGE_URI = _resolve_ratelimit_uri(env)
    RATELIMIT_ENABLED = env.bool('RATELIMIT_ENABLED', True)
    RATELIMIT_DEFAULT = env.str('RATELIMIT_DEFAULT', '5000 per hour;1000 per minute')

    LOG_LEVEL = env.str('LOG_LEVEL', 'WARNING') or 'WARNING'
    LOG_REDACT_PII = env.bool('LOG_REDACT_PII', True)

    # Ledger concurrency
    LEDGER_MAX_ATTEMPTS = env.int('LEDGER_MAX_ATTEMPTS', 5)
    LEDGER_RETRY_BACKOFF_SECONDS = env.float('LEDGER_RETRY_BACKOFF_SECONDS', 0.02)
    LEDGER_RETRY_BACKOFF_CAP_SECONDS = env.float('LEDGER_RETRY_BACKOFF_CAP_SECONDS', 0.5)

    # Counting and reconciliation
    VARIANCE_THRESHOLD_PERCENT = env.float('VARIANCE_THRESHOLD_PERCENT', 5.0)
    RECOUNT_TOLERANCE_PERCENT = env.float('RECOUNT_TOLERANCE_PERCENT', 5.0)
    APPROVAL_MANAGER_ROLES = env.csv('APPROVAL_MANAGER_ROLES', 'manager,admin')
    APPROVAL_LARGE_VARIANCE_COST = env.decimal('APPROVAL_LARGE_VARIANCE_COST', '500.00')
    APPROVAL_LARGE_VARIANCE_UNITS = env.int('APPROVAL_LARGE_VARIANCE_UNITS', 0)
    APPROVAL_SECOND_APPROVER_ROLES = env.csv('APPROVAL_SECOND_APPROVER_ROLES', 'manager,admin')
    VALUATION_METHOD = env.str('VALUATION_METHOD', 'current_cost') or 'current_cost'

    # Point of sale
    STORE_TIMEZONE = env.str('STORE_TIMEZONE', 'UTC') or 'UTC'
    PAYMENT_TOLERANCE = env.decimal('PAYMENT_TOLERANCE', '0.01')
    SNAPSHOT_ON_TRANSACTION = env.bool('SNAPSHOT_ON_TRANSACTION', False)

    # Terminal sync
    SYNC_MAX_BATCH = env.int('SYNC_MAX_BATCH', 500)
    SYNC_RATE_LIMIT = env.str('SYNC_RATE_LIMIT', '120 per minute') or '120 per minute'

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': env.int('SQLALCHEMY_POOL_SIZE', 20),
        'max_overflow': env.int('SQLALCHEMY_MAX_OVERFLOW', 10),
        'pool_pre_ping': True,
        'pool_recycle': env.int('SQLALCHEMY_POOL_RECYCLE', 1800),
        'pool_timeout': env.int('SQLALCHEMY_POOL_TIMEOUT', 30),
    }


class DevelopmentConfig(BaseConfig):
    ENV = 'development'
    DEBUG = True

    _db_url = _normalize_db_url(env.str('DATABASE_URL'))
    if _db_url:
        SQLALCHEMY_DATABASE_URI = _db_url
    else:
        instance_path = os.path.join(os.path.abspath(os.path.dirname(__file__)), '..', 'instance')
        os.makedirs(instance_path, exist_ok=True)
        SQLALCHEMY_DATABASE_URI = 'sqlite:///' + os.path.join(instance_path, 'stockledger.db')

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 3600,
    }
    LOG_LEVEL = env.str('LOG_LEVEL', 'DEBUG') or 'DEBUG'


class TestingConfig(BaseConfig):
    ENV = 'testing'
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
    }
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
    LEDGER_RETRY_BACKOFF_SECONDS = 0.0


class StagingConfig(BaseConfig):
    ENV = 'staging'
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = _normalize_db_url(env.str('DATABASE_URL'))
    LOG_LEVEL = env.str('LOG_LEVEL', 'INFO') or 'INFO'


class ProductionConfig(BaseConfig):
    ENV = 'production'
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = _normalize_db_url(env.str('DATABASE_URL'))
    LOG_LEVEL = env.str('LOG_LEVEL', 'INFO') or 'INFO'


config_map = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'staging': StagingConfig,
    'production': ProductionConfig,
}


def get_active_config_name() -> str:
    return ENV_INFO.name


def get_config():
    return config_map[get_active_config_name()]


Config = config_map[ENV_INFO.name]
ENV_DIAGNOSTICS = {
    'active': ENV_INFO.name,
    'source': ENV_INFO.source,
    'variables': {ENV_INFO.source: ENV_INFO.raw_value},
    'warnings': tuple(env.warnings),
}
