"""
Configuration management for the points ledger.
"""
import os
import json
from dotenv import load_dotenv

load_dotenv()


# Points-per-unit multipliers by purchase category
DEFAULT_CATEGORY_RATES = {
    'electronics': '1.0',
    'groceries': '2.0',
    'clothing': '1.5',
}

ROUNDING_MODES = ('floor', 'half_even')


def _load_category_rates() -> dict:
    """Read POINTS_CATEGORY_RATES (a JSON object) or fall back to the defaults."""
    raw = os.getenv('POINTS_CATEGORY_RATES')
    if not raw:
        return dict(DEFAULT_CATEGORY_RATES)
    try:
        rates = json.loads(raw)
    except ValueError as e:
        raise RuntimeError(f"POINTS_CATEGORY_RATES is not valid JSON: {e}")
    if not isinstance(rates, dict) or not rates:
        raise RuntimeError("POINTS_CATEGORY_RATES must be a non-empty JSON object")
    return {str(k): str(v) for k, v in rates.items()}


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Ledger defaults
    POINTS_CATEGORY_RATES = _load_category_rates()
    POINTS_EXPIRATION_DAYS = int(os.getenv('POINTS_EXPIRATION_DAYS', '365'))
    POINTS_ROUNDING = os.getenv('POINTS_ROUNDING', 'floor')

    # Max seconds to wait for a user's ledger lock before reporting Busy
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.getenv('LEDGER_LOCK_TIMEOUT_SECONDS', '5'))

    # Expiration job cadence
    EXPIRE_INTERVAL_SECONDS = int(os.getenv('EXPIRE_INTERVAL_SECONDS', '60'))
    EXPIRE_BATCH_SIZE = int(os.getenv('EXPIRE_BATCH_SIZE', '500'))


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///pointsledger_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    POINTS_CATEGORY_RATES = dict(DEFAULT_CATEGORY_RATES)
    POINTS_EXPIRATION_DAYS = 365
    POINTS_ROUNDING = 'floor'
    LEDGER_LOCK_TIMEOUT_SECONDS = 2.0


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config: dict) -> None:
    """
    Validate ledger settings before app startup.

    Args:
        config: The loaded Flask config mapping

    Raises:
        RuntimeError: If a ledger setting is unusable
    """
    from decimal import Decimal, InvalidOperation

    rounding = config.get('POINTS_ROUNDING')
    if rounding not in ROUNDING_MODES:
        raise RuntimeError(
            f"POINTS_ROUNDING must be one of {', '.join(ROUNDING_MODES)}, got '{rounding}'"
        )

    for category, rate in config.get('POINTS_CATEGORY_RATES', {}).items():
        try:
            value = Decimal(str(rate))
        except InvalidOperation:
            raise RuntimeError(f"Rate for category '{category}' is not a number: {rate}")
        if value <= 0:
            raise RuntimeError(f"Rate for category '{category}' must be positive, got {rate}")

    if config.get('POINTS_EXPIRATION_DAYS', 0) <= 0:
        raise RuntimeError("POINTS_EXPIRATION_DAYS must be positive")

    if config.get('LEDGER_LOCK_TIMEOUT_SECONDS', 0) <= 0:
        raise RuntimeError("LEDGER_LOCK_TIMEOUT_SECONDS must be positive")
