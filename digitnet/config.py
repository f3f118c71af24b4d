"""
config.py
~~~~~~~~~

Environment-driven settings and logging setup.

Every setting can be overridden with an environment variable; the values
are read once and cached for the life of the process.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {value!r}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid number for {name}: {value!r}")
        return default


@dataclass
class Settings:
    """Runtime configuration for the trainer, the CLI and the server."""

    log_level: str = 'INFO'
    is_production: bool = False
    port: int = 8000

    # Matrix engine
    dtype: str = 'float64'
    nan_fill: bool = True
    workers: int = 4
    parallel: bool = True
    seed: Optional[int] = None

    # Network defaults
    input_size: int = 784
    hidden_size: int = 100
    output_size: int = 10
    learning_rate: float = 0.1
    progress_every: int = 100

    # Storage and data
    model_dir: str = 'models'
    train_csv: Optional[str] = None
    test_csv: Optional[str] = None

    # Server
    async_mode: str = 'gevent'
    cleanup_days: int = 2

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables."""
        return cls(
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            is_production=os.getenv('FLASK_ENV') == 'production',
            port=_env_int('PORT', 8000),
            dtype=os.getenv('DIGITNET_DTYPE', 'float64'),
            nan_fill=_env_bool('DIGITNET_NAN_FILL', True),
            workers=max(1, _env_int('DIGITNET_WORKERS', os.cpu_count() or 1)),
            parallel=_env_bool('DIGITNET_PARALLEL', True),
            seed=_env_int('DIGITNET_SEED', None),
            hidden_size=_env_int('DIGITNET_HIDDEN', 100),
            learning_rate=_env_float('DIGITNET_LEARNING_RATE', 0.1),
            progress_every=max(1, _env_int('DIGITNET_PROGRESS_EVERY', 100)),
            model_dir=os.getenv('DIGITNET_MODEL_DIR', 'models'),
            train_csv=os.getenv('DIGITNET_TRAIN_CSV') or None,
            test_csv=os.getenv('DIGITNET_TEST_CSV') or None,
            async_mode=os.getenv('DIGITNET_ASYNC_MODE', 'gevent'),
            cleanup_days=_env_int('DIGITNET_CLEANUP_DAYS', 2),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    Returns:
        Settings: The process-wide settings
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings(settings: Optional[Settings] = None) -> None:
    """Replace (or clear, when None) the cached settings."""
    global _settings
    _settings = settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if settings.is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
