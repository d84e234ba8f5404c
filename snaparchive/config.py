import os
import tempfile
from typing import Any, Dict

import yaml

from snaparchive.models import BackupSet, ConfigDocument, SettingsLayer
from snaparchive.backup.errors import ConfigurationError


class Config:
    """Base configuration"""

    # Configuration file with defaults, targets, jobs and sets
    CONFIG_FILE = os.environ.get('SNAPARCHIVE_CONFIG') or os.path.join(
        os.path.expanduser('~'), '.snaparchive', 'config.yaml'
    )

    # Logging
    LOG_DIR = os.environ.get('SNAPARCHIVE_LOG_DIR') or os.path.join(
        os.path.expanduser('~'), '.snaparchive', 'logs'
    )
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    LOG_MAX_BYTES = 10485760  # 10MB
    LOG_BACKUP_COUNT = 10

    # Temporary scripts, password files and snapshot metadata
    TEMP_DIR = os.environ.get('SNAPARCHIVE_TEMP_DIR') or tempfile.gettempdir()

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'

    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    CONFIG_FILE = os.environ.get('SNAPARCHIVE_CONFIG') or os.path.join(DATA_DIR, 'config.yaml')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def load_config_document(path: str) -> ConfigDocument:
    """
    Load a YAML configuration file.

    Expected top-level keys: `defaults`, `targets`, `jobs`, `sets`.
    Unrecognised setting keys are preserved in each layer's `extra`.

    Args:
        path: Path to the configuration file

    Returns:
        Parsed ConfigDocument

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse configuration file {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file {path}: {e}")

    document = parse_config_document(data)
    document.source_path = os.path.abspath(path)
    return document


def parse_config_document(data: Dict[str, Any]) -> ConfigDocument:
    """
    Build a ConfigDocument from an already-parsed mapping.

    Raises:
        ConfigurationError: If a section has the wrong shape
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration document must be a mapping")

    defaults = data.get('defaults') or {}
    jobs = data.get('jobs') or {}
    targets = data.get('targets') or {}
    sets = data.get('sets') or {}

    for section, value in (('defaults', defaults), ('jobs', jobs), ('targets', targets), ('sets', sets)):
        if not isinstance(value, dict):
            raise ConfigurationError(f"Configuration section '{section}' must be a mapping")

    document = ConfigDocument(
        defaults=SettingsLayer.from_dict(defaults),
        targets=dict(targets),
    )

    for job_name, job_data in jobs.items():
        if job_data is not None and not isinstance(job_data, dict):
            raise ConfigurationError(f"Job '{job_name}' must be a mapping")
        document.jobs[str(job_name)] = SettingsLayer.from_dict(job_data)

    for set_name, set_data in sets.items():
        if not isinstance(set_data, dict):
            raise ConfigurationError(f"Backup set '{set_name}' must be a mapping")
        on_error = str(set_data.get('on_error', 'stop')).lower()
        if on_error not in ('stop', 'continue'):
            raise ConfigurationError(
                f"Backup set '{set_name}' has invalid on_error '{on_error}'. "
                f"Valid options: ['stop', 'continue']"
            )
        document.sets[str(set_name)] = BackupSet(
            name=str(set_name),
            jobs=[str(j) for j in set_data.get('jobs') or []],
            on_error=on_error,
            schedule=set_data.get('schedule'),
        )

    return document
