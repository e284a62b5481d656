#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration and logging setup.

Settings are resolved in three layers, later ones winning:

    1. config file (JSON, or YAML when the name ends in .yaml/.yml)
    2. environment (SCHEMALEDGER_DATABASE_URL, SCHEMALEDGER_MIGRATIONS_DIR,
       SCHEMALEDGER_ENTITIES)
    3. explicit overrides (command line flags)

Without an explicit file, schemaledger.yaml, schemaledger.yml and
schemaledger.json are looked up in the working directory.
"""
import errno
import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

from schemaledger.errors import ConfigurationError

LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

DEFAULT_CONFIG_FILES = ('schemaledger.yaml', 'schemaledger.yml', 'schemaledger.json')

ENV_VARS = {
    'database_url': 'SCHEMALEDGER_DATABASE_URL',
    'migrations_dir': 'SCHEMALEDGER_MIGRATIONS_DIR',
    'entities': 'SCHEMALEDGER_ENTITIES',
}


@dataclass
class Settings:
    """
    Resolved engine settings.

    Attributes:
        database_url: Store URL or SQLite file path
        migrations_dir: Directory holding migration files
        entities: Entity declarations (YAML/JSON file or 'module:attr')
        lock_timeout: Seconds to wait for the migration lock
        busy_timeout: Seconds SQLite waits on a locked database file
        applied_by: Recorded in history records
        dialect: Default dialect for offline SQL scripts
        log_level: Logging level name
        log_file: Optional log file path
        config_file: File the settings were read from, if any
    """
    database_url: str = 'schemaledger.db'
    migrations_dir: str = 'migrations'
    entities: Optional[str] = None
    lock_timeout: float = 30.0
    busy_timeout: float = 5.0
    applied_by: str = 'system'
    dialect: Optional[str] = None
    log_level: str = 'info'
    log_file: Optional[str] = None
    config_file: Optional[str] = None

    def __post_init__(self):
        if self.lock_timeout <= 0:
            raise ConfigurationError(
                f"lock_timeout must be positive, got {self.lock_timeout}"
            )
        if self.busy_timeout < 0:
            raise ConfigurationError(
                f"busy_timeout must not be negative, got {self.busy_timeout}"
            )
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigurationError(f"Unknown log level '{self.log_level}'")


def read_config_file(config_file: str) -> dict:
    """
    Load a JSON or YAML configuration file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or does
            not hold a mapping
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as fp:
            if config_file.endswith(('.yaml', '.yml')):
                conf = yaml.safe_load(fp)
            else:
                conf = json.load(fp)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read config file {config_file}: {e}"
        ) from e

    if conf is None:
        return {}
    if not isinstance(conf, dict):
        raise ConfigurationError(f"Config file {config_file} must hold a mapping")
    return conf


def _flatten(conf: dict) -> dict:
    """Map file keys onto Settings fields (logging.level -> log_level)."""
    flat = {k: v for k, v in conf.items() if k != 'logging'}
    logging_conf = conf.get('logging') or {}
    if not isinstance(logging_conf, dict):
        raise ConfigurationError("'logging' must be a mapping")
    if 'level' in logging_conf:
        flat['log_level'] = logging_conf['level']
    if 'file' in logging_conf:
        flat['log_file'] = logging_conf['file']
    return flat


def load_settings(config_file=None, overrides=None, environ=None) -> Settings:
    """
    Resolve settings from file, environment and overrides.

    Args:
        config_file: Explicit config file (must exist when given)
        overrides: Mapping of Settings field -> value; None values ignored
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ConfigurationError: On unreadable files, unknown keys or bad values

    Example:
        settings = load_settings('schemaledger.yaml', {'lock_timeout': 10})
    """
    environ = os.environ if environ is None else environ

    if config_file is None:
        config_file = next(
            (name for name in DEFAULT_CONFIG_FILES if os.path.isfile(name)),
            None,
        )
    elif not os.path.isfile(config_file):
        raise ConfigurationError(f"Config file not found: {config_file}")

    values = _flatten(read_config_file(config_file)) if config_file else {}

    for key, var in ENV_VARS.items():
        if environ.get(var):
            values[key] = environ[var]

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    for key in ('lock_timeout', 'busy_timeout'):
        if key in values:
            try:
                values[key] = float(values[key])
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{key} must be a number") from e

    values['config_file'] = config_file
    return Settings(**values)


class RobustFileHandler(logging.FileHandler):
    """FileHandler that tolerates flush errors on Windows file handles"""

    def flush(self):
        try:
            super().flush()
        except OSError as e:
            # Windows reports EINVAL for handles in an inconsistent state
            if e.errno != errno.EINVAL:
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=LOG_FORMAT,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def setup_logging(settings: Settings) -> None:
    """Configure root logging, plus the optional log file."""
    log_level = getattr(logging, str(settings.log_level).upper())

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if settings.log_file:
        configure_logger('schemaledger', settings.log_file, LOG_FORMAT, log_level)
