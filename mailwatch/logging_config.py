"""
Logging configuration for mail-watch.

init_logging() configures the 'mailwatch' package logger once at startup.
Every module logs through logging.getLogger(__name__), so all records flow
through the handlers installed here:

    - console handler on stdout
    - rotating file handler (<app_dir>/mail-watch.log by default)
    - optional JSON-lines file handler

A ContextFilter attaches account_id, cycle_id and folder from
mailwatch.logging_context to each record.

Configuration sources, lowest to highest precedence: DEFAULT_CONFIG, an
optional YAML file, environment variables (LOG_LEVEL, LOG_FORMAT, LOG_FILE,
LOG_CONSOLE, LOG_JSON_FILE, LOG_JSON_PATH) and runtime overrides.

Usage:
    >>> from mailwatch.logging_config import init_logging
    >>> init_logging(log_file='/tmp/mail-watch.log', overrides={'level': 'DEBUG'})
"""
import copy
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from mailwatch.logging_context import get_logging_context

ROOT_LOGGER_NAME = 'mailwatch'

DEFAULT_CONFIG = {
    'level': 'INFO',
    'format': 'plain',  # 'plain' or 'json'
    'handlers': {
        'console': {
            'enabled': True,
            'level': None
        },
        'file': {
            'enabled': True,
            'path': None,  # resolved by init_logging
            'level': None,
            'max_bytes': 5 * 1024 * 1024,
            'backup_count': 3
        },
        'json_file': {
            'enabled': False,
            'path': 'mail-watch.jsonl',
            'level': None
        }
    },
}

ENV_VAR_MAPPING = {
    'LOG_LEVEL': 'level',
    'LOG_FORMAT': 'format',
    'LOG_FILE': ('handlers', 'file', 'path'),
    'LOG_CONSOLE': ('handlers', 'console', 'enabled'),
    'LOG_JSON_FILE': ('handlers', 'json_file', 'enabled'),
    'LOG_JSON_PATH': ('handlers', 'json_file', 'path'),
}

BOOLEAN_ENV_VARS = ('LOG_CONSOLE', 'LOG_JSON_FILE')

PLAIN_FORMAT = '%(asctime)s %(levelname)-8s [%(account_id)s] [%(cycle_id)s] [%(component)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class JSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'component': getattr(record, 'component', record.name),
        }

        for field in ('account_id', 'cycle_id', 'folder'):
            value = getattr(record, field, None)
            if value not in (None, '-'):
                log_data[field] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Adds the current account/cycle context and a short component name to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_logging_context()
        record.account_id = context.get('account_id', '-')
        record.cycle_id = context.get('cycle_id', '-')
        record.folder = context.get('folder', '-')

        if not hasattr(record, 'component'):
            # 'mailwatch.poll_cycle' -> 'poll_cycle'
            record.component = record.name.rsplit('.', 1)[-1]

        return True


def _load_config_from_file(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load logging configuration from a YAML file.

    The file may hold the settings at top level or under a 'logging' key.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Logging config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    return config.get('logging', config)


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    config = copy.deepcopy(config)

    for env_var, config_path in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        if isinstance(config_path, tuple):
            current = config
            for key in config_path[:-1]:
                current = current.setdefault(key, {})
            if env_var in BOOLEAN_ENV_VARS:
                current[config_path[-1]] = env_value.lower() in ('true', '1', 'yes', 'on')
            else:
                current[config_path[-1]] = env_value
        elif config_path == 'level':
            config['level'] = env_value.upper()
        elif config_path == 'format':
            config['format'] = env_value.lower()

    return config


def _merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two configuration dictionaries."""
    result = copy.deepcopy(base)

    for key, value in overrides.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_config(result[key], value)
        else:
            result[key] = value

    return result


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == 'json':
        return JSONFormatter()
    return logging.Formatter(fmt=PLAIN_FORMAT, datefmt=DATE_FORMAT)


def _level(name: Optional[str], default: int = logging.INFO) -> int:
    return getattr(logging, str(name or '').upper(), default)


def _setup_handlers(logger: logging.Logger, config: Dict[str, Any]) -> None:
    handlers_config = config.get('handlers', {})
    log_format = config.get('format', 'plain')
    context_filter = ContextFilter()

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_config = handlers_config.get('console', {})
    if console_config.get('enabled', True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(_level(console_config.get('level') or config.get('level')))
        console_handler.setFormatter(_build_formatter(log_format))
        console_handler.addFilter(context_filter)
        logger.addHandler(console_handler)

    file_config = handlers_config.get('file', {})
    if file_config.get('enabled', True) and file_config.get('path'):
        file_path = Path(file_config['path'])
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            str(file_path),
            maxBytes=file_config.get('max_bytes', 5 * 1024 * 1024),
            backupCount=file_config.get('backup_count', 3),
            encoding='utf-8'
        )
        file_handler.setLevel(_level(file_config.get('level') or config.get('level')))
        file_handler.setFormatter(_build_formatter(log_format))
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)

    json_config = handlers_config.get('json_file', {})
    if json_config.get('enabled', False):
        json_path = Path(json_config.get('path', 'mail-watch.jsonl'))
        json_path.parent.mkdir(parents=True, exist_ok=True)

        json_handler = logging.FileHandler(str(json_path), encoding='utf-8')
        json_handler.setLevel(_level(json_config.get('level') or config.get('level')))
        json_handler.setFormatter(JSONFormatter())
        json_handler.addFilter(context_filter)
        logger.addHandler(json_handler)


def init_logging(
    log_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Configure the mailwatch package logger.

    Safe to call more than once; handlers from a previous call are replaced.

    Args:
        log_file: Default path of the rotating log file. LOG_FILE and
            overrides still take precedence. When no path is known the file
            handler is skipped.
        overrides: Runtime overrides, e.g. {'level': 'DEBUG', 'format': 'json'}
        config_path: Optional YAML file with logging settings

    Returns:
        The configured 'mailwatch' logger

    Raises:
        FileNotFoundError: If config_path is given but does not exist
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if log_file:
        config['handlers']['file']['path'] = str(log_file)

    if config_path:
        config = _merge_config(config, _load_config_from_file(config_path))

    config = _apply_env_overrides(config)

    if overrides:
        config = _merge_config(config, overrides)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(_level(config.get('level')))

    _setup_handlers(root_logger, config)

    root_logger.debug(
        f"Logging initialized: level={config.get('level')}, format={config.get('format')}, "
        f"file={config['handlers'].get('file', {}).get('path')}"
    )
    return root_logger
