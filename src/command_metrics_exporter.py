#!/usr/bin/env python3

"""
Command Metrics Exporter

Description:
---------------------

A metrics collection service that runs a configurable set of shell commands
concurrently and exposes their output as Prometheus metrics:
- Literal commands and glob patterns (e.g. /opt/collectors/*.sh --json)
- Port-templated commands generated from a static list of ports
- A dynamic command set regenerated from metrics pushed to the listener
- Per-command timeout with stderr capture and truncation
- Pluggable output parsers (InfluxDB line protocol, Nagios, single value)
- Health check endpoint with collection statistics

Usage:
---------------------
1. Create a YAML configuration file in the same directory as the script
2. Run the script directly or via systemd service
3. Monitor metrics at http://localhost:9101/metrics
4. Push dynamic ports to http://localhost:9102/write
5. Check service health at http://localhost:9102/health

Configuration:
---------------------

exporter:
    metrics_port: 9101      # Prometheus metrics port
    listener_port: 9102     # Write listener and health check port
    collection:
        poll_interval_sec: 10   # Collection cycle interval
        failure_threshold: 20   # Failed cycles in a row before unhealthy
    logging:
        level: "DEBUG"          # Main logging level
        file_level: "DEBUG"     # File logging level
        console_level: "INFO"   # Console output level
        journal_level: "WARNING"  # Systemd journal level
        max_bytes: 10485760     # Log file size limit (10MB)
        backup_count: 3         # Log file rotation count
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

collector:
    commands:                   # Commands or glob patterns, arguments allowed
        - "/usr/bin/mycollector --foo=bar"
        - "/tmp/collect_*.sh"
    command: ""                 # Legacy single command, merged into commands
    pattern: "check_port %s"    # Template with exactly one %s placeholder
    listen_ports: "80,8082"     # Static ports substituted into pattern
    timeout: "5s"               # Timeout for each command
    name_suffix: "_mycollector" # Appended to every exposed metric name
    data_format: "influx"       # influx | nagios | value
    metric_name: "exec"         # Metric name used by the value format

Listener API:
---------------------
POST /write
    Body in InfluxDB line protocol. Every float field value becomes a port
    and replaces the dynamic command set generated from `pattern`.

GET /health
    Returns service health status, collection statistics and commands.

Response Codes:
    200: Service healthy
    204: Write accepted
    400: Malformed write body
    503: Service unhealthy
    404: Invalid endpoint

Dependencies:
---------------------
- Python 3.11+
- prometheus_client
- pyyaml
- cysystemd (optional, for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- Configuration file must be in same directory as script
- Commands are executed directly, not through a shell
- An empty write leaves the dynamic command set unchanged
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import glob
import json
import logging
import math
import os
import re
import shlex
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import MappingProxyType
from typing import (
    Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set,
    Tuple, Union
)
from wsgiref.simple_server import make_server

# Third party imports
from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server
import yaml

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CollectorError(Exception):
    """Base class for collector errors."""
    pass

class CollectorConfigurationError(CollectorError):
    """Error in collector configuration."""
    pass

class CommandParseError(CollectorError):
    """Command string could not be split into arguments."""
    pass

class GlobError(CollectorError):
    """Filesystem glob expansion failed."""
    pass

class ParseError(CollectorError):
    """Parser rejected command output."""
    pass

class ExecutionError(CollectorError):
    """Command failed to start, exited non-zero or timed out."""

    def __init__(
        self,
        message: str,
        command: str,
        outcome: 'ExecutionOutcome',
        exit_code: Optional[int] = None
    ):
        super().__init__(message)
        self.command = command
        self.outcome = outcome
        self.exit_code = exit_code

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Source and Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def config_path(self) -> Path:
        """Full path to config file."""
        path = self.script_dir / f"{self.base_name}.yml"
        if path.is_file() and os.access(path, os.R_OK):
            return path

        raise FileNotFoundError(
            f"Config file {path} not found"
        )

    @property
    def log_path(self) -> Path:
        """Full path to log file."""
        path = self.script_dir / f"{self.base_name}.log"

        if os.access(path, os.W_OK):
            return path
        if not path.exists() and os.access(self.script_dir, os.W_OK):
            return path

        raise PermissionError(
            f"No writable log file at {path}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

DURATION_PATTERN = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}

def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration such as "5s", "500ms" or "1m30s" into seconds."""
    if isinstance(value, bool):
        raise CollectorConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = DURATION_PATTERN.findall(text)
            if not parts or ''.join(n + u for n, u in parts) != text:
                raise CollectorConfigurationError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * DURATION_UNITS[u] for n, u in parts)

    if seconds <= 0 or math.isinf(seconds) or math.isnan(seconds):
        raise CollectorConfigurationError(f"Duration must be positive: {value!r}")
    return seconds

def validate_pattern(pattern: str) -> None:
    """Ensure a command template accepts exactly one %s substitution."""
    try:
        pattern % ('port',)
    except (TypeError, ValueError) as e:
        raise CollectorConfigurationError(
            f"Pattern {pattern!r} must contain exactly one %s placeholder: {e}"
        )

def split_ports(ports: str) -> List[str]:
    """Split a comma-separated port list, dropping blank entries."""
    return [port.strip() for port in ports.split(',') if port.strip()]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with simplified defaults and validation."""

    # Default values as class attributes - explicit and easy to maintain
    DEFAULT_METRICS_PORT = 9101
    DEFAULT_LISTENER_PORT = 9102
    DEFAULT_POLL_INTERVAL = 10
    DEFAULT_FAILURE_THRESHOLD = 20

    # Collector defaults
    DEFAULT_TIMEOUT = '5s'
    DEFAULT_DATA_FORMAT = 'influx'
    DEFAULT_METRIC_NAME = 'exec'

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'DEBUG'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = {
            'exporter': self._get_exporter_defaults(),
            'collector': self._get_collector_defaults()
        }
        self._lock = threading.Lock()
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def initialize(self) -> None:
        """Complete initialization after logger is attached."""
        try:
            self.load()
        except Exception as e:
            self._log_message('error', f"Failed to load initial configuration: {e}")
            raise

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'listener_port': self.DEFAULT_LISTENER_PORT,
            'collection': {
                'poll_interval_sec': self.DEFAULT_POLL_INTERVAL,
                'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def _get_collector_defaults(self) -> Dict[str, Any]:
        """Get default collector configuration."""
        return {
            'commands': [],
            'command': '',
            'pattern': '',
            'listen_ports': '',
            'timeout': self.DEFAULT_TIMEOUT,
            'name_suffix': '',
            'data_format': self.DEFAULT_DATA_FORMAT,
            'metric_name': self.DEFAULT_METRIC_NAME
        }

    def load(self) -> None:
        """Load and validate the configuration file."""
        with self._lock:
            new_config = {
                'exporter': self._get_exporter_defaults(),
                'collector': self._get_collector_defaults()
            }

            try:
                with open(self._source.config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except Exception as e:
                raise CollectorConfigurationError(f"Failed to load config file: {e}")

            if not isinstance(file_config, dict):
                raise CollectorConfigurationError("Configuration must be a dictionary")

            if 'exporter' in file_config:
                self._validate_exporter_section(file_config['exporter'])
                new_config['exporter'] = self._merge_with_defaults(
                    new_config['exporter'],
                    file_config['exporter'] or {}
                )

            if 'collector' not in file_config:
                raise CollectorConfigurationError("Missing required 'collector' section")
            if not isinstance(file_config['collector'] or {}, dict):
                raise CollectorConfigurationError("Collector section must be a dictionary")

            new_config['collector'] = self._validate_collector_section(
                self._merge_with_defaults(
                    new_config['collector'],
                    file_config['collector'] or {}
                )
            )

            self._config = new_config
            self._log_message(
                'info',
                f"Configuration loaded with {len(self.commands)} commands, "
                f"{len(self.listen_ports)} static ports, "
                f"data format '{self.data_format}'"
            )

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of exporter configuration."""
        if not config:
            return

        if not isinstance(config, dict):
            raise CollectorConfigurationError("Exporter section must be a dictionary")

        for key in ('metrics_port', 'listener_port'):
            if key in config:
                port = config[key]
                if not isinstance(port, int) or port < 1 or port > 65535:
                    raise CollectorConfigurationError(f"Invalid {key} {port}")

        if config.get('metrics_port', self.DEFAULT_METRICS_PORT) == \
                config.get('listener_port', self.DEFAULT_LISTENER_PORT):
            raise CollectorConfigurationError("metrics_port and listener_port must be different")

        collection = config.get('collection') or {}
        if not isinstance(collection, dict):
            raise CollectorConfigurationError("Collection section must be a dictionary")

        if 'poll_interval_sec' in collection:
            interval = collection['poll_interval_sec']
            if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
                raise CollectorConfigurationError(f"Invalid poll_interval_sec {interval!r}")

        if 'failure_threshold' in collection:
            threshold = collection['failure_threshold']
            if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
                raise CollectorConfigurationError(f"Invalid failure_threshold {threshold!r}")

    def _validate_collector_section(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate collector section and normalize its values."""
        commands = config['commands']
        if commands is None:
            commands = []
        if isinstance(commands, str):
            commands = [commands]
        if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
            raise CollectorConfigurationError("'commands' must be a list of strings")
        config['commands'] = list(commands)

        for key in ('command', 'pattern', 'listen_ports', 'name_suffix', 'metric_name'):
            value = config[key]
            if value is None:
                value = ''
            if isinstance(value, (int, float)) and not isinstance(value, bool) and key == 'listen_ports':
                value = str(value)
            if not isinstance(value, str):
                raise CollectorConfigurationError(f"'{key}' must be a string")
            config[key] = value

        if config['pattern']:
            validate_pattern(config['pattern'])

        config['timeout'] = parse_duration(config['timeout'])

        data_format = str(config['data_format']).lower()
        if data_format not in PARSERS:
            raise CollectorConfigurationError(
                f"Invalid data_format: {config['data_format']}. "
                f"Must be one of: {sorted(PARSERS)}"
            )
        config['data_format'] = data_format

        if not config['commands'] and not config['command'] and not config['pattern']:
            self._log_message('warning', "No commands or pattern configured, nothing will be collected")

        return config

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def start_time(self) -> datetime:
        """Service start time."""
        return self._start_time

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def collector(self) -> Dict[str, Any]:
        """Get collector configuration."""
        return self._config['collector']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

    @property
    def collection(self) -> Dict[str, Any]:
        """Get collection configuration."""
        return self.exporter.get('collection', {})

    @property
    def metrics_port(self) -> int:
        """Get metrics port number."""
        return self.exporter.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def listener_port(self) -> int:
        """Get write listener port number."""
        return self.exporter.get('listener_port', self.DEFAULT_LISTENER_PORT)

    @property
    def poll_interval(self) -> float:
        """Get polling interval in seconds."""
        return self.collection.get('poll_interval_sec', self.DEFAULT_POLL_INTERVAL)

    @property
    def failure_threshold(self) -> int:
        """Get failure threshold count."""
        return self.collection.get('failure_threshold', self.DEFAULT_FAILURE_THRESHOLD)

    @property
    def commands(self) -> List[str]:
        return self.collector['commands']

    @property
    def command(self) -> str:
        return self.collector['command']

    @property
    def pattern(self) -> str:
        return self.collector['pattern']

    @property
    def listen_ports(self) -> List[str]:
        """Static ports parsed from the comma-separated list."""
        return split_ports(self.collector['listen_ports'])

    @property
    def timeout(self) -> float:
        """Per-command timeout in seconds."""
        return self.collector['timeout']

    @property
    def name_suffix(self) -> str:
        return self.collector['name_suffix']

    @property
    def data_format(self) -> str:
        return self.collector['data_format']

    @property
    def metric_name(self) -> str:
        return self.collector['metric_name']

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(self, msg: str, *args: Any, **kwargs: Any) -> None:
            """Log at the VERBOSE level between DEBUG and INFO."""
            if ProgramLogger.VERBOSE_DEBUG and self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg, *args, **kwargs)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}

        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration merged over ProgramConfig defaults."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - File handler with rotation
        - Console handler
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # File handler
            file_handler = RotatingFileHandler(
                self.source.log_path,
                maxBytes=log_settings['max_bytes'],
                backupCount=log_settings['backup_count']
            )
            file_handler.setLevel(log_settings['file_level'])
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            self._handlers['file'] = file_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                from cysystemd import journal

                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, continuing with console logging", file=sys.stderr)

        return logger

    def close(self) -> None:
        """Flush and close all handlers."""
        for name, handler in list(self._handlers.items()):
            try:
                handler.close()
            finally:
                self._logger.removeHandler(handler)
                del self._handlers[name]

def notify_systemd(config: ProgramConfig, state: str) -> None:
    """Send a READY/STOPPING notification when running under systemd."""
    if not config.running_under_systemd:
        return

    from cysystemd.daemon import notify, Notification
    notify(getattr(Notification, state))

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ExecutionOutcome(Enum):
    """How a command invocation ended."""
    SUCCESS = "success"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    LAUNCH_FAILURE = "launch_failure"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class Metric:
    """A structured metric record produced by a parser."""
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: ProgramConfig.now_utc())

    def add_tag(self, key: str, value: str) -> None:
        self.tags[key] = value

    def add_field(self, key: str, value: Any) -> None:
        self.fields[key] = value

    def field_list(self) -> List[Tuple[str, Any]]:
        return list(self.fields.items())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CapturedOutput:
    """Result of a single command execution."""
    stdout: bytes = b""
    stderr: bytes = b""
    outcome: ExecutionOutcome = ExecutionOutcome.SUCCESS
    exit_code: Optional[int] = None
    error: Optional[ExecutionError] = None
    execution_time: float = 0

    @property
    def success(self) -> bool:
        return self.error is None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionResult:
    """Summary of one collection cycle."""
    commands: int = 0
    metrics: int = 0
    errors: int = 0
    failed_commands: int = 0
    duration: float = 0

    @property
    def failed(self) -> bool:
        """True when commands ran and every one of them failed."""
        return self.commands > 0 and self.failed_commands == self.commands

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class CollectionStats:
    """Statistics for collection cycles.

    Tracks cycle success/failure rates and timing information
    for health monitoring and operational visibility.

    Attributes:
        attempts (int): Total collection cycles
        successful (int): Cycles where at least one command succeeded
        metrics (int): Metrics emitted across all cycles
        errors (int): Errors reported across all cycles
        consecutive_failures (int): Current streak of failed cycles
        last_collection_time (float): Duration of last cycle
        total_collection_time (float): Cumulative cycle time
        last_collection_datetime (datetime): Timestamp of last cycle
    """
    attempts: int = 0
    successful: int = 0
    metrics: int = 0
    errors: int = 0
    consecutive_failures: int = 0
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: datetime = field(
        default_factory=lambda: ProgramConfig.now_utc()
    )

    def record(self, result: CollectionResult) -> None:
        """Fold a cycle result into the statistics."""
        self.attempts += 1
        self.metrics += result.metrics
        self.errors += result.errors
        if result.failed:
            self.consecutive_failures += 1
        else:
            self.successful += 1
            self.consecutive_failures = 0
        self.last_collection_time = result.duration
        self.total_collection_time += result.duration
        self.last_collection_datetime = ProgramConfig.now_utc()

    def get_average_collection_time(self) -> float:
        """Calculate average collection time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if collection statistics indicate healthy operation."""
        return self.consecutive_failures < threshold

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Output Sanitizer
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

MAX_STDERR_BYTES = 512
TRUNCATION_MARKER = b"..."

def truncate_stderr(data: bytes) -> bytes:
    """Limit stderr to MAX_STDERR_BYTES and to its first line."""
    truncated = False
    if len(data) > MAX_STDERR_BYTES:
        data = data[:MAX_STDERR_BYTES]
        truncated = True

    index = data.find(b"\n")
    if index > 0:
        # Only a newline that isn't the last byte counts as a cut
        if index < len(data) - 1:
            truncated = True
        data = data[:index]

    if truncated:
        data += TRUNCATION_MARKER
    return data

def remove_carriage_returns(data: bytes, windows: Optional[bool] = None) -> bytes:
    """Strip carriage returns on Windows so parsers only see LF line endings."""
    if windows is None:
        windows = os.name == 'nt'
    if windows:
        return data.replace(b"\r", b"")
    return data

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Command Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class Runner(Protocol):
    async def run(self, command: str, timeout: float) -> CapturedOutput:
        ...

class CommandRunner:
    """Executes a single command with a timeout and captures its output."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    async def run(self, command: str, timeout: float) -> CapturedOutput:
        """Run command and wait up to timeout seconds.

        Raises:
            CommandParseError: If the command can't be split into arguments

        Returns:
            CapturedOutput whose error is set on launch failure,
            non-zero exit or timeout
        """
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise CommandParseError(f"unable to parse command '{command}': {e}")
        if not argv:
            raise CommandParseError(f"unable to parse command '{command}': empty command")

        self.logger.verbose(f"Executing command: {argv}")
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True
            )
        except OSError as e:
            return self._result(
                command, b"", b"", ExecutionOutcome.LAUNCH_FAILURE,
                None, f"failed to start: {e}", start_time
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            return self._result(
                command, b"", b"", ExecutionOutcome.TIMEOUT,
                None, f"command timed out after {timeout:g}s", start_time
            )

        if process.returncode != 0:
            return self._result(
                command, stdout, stderr, ExecutionOutcome.NON_ZERO_EXIT,
                process.returncode, f"exit status {process.returncode}", start_time
            )

        return self._result(
            command, stdout, stderr, ExecutionOutcome.SUCCESS,
            0, None, start_time
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill the process group of a command that overran its timeout.

        The command leads its own session, so children it spawned and
        that still hold the output pipes are killed along with it.
        """
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()

    def _result(
        self,
        command: str,
        stdout: bytes,
        stderr: bytes,
        outcome: ExecutionOutcome,
        exit_code: Optional[int],
        message: Optional[str],
        start_time: float
    ) -> CapturedOutput:
        stdout = remove_carriage_returns(stdout)
        if stderr:
            stderr = truncate_stderr(remove_carriage_returns(stderr))

        error = None
        if message is not None:
            error = ExecutionError(message, command, outcome, exit_code)

        execution_time = time.monotonic() - start_time
        self.logger.verbose(
            f"Command '{command}' finished with {outcome.value} in {execution_time:.3f}s"
        )
        return CapturedOutput(
            stdout=stdout,
            stderr=stderr,
            outcome=outcome,
            exit_code=exit_code,
            error=error,
            execution_time=execution_time
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Command Resolution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CommandResolver:
    """Expands command patterns into concrete commands via glob matching."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def resolve(self, specs: Iterable[str]) -> Tuple[List[str], List[GlobError]]:
        """Resolve command specs into executable commands.

        Only the first whitespace-delimited token is glob-expanded; the
        remaining arguments are appended to every match. A token without
        matches is assumed to be on PATH and kept as-is.
        """
        commands: List[str] = []
        errors: List[GlobError] = []

        for spec in specs:
            parts = spec.split(None, 1)
            if not parts:
                continue

            token = parts[0]
            try:
                matches = sorted(glob.glob(token))
            except (OSError, ValueError) as e:
                errors.append(GlobError(f"unable to expand '{token}': {e}"))
                continue

            if not matches:
                commands.append(spec)
                continue

            self.logger.verbose(f"Pattern '{token}' matched {len(matches)} files")
            for match in matches:
                if len(parts) == 1:
                    commands.append(match)
                else:
                    commands.append(f"{match} {parts[1]}")

        return commands, errors

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Port Registry
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class PortBinding:
    """Immutable set of generated commands and the port behind each one."""
    commands: Tuple[str, ...] = ()
    ports: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    generation: int = 0

    def port_for(self, command: str) -> Optional[str]:
        return self.ports.get(command)

    def __len__(self) -> int:
        return len(self.commands)

def generate_port_binding(pattern: str, ports: Iterable[str]) -> PortBinding:
    """Substitute each port into pattern, binding command to port."""
    commands = []
    binding = {}
    for port in ports:
        command = pattern % (port,)
        binding[command] = port
        commands.append(command)
    return PortBinding(tuple(commands), MappingProxyType(binding))

class PortRegistry:
    """Holds the static binding and the replaceable dynamic binding.

    The static binding is fixed at construction and read without locking.
    The dynamic binding is swapped whole under the lock; readers get the
    current immutable snapshot and keep it for the rest of their cycle.
    """

    def __init__(self, static: Optional[PortBinding] = None):
        self._static = static or PortBinding()
        self._dynamic = PortBinding()
        self._lock = threading.Lock()

    @property
    def static(self) -> PortBinding:
        return self._static

    def read(self) -> PortBinding:
        """Snapshot of the current dynamic binding.

        A plain lock stands in for a read/write lock: readers hold it only
        to copy the reference to an immutable binding.
        """
        with self._lock:
            return self._dynamic

    def replace(self, binding: PortBinding) -> PortBinding:
        """Install binding as the new dynamic set, discarding the old one."""
        with self._lock:
            self._dynamic = PortBinding(
                binding.commands,
                binding.ports,
                self._dynamic.generation + 1
            )
            return self._dynamic

    def port_for(self, command: str, dynamic: Optional[PortBinding] = None) -> Optional[str]:
        """Port bound to command in the static or dynamic binding."""
        if dynamic is None:
            dynamic = self.read()
        port = dynamic.port_for(command)
        if port is None:
            port = self._static.port_for(command)
        return port

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

PORT_TAG = 'port'

def tag_metric(
    metric: Metric,
    command: str,
    registry: PortRegistry,
    dynamic: Optional[PortBinding] = None
) -> None:
    """Tag metric with the port that generated command, if any."""
    port = registry.port_for(command, dynamic)
    if port is not None:
        metric.add_tag(PORT_TAG, port)

def format_parameter(value: float) -> str:
    """Format a float as a plain decimal without exponent or trailing zeros."""
    if math.isnan(value):
        return 'NaN'
    if math.isinf(value):
        return '+Inf' if value > 0 else '-Inf'
    return format(Decimal(repr(value)).normalize(), 'f')

def extract_parameters(metrics: Iterable[Metric]) -> List[str]:
    """Collect every float field value across metrics as a parameter."""
    parameters = []
    for metric in metrics:
        for _, value in metric.field_list():
            if isinstance(value, float):
                parameters.append(format_parameter(value))
    return parameters

class DynamicCommandUpdater:
    """Regenerates the dynamic command set from incoming metrics."""

    def __init__(self, pattern: str, registry: PortRegistry, logger: logging.Logger):
        self.pattern = pattern
        self.registry = registry
        self.logger = logger

    def write(self, metrics: List[Metric]) -> bool:
        """Replace the dynamic set with commands for every float field.

        A batch without float fields, or a missing pattern, leaves the
        current dynamic set in place.

        Returns:
            True if the dynamic set was replaced
        """
        ports = extract_parameters(metrics)
        self.logger.verbose(f"Received {len(metrics)} metrics with ports {ports}")

        if not self.pattern or not ports:
            self.logger.debug("No pattern or ports in update, keeping dynamic commands")
            return False

        binding = self.registry.replace(generate_port_binding(self.pattern, ports))
        self.logger.info(
            f"Installed {len(binding)} dynamic commands "
            f"(generation {binding.generation})"
        )
        return True

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Output Parsers
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricParser(ABC):
    """Converts raw command output into metrics."""

    # Parsers that encode failure state in their output see failed
    # executions too and merge the outcome via add_outcome_state.
    carries_exit_state = False

    @abstractmethod
    def parse(self, data: bytes) -> List[Metric]:
        """Parse output, raising ParseError if it is malformed."""

    def add_outcome_state(
        self,
        error: Optional[ExecutionError],
        metrics: List[Metric]
    ) -> Tuple[List[Metric], Optional[CollectorError]]:
        raise NotImplementedError(f"{type(self).__name__} does not carry exit state")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def _split_unescaped(
    text: str,
    separator: str,
    maxsplit: int = -1,
    quotes: bool = False
) -> List[str]:
    """Split on separator, honoring backslash escapes and double quotes."""
    parts: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    while i < len(text):
        char = text[i]
        if char == '\\' and i + 1 < len(text):
            current.append(text[i:i + 2])
            i += 2
            continue
        if quotes and char == '"':
            in_quotes = not in_quotes
        elif char == separator and not in_quotes and (maxsplit < 0 or len(parts) < maxsplit):
            parts.append(''.join(current))
            current = []
            i += 1
            continue
        current.append(char)
        i += 1

    if in_quotes:
        raise ParseError(f"unterminated quote in {text!r}")
    parts.append(''.join(current))
    return parts

_ESCAPE_PATTERN = re.compile(r'\\(.)')

def _unescape(text: str) -> str:
    return _ESCAPE_PATTERN.sub(r'\1', text)

class InfluxParser(MetricParser):
    """InfluxDB line protocol parser.

    Each line is `measurement[,tag=value...] field=value[,field=value...] [timestamp]`
    with an optional nanosecond timestamp. Blank lines and `#` comments are
    skipped.
    """

    TRUE_VALUES = ('t', 'T', 'true', 'True', 'TRUE')
    FALSE_VALUES = ('f', 'F', 'false', 'False', 'FALSE')

    def parse(self, data: bytes) -> List[Metric]:
        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ParseError(f"invalid utf-8 in line protocol: {e}")

        metrics = []
        for number, line in enumerate(text.split('\n'), start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            try:
                metrics.append(self.parse_line(line))
            except ParseError as e:
                raise ParseError(f"line {number}: {e}")
        return metrics

    def parse_line(self, line: str) -> Metric:
        sections = [s for s in _split_unescaped(line, ' ', quotes=True) if s]
        if len(sections) < 2 or len(sections) > 3:
            raise ParseError(f"expected measurement, fields and optional timestamp in {line!r}")

        series = _split_unescaped(sections[0], ',')
        name = _unescape(series[0])
        if not name:
            raise ParseError(f"missing measurement in {line!r}")

        tags = {}
        for tag in series[1:]:
            key_value = _split_unescaped(tag, '=', maxsplit=1)
            if len(key_value) != 2 or not key_value[0] or not key_value[1]:
                raise ParseError(f"invalid tag {tag!r}")
            tags[_unescape(key_value[0])] = _unescape(key_value[1])

        fields = {}
        for item in _split_unescaped(sections[1], ',', quotes=True):
            key_value = _split_unescaped(item, '=', maxsplit=1, quotes=True)
            if len(key_value) != 2 or not key_value[0] or not key_value[1]:
                raise ParseError(f"invalid field {item!r}")
            fields[_unescape(key_value[0])] = self._parse_value(key_value[1])

        metric = Metric(name, fields, tags)
        if len(sections) == 3:
            try:
                nanoseconds = int(sections[2])
            except ValueError:
                raise ParseError(f"invalid timestamp {sections[2]!r}")
            metric.timestamp = datetime.fromtimestamp(nanoseconds / 1e9, tz=timezone.utc)
        return metric

    def _parse_value(self, raw: str) -> Union[float, int, str, bool]:
        if len(raw) >= 2 and raw[0] == '"' and raw[-1] == '"':
            return raw[1:-1].replace('\\"', '"').replace('\\\\', '\\')
        if raw in self.TRUE_VALUES:
            return True
        if raw in self.FALSE_VALUES:
            return False
        try:
            if raw[-1] in ('i', 'u'):
                return int(raw[:-1])
            return float(raw)
        except ValueError:
            raise ParseError(f"invalid field value {raw!r}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class NagiosParser(MetricParser):
    """Nagios plugin output parser.

    `SERVICE OUTPUT | 'label'=value[UOM];[warn];[crit];[min];[max] ...`
    Perfdata may continue on the long output lines following a `|`.
    """

    carries_exit_state = True

    STATE_UNKNOWN = 3
    PERFDATA_PATTERN = re.compile(r"('[^']+'|[^\s=']+)=(\S*)")
    VALUE_PATTERN = re.compile(r'^([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)(.*)$')
    THRESHOLD_FIELDS = ('warning', 'critical', 'min', 'max')

    def parse(self, data: bytes) -> List[Metric]:
        text = data.decode('utf-8', errors='replace')
        lines = text.splitlines()
        if not text.strip():
            return []

        service_output, _, perfdata = lines[0].partition('|')
        long_output = []
        perf_lines = [perfdata]
        in_perfdata = False
        for line in lines[1:]:
            if in_perfdata:
                perf_lines.append(line)
                continue
            text_part, separator, perf_part = line.partition('|')
            long_output.append(text_part)
            if separator:
                perf_lines.append(perf_part)
                in_perfdata = True

        metrics = []
        for perf_line in perf_lines:
            for label, value in self.PERFDATA_PATTERN.findall(perf_line):
                metric = self._parse_perfdata(label.strip("'"), value)
                if metric is not None:
                    metrics.append(metric)

        state_fields: Dict[str, Any] = {'service_output': service_output.strip()}
        long_text = '\n'.join(line for line in long_output if line.strip())
        if long_text:
            state_fields['long_service_output'] = long_text
        metrics.append(Metric('nagios_state', state_fields))
        return metrics

    def _parse_perfdata(self, label: str, raw: str) -> Optional[Metric]:
        values = raw.split(';')
        match = self.VALUE_PATTERN.match(values[0])
        if not match:
            # Values such as "U" mean the value couldn't be determined
            return None

        fields: Dict[str, Any] = {'value': float(match.group(1))}
        for name, threshold in zip(self.THRESHOLD_FIELDS, values[1:]):
            try:
                fields[name] = float(threshold)
            except ValueError:
                continue

        tags = {'perfdata': label}
        if match.group(2):
            tags['unit'] = match.group(2)
        return Metric('nagios', fields, tags)

    def add_outcome_state(
        self,
        error: Optional[ExecutionError],
        metrics: List[Metric]
    ) -> Tuple[List[Metric], Optional[CollectorError]]:
        """Record the plugin state derived from the execution result.

        The metrics are always returned with a state; an error is returned
        alongside when the exit code could not be determined.
        """
        failure = None
        if error is None:
            state = 0
        elif error.outcome is ExecutionOutcome.NON_ZERO_EXIT and error.exit_code is not None:
            state = error.exit_code
        else:
            state = self.STATE_UNKNOWN
            failure = ParseError(f"unable to determine exit code: {error}")

        for metric in metrics:
            if metric.name == 'nagios_state':
                metric.add_field('state', state)
                return metrics, failure

        timestamp = metrics[0].timestamp if metrics else ProgramConfig.now_utc()
        metrics.append(Metric('nagios_state', {'state': state}, timestamp=timestamp))
        return metrics, failure

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ValueParser(MetricParser):
    """Parses output holding a single number."""

    def __init__(self, metric_name: str = ProgramConfig.DEFAULT_METRIC_NAME):
        self.metric_name = metric_name

    def parse(self, data: bytes) -> List[Metric]:
        text = data.decode('utf-8', errors='replace').strip()
        if not text:
            raise ParseError("empty output, expected a single value")
        try:
            value: Union[int, float] = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                raise ParseError(f"invalid value {text[:64]!r}")
        return [Metric(self.metric_name, {'value': value})]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

PARSERS: Dict[str, Callable[[str], MetricParser]] = {
    'influx': lambda metric_name: InfluxParser(),
    'nagios': lambda metric_name: NagiosParser(),
    'value': lambda metric_name: ValueParser(metric_name),
}

def create_parser(
    data_format: str,
    metric_name: str = ProgramConfig.DEFAULT_METRIC_NAME
) -> MetricParser:
    """Create a parser for the configured data format."""
    try:
        return PARSERS[data_format.lower()](metric_name)
    except KeyError:
        raise CollectorConfigurationError(
            f"Invalid data_format: {data_format}. Must be one of: {sorted(PARSERS)}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Accumulation
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class Accumulator(Protocol):
    def add_metric(self, metric: Metric) -> None:
        ...

    def add_error(self, error: Exception) -> None:
        ...

_INVALID_NAME_CHARS = re.compile(r'[^a-zA-Z0-9_:]')
_INVALID_LABEL_CHARS = re.compile(r'[^a-zA-Z0-9_]')

def prometheus_name(name: str, label: bool = False) -> str:
    """Sanitize a name to the Prometheus metric or label charset."""
    pattern = _INVALID_LABEL_CHARS if label else _INVALID_NAME_CHARS
    name = pattern.sub('_', name)
    if not name or name[0].isdigit():
        name = f"_{name}"
    return name

class PrometheusAccumulator:
    """Exposes collected metrics as Prometheus gauges."""

    def __init__(
        self,
        logger: logging.Logger,
        name_suffix: str = '',
        registry: Optional[CollectorRegistry] = None
    ):
        self.logger = logger
        self.name_suffix = name_suffix
        self.registry = registry or CollectorRegistry()
        self._gauges: Dict[str, Tuple[Gauge, Tuple[str, ...]]] = {}
        # Label values exported per gauge, and those written this cycle
        self._series: Dict[str, Set[Tuple[str, ...]]] = {}
        self._written: Dict[str, Set[Tuple[str, ...]]] = {}
        self._lock = threading.Lock()
        self._setup_internal_metrics()

    def _setup_internal_metrics(self) -> None:
        """Set up internal metrics tracking."""
        self._internal_metrics = {
            'errors': Counter(
                'exec_collector_errors',
                'Total number of command collection errors',
                registry=self.registry
            ),
            'commands': Gauge(
                'exec_collector_commands',
                'Number of commands run in the last collection',
                registry=self.registry
            ),
            'dynamic_commands': Gauge(
                'exec_collector_dynamic_commands',
                'Number of commands in the current dynamic set',
                registry=self.registry
            ),
            'collection_duration': Gauge(
                'exec_collector_collection_duration_seconds',
                'Duration of the last collection in seconds',
                registry=self.registry
            ),
            'last_collection_unix_seconds': Gauge(
                'exec_collector_last_collection_unix_seconds',
                'Unix timestamp of the last collection',
                registry=self.registry
            ),
            'uptime': Gauge(
                'exec_collector_uptime_seconds',
                'Time since service start in seconds',
                registry=self.registry
            )
        }

    def add_metric(self, metric: Metric) -> None:
        """Set one gauge per numeric field of metric."""
        label_names = tuple(sorted(prometheus_name(k, label=True) for k in metric.tags))
        label_values = {prometheus_name(k, label=True): v for k, v in metric.tags.items()}

        for field_name, value in metric.field_list():
            if not isinstance(value, (int, float)):
                self.logger.verbose(f"Skipping non-numeric field {metric.name}.{field_name}")
                continue

            name = prometheus_name(f"{metric.name}{self.name_suffix}_{field_name}")
            gauge = self._get_gauge(name, metric.name, label_names)
            if gauge is None:
                continue

            values = tuple(label_values[n] for n in label_names)
            if values:
                gauge.labels(*values).set(float(value))
            else:
                gauge.set(float(value))
            with self._lock:
                self._written.setdefault(name, set()).add(values)

    def _get_gauge(
        self,
        name: str,
        source: str,
        label_names: Tuple[str, ...]
    ) -> Optional[Gauge]:
        with self._lock:
            if name not in self._gauges:
                try:
                    gauge = Gauge(
                        name,
                        f"Field collected from '{source}' command output",
                        labelnames=label_names,
                        registry=self.registry
                    )
                except ValueError as e:
                    self.logger.error(f"Failed to register metric {name}: {e}")
                    return None
                self._gauges[name] = (gauge, label_names)
                self.logger.verbose(f"Created metric {name} with labels {label_names}")

            gauge, known_labels = self._gauges[name]

        if known_labels != label_names:
            self.logger.warning(
                f"Dropping sample for {name}: labels {list(label_names)} "
                f"don't match {list(known_labels)}"
            )
            return None
        return gauge

    def add_error(self, error: Exception) -> None:
        self.logger.error(f"Collection error: {error}")
        self._internal_metrics['errors'].inc()

    def record_collection(
        self,
        result: CollectionResult,
        dynamic_commands: int,
        uptime: float
    ) -> None:
        """Update internal metrics after a collection cycle."""
        self._remove_stale_series()
        self._internal_metrics['commands'].set(result.commands)
        self._internal_metrics['dynamic_commands'].set(dynamic_commands)
        self._internal_metrics['collection_duration'].set(result.duration)
        self._internal_metrics['last_collection_unix_seconds'].set(time.time())
        self._internal_metrics['uptime'].set(uptime)

    def _remove_stale_series(self) -> None:
        """Drop series not written since the previous cycle.

        Gauges with no series left are unregistered, so a later metric
        of the same name may come back with different labels.
        """
        with self._lock:
            for name, (gauge, _) in list(self._gauges.items()):
                written = self._written.get(name)
                if not written:
                    self.registry.unregister(gauge)
                    del self._gauges[name]
                    self._series.pop(name, None)
                    self.logger.verbose(f"Removed metric {name} with no samples this cycle")
                    continue

                for values in self._series.get(name, set()) - written:
                    gauge.remove(*values)
                    self.logger.verbose(f"Removed stale series {name}{list(values)}")
                self._series[name] = written
            self._written = {}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class CommandCollector:
    """Runs every configured command concurrently, once per cycle."""

    def __init__(
        self,
        commands: List[str],
        parser: MetricParser,
        logger: logging.Logger,
        registry: Optional[PortRegistry] = None,
        runner: Optional[Runner] = None,
        timeout: float = 5.0,
        command: str = ''
    ):
        self.registry = registry or PortRegistry()
        # Static pattern commands are resolved like any configured command
        self.commands = list(commands) + list(self.registry.static.commands)
        self.command = command
        self.parser = parser
        self.logger = logger
        self.runner = runner or CommandRunner(logger)
        self.resolver = CommandResolver(logger)
        self.timeout = timeout

    @classmethod
    def from_config(
        cls,
        config: ProgramConfig,
        logger: logging.Logger,
        runner: Optional[Runner] = None
    ) -> 'CommandCollector':
        """Build a collector with static port commands from configuration."""
        static = PortBinding()
        if config.pattern and config.listen_ports:
            static = generate_port_binding(config.pattern, config.listen_ports)
            logger.info(f"Generated {len(static)} static commands from pattern")

        return cls(
            commands=config.commands,
            parser=create_parser(config.data_format, config.metric_name),
            logger=logger,
            registry=PortRegistry(static),
            runner=runner,
            timeout=config.timeout,
            command=config.command
        )

    def _fold_legacy_command(self) -> None:
        """Merge the legacy single command into the command list once."""
        if self.command:
            self.commands.append(self.command)
            self.command = ''

    async def gather(self, acc: Accumulator) -> CollectionResult:
        """Run one collection cycle.

        Per-command failures are reported to acc and never raised.
        """
        start_time = time.monotonic()
        self._fold_legacy_command()

        commands, glob_errors = self.resolver.resolve(self.commands)

        # One dynamic snapshot serves resolution and tagging for the whole cycle
        dynamic = self.registry.read()
        dynamic_commands, dynamic_errors = self.resolver.resolve(dynamic.commands)

        result = CollectionResult()
        for error in glob_errors + dynamic_errors:
            acc.add_error(error)
            result.errors += 1

        all_commands = commands + dynamic_commands
        result.commands = len(all_commands)
        self.logger.debug(
            f"Collecting {len(commands)} static and {len(dynamic_commands)} "
            f"dynamic commands (generation {dynamic.generation})"
        )

        outcomes = await asyncio.gather(
            *(self.process_command(command, dynamic, acc) for command in all_commands),
            return_exceptions=True
        )

        for command, outcome in zip(all_commands, outcomes):
            if isinstance(outcome, BaseException):
                acc.add_error(CollectorError(f"unexpected failure for command '{command}': {outcome}"))
                metrics, errors = 0, 1
            else:
                metrics, errors = outcome
            result.metrics += metrics
            result.errors += errors
            if errors and not metrics:
                result.failed_commands += 1

        result.duration = time.monotonic() - start_time
        self.logger.info(
            f"Collection completed in {result.duration:.2f}s: {result.commands} commands, "
            f"{result.metrics} metrics, {result.errors} errors"
        )
        return result

    async def process_command(
        self,
        command: str,
        dynamic: PortBinding,
        acc: Accumulator
    ) -> Tuple[int, int]:
        """Run, parse, tag and forward a single command.

        Returns:
            Tuple of (metrics emitted, errors reported)
        """
        carries_state = self.parser.carries_exit_state

        try:
            output = await self.runner.run(command, self.timeout)
        except CommandParseError as e:
            acc.add_error(e)
            return 0, 1

        if output.error is not None and not carries_state:
            stderr = output.stderr.decode('utf-8', errors='replace')
            acc.add_error(ExecutionError(
                f"{output.error} for command '{command}': {stderr}",
                command,
                output.outcome,
                output.exit_code
            ))
            return 0, 1

        try:
            metrics = self.parser.parse(output.stdout)
        except ParseError as e:
            acc.add_error(ParseError(f"unable to parse output of command '{command}': {e}"))
            return 0, 1

        if carries_state:
            metrics, failure = self.parser.add_outcome_state(output.error, metrics)
            if failure is not None:
                self.logger.error(f"Failed to add outcome state for command '{command}': {failure}")

        for metric in metrics:
            tag_metric(metric, command, self.registry, dynamic)
            acc.add_metric(metric)

        self.logger.verbose(f"Command '{command}' produced {len(metrics)} metrics")
        return len(metrics), 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Write Listener and Health Check Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsListener:
    """Write listener and health check endpoint.

    Receives metrics in InfluxDB line protocol and hands them to the
    dynamic command updater, and reports service health.

    Endpoints:
        POST /write: Replace the dynamic command set from the body
        GET /health: Service health status
    """

    def __init__(
        self,
        config: ProgramConfig,
        collector: CommandCollector,
        updater: DynamicCommandUpdater,
        stats: CollectionStats,
        logger: logging.Logger
    ):
        self.config = config
        self.collector = collector
        self.updater = updater
        self.stats = stats
        self.logger = logger
        self.parser = InfluxParser()
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start listener server in a separate thread."""
        try:
            app = self.create_wsgi_app()
            self._server = make_server('', self.config.listener_port, app)
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="MetricsListener",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started listener on port {self.config.listener_port}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start listener: {e}")
            return False

    def stop(self) -> None:
        """Stop listener server."""

        if not self._server:
            return

        try:
            self.logger.info("Stopping listener")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning("Listener thread failed to stop")
        except Exception as e:
            self.logger.error(f"Error stopping listener: {e}")
        finally:
            self._server = None
            self._thread = None

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def create_wsgi_app(self):
        """Create WSGI application for writes and health checks."""
        json_headers = [('Content-Type', 'application/json')]

        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')
                method = environ.get('REQUEST_METHOD', 'GET')

                if path == '/write' and method == 'POST':
                    return self._handle_write(environ, start_response)

                if path in ['', '/health'] and method == 'GET':
                    return self._handle_health(start_response)

                start_response('404 Not Found', json_headers)
                return [self._create_error_response("error", "Not Found")]

            except Exception as e:
                self.logger.error(f"Listener error: {e}", exc_info=True)
                start_response('500 Internal Server Error', json_headers)
                return [self._create_error_response("error", str(e))]

        return app

    def _handle_write(self, environ, start_response):
        try:
            length = int(environ.get('CONTENT_LENGTH') or 0)
        except ValueError:
            length = 0
        body = environ['wsgi.input'].read(length) if length > 0 else b""

        try:
            metrics = self.parser.parse(body)
        except ParseError as e:
            self.logger.warning(f"Rejected write: {e}")
            start_response('400 Bad Request', [('Content-Type', 'application/json')])
            return [self._create_error_response("error", str(e))]

        self.updater.write(metrics)
        start_response('204 No Content', [])
        return [b""]

    def _handle_health(self, start_response):
        is_healthy = self.stats.is_healthy(self.config.failure_threshold)

        status = '200 OK' if is_healthy else '503 Service Unavailable'
        headers = [
            ('Content-Type', 'application/json'),
            ('Cache-Control', 'no-cache, no-store, must-revalidate')
        ]
        start_response(status, headers)

        dynamic = self.collector.registry.read()
        response = {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "service_start_datetime_utc": self.config.start_time.isoformat(),
                "last_collection_datetime_utc":
                    self.stats.last_collection_datetime.isoformat(),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "collection": {
                    "attempts": self.stats.attempts,
                    "successful": self.stats.successful,
                    "metrics": self.stats.metrics,
                    "errors": self.stats.errors,
                    "consecutive_failures": self.stats.consecutive_failures,
                    "failure_threshold": self.config.failure_threshold,
                    "timing": {
                        "last_collection_seconds": round(self.stats.last_collection_time, 3),
                        "average_collection_seconds": round(
                            self.stats.get_average_collection_time(), 3
                        )
                    }
                },
                "configuration": {
                    "poll_interval_seconds": self.config.poll_interval,
                    "timeout_seconds": self.config.timeout,
                    "data_format": self.config.data_format
                }
            },
            "commands": {
                "configured": list(self.collector.commands),
                "static": list(self.collector.registry.static.commands),
                "dynamic": list(dynamic.commands),
                "dynamic_generation": dynamic.generation
            }
        }
        return [json.dumps(response, indent=2).encode()]

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricsExporter:
    """Main service class for the command metrics exporter.

    Manages the lifecycle of the collection service, including server
    startup/shutdown, the collection loop, and the write listener.

    Attributes:
        source (ProgramSource): Program source information
        config (ProgramConfig): Program configuration
        logger (logging.Logger): Configured logger instance
        shutdown_event (asyncio.Event): Event for coordinating shutdown
        collector (CommandCollector): Command collection manager
        updater (DynamicCommandUpdater): Dynamic command set updater
        accumulator (PrometheusAccumulator): Prometheus metrics sink
        listener (MetricsListener): Write listener and health endpoint
    """

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig,
        logger: logging.Logger,
        runner: Optional[Runner] = None
    ):
        self.source = source
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._servers_started = False
        self._loop = None

        self.logger.info("Starting command metrics exporter initialization")

        self.collector = CommandCollector.from_config(config, logger, runner)
        self.updater = DynamicCommandUpdater(config.pattern, self.collector.registry, logger)
        self.accumulator = PrometheusAccumulator(logger, config.name_suffix)
        self.stats = CollectionStats()
        self.listener = MetricsListener(
            config, self.collector, self.updater, self.stats, logger
        )

        self.logger.info("Command metrics exporter initialized")

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [
            (self.config.metrics_port, "metrics"),
            (self.config.listener_port, "listener")
        ]

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        """Check if a specific port is available."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('', port))
            return True
        except OSError as e:
            self.logger.error(f"{name.title()} port {port} is not available: {e}")
            return False
        finally:
            sock.close()

    def _start_servers(self) -> bool:
        """Start metrics server and write listener."""
        try:
            start_http_server(self.config.metrics_port, registry=self.accumulator.registry)
            self.logger.info(f"Started metrics server on port {self.config.metrics_port}")
        except Exception as e:
            self.logger.error(f"Failed to start metrics server: {e}")
            return False

        if not self.listener.start():
            self.logger.info("Stopping metrics server (via process termination)")
            return False

        self._servers_started = True
        return True

    async def collect_once(self) -> CollectionResult:
        """Run a single collection cycle and record its statistics."""
        result = await self.collector.gather(self.accumulator)
        self.stats.record(result)
        self.accumulator.record_collection(
            result,
            len(self.collector.registry.read()),
            self.config.get_uptime_seconds()
        )
        if result.failed:
            self.logger.warning(
                f"All {result.commands} commands failed "
                f"({self.stats.consecutive_failures} failed collections in a row)"
            )
        return result

    def cleanup(self) -> None:
        """Stop the listener and notify systemd."""
        if not self._servers_started:
            return

        try:
            self.listener.stop()
            # prometheus_client server will stop with process
            self.logger.info("Metrics server will stop with process termination")
            notify_systemd(self.config, 'STOPPING')
        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")
        finally:
            self._servers_started = False

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            if not self._start_servers():
                return 1

            notify_systemd(self.config, 'READY')

            while not self.shutdown_event.is_set():
                loop_start = time.monotonic()
                try:
                    await self.collect_once()
                except Exception as e:
                    self.logger.error(f"Error in main loop: {e}")
                    self.logger.verbose("Exception details:", exc_info=True)

                elapsed = time.monotonic() - loop_start
                sleep_time = self.config.poll_interval - elapsed
                if sleep_time <= 0:
                    self.logger.warning(
                        f"Collection took longer than poll interval "
                        f"({elapsed:.2f}s > {self.config.poll_interval}s)"
                    )
                    continue

                try:
                    # Wait for shutdown event or timeout
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=sleep_time)
                except asyncio.TimeoutError:
                    continue

            self.logger.info("Shutdown event received, stopping service")
            return 0

        except asyncio.CancelledError:
            self.logger.warning("Service operation cancelled")
            raise

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            self.cleanup()
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main():
    """Entry point for the command metrics exporter service."""
    program_logger = None
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        config.initialize()
        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger

        exporter = MetricsExporter(source, config, logger)
        return await exporter.run()

    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

    finally:
        if program_logger:
            program_logger.close()

if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
