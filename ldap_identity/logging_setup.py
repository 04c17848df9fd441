"""
Logging setup for LDAP Identity Manager.

The command-line tool logs to the console at a configurable threshold and,
when a log directory is configured, to identity.log with daily rotation.
Credentials are scrubbed on every handler. Directory changes and binds go
through the 'audit' logger.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List, Optional, Pattern
from datetime import datetime, timedelta

LOG_FILE_NAME = 'identity.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class SensitiveDataFilter(logging.Filter):
    """Masks passwords and similar values in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'userPassword', 'secret', 'credential',
        'pass', 'pwd', 'sasl_credentials'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.patterns: List[Pattern] = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # keyword=value
            self.patterns.append(re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE))
            # 'keyword': 'value' in dict reprs and JSON
            self.patterns.append(re.compile(rf'([\'"]{keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE))

    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern in self.patterns:
                msg = pattern.sub(r'\1****\2', msg)
            record.msg = msg
        return True


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """
    Configures the root logger once per process.

    reset() allows another setup, which the CLI runner uses so repeated
    runs in one process pick up their own configuration.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Install handlers on the root logger.

        Args:
            config: The 'logging' configuration section (level, log_dir,
                rotation, retention_days, console_output, console_level)
        """
        if self.configured:
            return

        settings = config or {}
        level = _level(settings.get('level', 'INFO'), logging.INFO)
        self.log_dir = settings.get('log_dir')
        self.retention_days = settings.get('retention_days', 7)
        console_output = settings.get('console_output', True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        scrubber = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(settings.get('rotation', 'daily'))
            self._install(root_logger, file_handler, level,
                          logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'), scrubber)
            self._cleanup_old_logs()

        if console_output:
            console_level = _level(settings.get('console_level', 'WARNING'), logging.WARNING)
            self._install(root_logger, logging.StreamHandler(), console_level,
                          logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'), scrubber)

        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_output}"
        )

    @staticmethod
    def _install(root_logger: logging.Logger, handler: logging.Handler, level: int,
                 formatter: logging.Formatter, scrubber: logging.Filter):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(scrubber)
        root_logger.addHandler(handler)

    def reset(self) -> None:
        self.configured = False

    def _ensure_log_directory(self) -> None:
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {self.log_dir}: {e}")
            print("Falling back to current directory for logs")
            self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Build the identity.log handler.

        Args:
            rotation: 'daily' or 'midnight' rotate at midnight and keep
                retention_days backups; anything else writes a plain file
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() not in ('daily', 'midnight'):
            return logging.FileHandler(log_file, encoding='utf-8')

        handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when='midnight',
            interval=1,
            backupCount=self.retention_days,
            encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def _cleanup_old_logs(self) -> None:
        """Delete rotated identity.log files past the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for path in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
            except OSError as e:
                print(f"Warning: Could not remove old log file {path}: {e}")


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class AuditLogger:
    """Writes bind attempts and identity changes to the 'audit' logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    @staticmethod
    def _status(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_bind_attempt(self, server: str, identity: str, success: bool):
        self.logger.info(f"Bind {self._status(success)}: server={server} identity={identity}")

    def log_identity_change(self, operation: str, target: str, success: bool, detail: str = ""):
        """Log a directory change; failures are logged at WARNING."""
        message = f"Identity change {self._status(success)}: {operation} target={target}"
        if detail:
            message += f" - {detail}"
        self.logger.log(logging.INFO if success else logging.WARNING, message)


audit_logger = AuditLogger()
