"""
Logging setup for the LDAP control plane.

Three streams are configured here:

* the operational log (``control-plane.log`` plus optional console output),
* the ``security`` logger, used for access-gate refusals and config loads,
* the ``audit`` logger, an append-only file holding one JSON object per
  mutating call.

Every handler carries ``SensitiveDataFilter`` so bind credentials and SMTP
passwords never reach disk.
"""

import os
import re
import glob
import json
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

from ldap_control.models import AuditEvent

logger = logging.getLogger(__name__)

APP_LOG = 'control-plane.log'
AUDIT_LOG = 'audit.log'


class SensitiveDataFilter(logging.Filter):
    """Mask credential values in log records before they are emitted."""

    SENSITIVE_KEYWORDS = (
        'bind_password', 'smtp_password', 'userPassword', 'password', 'passwd',
        'pwd', 'secret', 'credential', 'token',
    )

    _keywords = '|'.join(SENSITIVE_KEYWORDS)
    PATTERNS = (
        # password=value
        (re.compile(rf'\b((?:{_keywords})\s*=\s*)[^\s,;}}\]]+', re.IGNORECASE), r'\1****'),
        # "password": "value"  /  'password': 'value'
        (re.compile(rf'''((["'])(?:{_keywords})\2\s*:\s*)(["'])[^"']*\3''', re.IGNORECASE), r'\1\3****\3'),
        # "password": value
        (re.compile(rf'''((["'])(?:{_keywords})\2\s*:\s*)(?!["'])[^,}}\s]+''', re.IGNORECASE), r'\1****'),
        (re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)\S+', re.IGNORECASE), r'\1****'),
    )

    @classmethod
    def scrub(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        args = getattr(record, 'args', None)
        if args:
            # Render first so credentials passed as %-args are masked too
            record.msg = record.getMessage()
            record.args = None
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Owns the handlers of the root and audit loggers.

    Configuration keys (all optional):
        level: root log level, default INFO
        log_dir: directory for log files, default ``logs``
        rotation: ``daily``/``midnight`` for timed rotation, anything else
            for a single growing file
        retention_days: rotated files kept, default 7
        console_output: also log to stderr, default True
        console_level: stderr threshold, default WARNING
    """

    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Install handlers. Later calls are ignored.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return

        config = config or {}
        level = str(config.get('level', 'INFO')).upper()
        rotation = str(config.get('rotation', 'daily')).lower()
        console_enabled = config.get('console_output', True)
        self.retention_days = int(config.get('retention_days', 7))
        self.log_dir = self._prepare_log_dir(config.get('log_dir', 'logs'))

        scrubber = SensitiveDataFilter()

        root = logging.getLogger()
        root.setLevel(getattr(logging, level, logging.INFO))
        root.handlers.clear()
        root.addHandler(self._file_handler(
            APP_LOG, rotation, scrubber,
            logging.Formatter('%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                              datefmt='%Y-%m-%d %H:%M:%S'),
            level=getattr(logging, level, logging.INFO)))

        if console_enabled:
            console = logging.StreamHandler()
            console.setLevel(getattr(logging, str(config.get('console_level', 'WARNING')).upper(), logging.WARNING))
            console.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S'))
            console.addFilter(scrubber)
            root.addHandler(console)

        audit = logging.getLogger(AuditLogger.LOGGER_NAME)
        audit.setLevel(logging.INFO)
        audit.handlers.clear()
        audit.addHandler(self._file_handler(AUDIT_LOG, rotation, scrubber, logging.Formatter('%(message)s')))
        # Audit lines go to audit.log only
        audit.propagate = False

        self._prune_rotated_files()
        self.configured = True

        logger.info(
            f"Logging configured: level={level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    @staticmethod
    def _prepare_log_dir(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
            return log_dir
        except OSError as e:
            print(f"Warning: Could not create log directory {log_dir} ({e}); logging to current directory")
            return '.'

    def _file_handler(self, filename: str, rotation: str, scrubber: logging.Filter,
                      formatter: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
        path = os.path.join(self.log_dir, filename)
        if rotation in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=path, when='midnight', interval=1,
                backupCount=self.retention_days, encoding='utf-8')
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(scrubber)
        return handler

    def _prune_rotated_files(self) -> None:
        """Delete rotated files older than the retention period. Live files are kept."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for path in self.get_log_files():
            if path.endswith('.log'):
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    print(f"Removed old log file: {path}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {path}: {e}")

    def get_log_files(self) -> List[str]:
        """Live and rotated operational and audit log files."""
        if not self.log_dir:
            return []
        files = []
        for name in (APP_LOG, AUDIT_LOG):
            files.extend(glob.glob(os.path.join(self.log_dir, f"{name}*")))
        return sorted(files)


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """
    Writes audit events and security notices.

    Audit events go to the ``audit`` logger as single-line JSON so an
    external sink can ship the file unchanged. Refusals and configuration
    loads go to the ``security`` logger.
    """

    LOGGER_NAME = 'audit'

    def __init__(self, audit: logging.Logger = None):
        self.logger = audit or logging.getLogger(self.LOGGER_NAME)
        self.security = logging.getLogger('security')
        self._sink_checked = False

    def _check_sink(self) -> None:
        """Warn once if audit events would be dropped."""
        self._sink_checked = True
        if not self.logger.hasHandlers() or not self.logger.isEnabledFor(logging.INFO):
            logger.warning(f"Audit logger '{self.logger.name}' has no handler accepting INFO records; "
                           f"audit events will be lost until setup_logging() is called")

    def emit(self, event: AuditEvent) -> None:
        if not self._sink_checked:
            self._check_sink()
        self.logger.info(json.dumps(event.to_dict(), sort_keys=True))

    def log_access_denied(self, principal: str, cluster: str, operation: str, reason: str = ''):
        detail = f" reason={reason}" if reason else ''
        self.security.warning(f"Access denied: principal={principal} cluster={cluster} "
                              f"operation={operation}{detail}")

    def log_configuration_access(self, config_file: str):
        self.security.info(f"Configuration loaded: {config_file}")


# Global audit logger instance
audit_logger = AuditLogger()
