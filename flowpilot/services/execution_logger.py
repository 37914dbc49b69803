"""
ExecutionLogger - structured, append-only log of a single flow run.

Usage:
    log = ExecutionLogger(execution_id)
    log.info('Starting flow', node_id='fetch')
    log.warn('Unresolved variable {{vars.x}}', node_id='fetch', data={'path': 'vars.x'})
    log.ok('Flow completed')

Entries are kept in memory and returned in the ExecutionResult. Each entry is
also mirrored to the process logger.
"""

import logging
from typing import Any, List, Optional

from flowpilot.models.execution import ExecutionLogEntry, utcnow

logger = logging.getLogger(__name__)


class LogLevel:
    """Levels used in execution log entries"""
    DEBUG = 'debug'
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'
    SUCCESS = 'success'


_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.SUCCESS: logging.INFO,
}


class ExecutionLogger:

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self._entries: List[ExecutionLogEntry] = []

    def debug(self, message: str, node_id: Optional[str] = None, data: Any = None):
        self.log(LogLevel.DEBUG, message, node_id, data)

    def info(self, message: str, node_id: Optional[str] = None, data: Any = None):
        self.log(LogLevel.INFO, message, node_id, data)

    def warn(self, message: str, node_id: Optional[str] = None, data: Any = None):
        self.log(LogLevel.WARNING, message, node_id, data)

    def error(self, message: str, node_id: Optional[str] = None, data: Any = None):
        self.log(LogLevel.ERROR, message, node_id, data)

    def ok(self, message: str, node_id: Optional[str] = None, data: Any = None):
        self.log(LogLevel.SUCCESS, message, node_id, data)

    def log(self, level: str, message: str, node_id: Optional[str] = None, data: Any = None):
        """
        Append an entry.

        Args:
            level: One of LogLevel
            message: Human readable message
            node_id: Node the entry belongs to (None for flow-level entries)
            data: Optional structured payload
        """
        entry = ExecutionLogEntry(
            timestamp=utcnow(),
            level=level,
            message=message,
            node_id=node_id,
            data=data,
        )
        self._entries.append(entry)

        logger.log(
            _PY_LEVELS.get(level, logging.INFO),
            f"[{self.execution_id}]{f'[{node_id}]' if node_id else ''} {message}"
        )

    @property
    def entries(self) -> List[ExecutionLogEntry]:
        return list(self._entries)

    def __len__(self):
        return len(self._entries)
