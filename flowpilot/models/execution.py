"""
Execution state: the per-run context, the log entries and the terminal result.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeStatus(str, Enum):
    """
    Node lifecycle within one run.

    pending → running → succeeded | failed | skipped
    """
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class ExecutionStatus(str, Enum):
    """
    Flow-level status.

    running → success | error | cancelled
    """
    RUNNING = 'running'
    SUCCESS = 'success'
    ERROR = 'error'
    CANCELLED = 'cancelled'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionContext:
    """
    Values visible to templates during one run.

    nodes: node id -> {'status': ..., 'result': ...} for every completed node
    vars: user variables written by setVariable nodes
    loop_scopes: stack of active loop iteration scopes ({{loop.*}})
    """
    nodes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    loop_scopes: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, node_id: str, status: NodeStatus, result: Any):
        self.nodes[node_id] = {'status': status.value, 'result': result}

    @property
    def loop(self) -> Optional[Dict[str, Any]]:
        return self.loop_scopes[-1] if self.loop_scopes else None

    def push_loop(self, scope: Dict[str, Any]):
        self.loop_scopes.append(scope)

    def pop_loop(self):
        if self.loop_scopes:
            self.loop_scopes.pop()


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One append-only log line of a run"""
    timestamp: datetime
    level: str
    message: str
    node_id: Optional[str] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        entry = {
            'timestamp': self.timestamp.isoformat(),
            'level': self.level,
            'nodeId': self.node_id,
            'message': self.message,
        }
        if self.data is not None:
            entry['data'] = self.data
        return entry


@dataclass
class NodeResult:
    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.finished_at:
            return int((self.finished_at - self.started_at).total_seconds() * 1000)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodeId': self.node_id,
            'type': self.node_type,
            'status': self.status.value,
            'result': self.result,
            'error': self.error,
            'errorType': self.error_type,
            'startedAt': self.started_at.isoformat() if self.started_at else None,
            'finishedAt': self.finished_at.isoformat() if self.finished_at else None,
            'durationMs': self.duration_ms,
        }


@dataclass
class ExecutionResult:
    """Terminal record handed back to the caller of execute_flow"""
    execution_id: str
    status: ExecutionStatus
    per_node_results: Dict[str, NodeResult] = field(default_factory=dict)
    logs: List[ExecutionLogEntry] = field(default_factory=list)
    error: Optional[str] = None
    flow_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'executionId': self.execution_id,
            'flowId': self.flow_id,
            'status': self.status.value,
            'error': self.error,
            'perNodeResults': {k: v.to_dict() for k, v in self.per_node_results.items()},
            'logs': [entry.to_dict() for entry in self.logs],
            'startedAt': self.started_at.isoformat() if self.started_at else None,
            'finishedAt': self.finished_at.isoformat() if self.finished_at else None,
        }
