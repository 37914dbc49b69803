"""
Flowpilot exceptions.

Every failure a node can hit maps onto one of these classes. The executor
catches them, writes them to the execution log and then decides whether the
flow continues.
"""

from dataclasses import dataclass
from typing import Optional


class FlowExecutionError(Exception):
    """Base class for flow execution errors"""
    pass


class FlowValidationError(FlowExecutionError):
    """Raised when a flow or node definition is rejected at load time"""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)

    def __str__(self):
        if self.node_id:
            return f"[{self.node_id}] {self.message}"
        return self.message


class AuthenticationError(FlowExecutionError):
    """Missing or invalid connector credentials. Never retried within a node attempt."""

    AUTHORIZATION_REQUIRED = 'authorization_required'

    def __init__(self, connector_name: str, reason: str, code: Optional[str] = None):
        self.connector_name = connector_name
        self.reason = reason
        self.code = code
        super().__init__(reason)

    @property
    def authorization_required(self) -> bool:
        return self.code == self.AUTHORIZATION_REQUIRED

    def __str__(self):
        return f"Authentication failed for connector '{self.connector_name}': {self.reason}"


class TransportError(FlowExecutionError):
    """Network error, timeout or non-2xx response on an outbound call"""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(message)

    def __str__(self):
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


class ScriptError(FlowExecutionError):
    """A transform script or condition expression failed"""
    pass


class LoopLimitError(FlowExecutionError):
    """A while loop ran past its iteration cap"""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"loop limit exceeded ({limit} iterations)")


class RefreshError(FlowExecutionError):
    """OAuth2 token refresh failed for one connector"""

    def __init__(self, connector_id: str, reason: str):
        self.connector_id = connector_id
        self.reason = reason
        super().__init__(reason)

    def __str__(self):
        return f"Token refresh failed for connector {self.connector_id}: {self.reason}"


class ConcurrentExecutionError(FlowExecutionError):
    """Raised when starting an execution whose id is already running"""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} is already running")


@dataclass(frozen=True)
class ResolutionWarning:
    """
    Record of a template path that could not be resolved.

    Not raised: the resolver substitutes an empty value and logs one of these.
    """
    path: str
    reason: str

    def __str__(self):
        return f"Unresolved variable {{{{{self.path}}}}}: {self.reason}"
