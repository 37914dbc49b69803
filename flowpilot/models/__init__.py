from flowpilot.models.flow import (
    ConditionMode,
    ConditionOperator,
    DelayConfig,
    DelayType,
    DelayUnit,
    Flow,
    HttpConfig,
    IfElseConfig,
    LogConfig,
    LogLevel,
    LoopConfig,
    LoopType,
    Node,
    NodeType,
    SetVariableConfig,
    StopJobConfig,
    StopType,
    iter_nodes,
)
from flowpilot.models.connector import AuthType, Connector, OAuth2Type, format_timestamp, parse_timestamp
from flowpilot.models.execution import (
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionResult,
    ExecutionStatus,
    NodeResult,
    NodeStatus,
)

__all__ = [
    'AuthType',
    'ConditionMode',
    'ConditionOperator',
    'Connector',
    'DelayConfig',
    'DelayType',
    'DelayUnit',
    'ExecutionContext',
    'ExecutionLogEntry',
    'ExecutionResult',
    'ExecutionStatus',
    'Flow',
    'HttpConfig',
    'IfElseConfig',
    'LogConfig',
    'LogLevel',
    'LoopConfig',
    'LoopType',
    'Node',
    'NodeResult',
    'NodeStatus',
    'NodeType',
    'OAuth2Type',
    'SetVariableConfig',
    'StopJobConfig',
    'StopType',
    'format_timestamp',
    'iter_nodes',
    'parse_timestamp',
]
