"""
Flow and node definitions.

A flow is an ordered list of typed nodes. Each node type has its own config
dataclass; configs are validated when the flow is loaded so handlers never
poke at raw dicts at run time.

Wire format (camelCase, as stored by the editor):
{
    "id": "flow-1",
    "name": "Sync contacts",
    "ownerId": "user-1",
    "nodes": [
        {"id": "fetch", "type": "http", "config": {"endpoint": "/contacts", "connector": "crm"}},
        {"id": "each", "type": "loop", "config": {
            "loopType": "forEach",
            "arrayPath": "{{fetch.result.body.items}}",
            "nodes": [...]
        }}
    ]
}
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from flowpilot.exceptions import FlowValidationError


class NodeType(str, Enum):
    """Node types understood by the executor"""
    HTTP = 'http'
    IF_ELSE = 'ifElse'
    LOOP = 'loop'
    SET_VARIABLE = 'setVariable'
    LOG = 'log'
    DELAY = 'delay'
    STOP_JOB = 'stopJob'


class ConditionOperator(str, Enum):
    """Operators for simple-mode ifElse nodes"""
    EQUALS = 'equals'
    NOT_EQUALS = 'notEquals'
    CONTAINS = 'contains'
    NOT_CONTAINS = 'notContains'
    GREATER_THAN = 'greaterThan'
    LESS_THAN = 'lessThan'
    STARTS_WITH = 'startsWith'
    ENDS_WITH = 'endsWith'
    IS_EMPTY = 'isEmpty'
    IS_NOT_EMPTY = 'isNotEmpty'
    EXISTS = 'exists'


class ConditionMode(str, Enum):
    SIMPLE = 'simple'
    CODE = 'code'


class LoopType(str, Enum):
    FOR_EACH = 'forEach'
    WHILE = 'while'


class LogLevel(str, Enum):
    DEBUG = 'debug'
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'


class DelayType(str, Enum):
    DURATION = 'duration'
    CRON = 'cron'


class DelayUnit(str, Enum):
    MILLISECONDS = 'milliseconds'
    SECONDS = 'seconds'
    MINUTES = 'minutes'
    HOURS = 'hours'


class StopType(str, Enum):
    SUCCESS = 'success'
    ERROR = 'error'
    CANCEL = 'cancel'


HTTP_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')

# Aliases the editor has written over time
_LOG_LEVEL_ALIASES = {'warn': 'warning'}
_DELAY_TYPE_ALIASES = {'seconds': 'duration', 'time': 'duration'}
_DELAY_UNIT_ALIASES = {'ms': 'milliseconds', 's': 'seconds', 'm': 'minutes', 'h': 'hours'}


def _enum_value(enum_cls, raw: Any, field_name: str, node_id: str, default=None, aliases=None):
    if raw is None or raw == '':
        if default is None:
            raise FlowValidationError(f"Missing required field: {field_name}", node_id)
        return default
    if aliases and isinstance(raw, str):
        raw = aliases.get(raw, raw)
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ', '.join(e.value for e in enum_cls)
        raise FlowValidationError(
            f"Invalid value for {field_name}: {raw!r} (expected one of: {allowed})",
            node_id
        )


def _require_str(data: Dict[str, Any], key: str, node_id: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise FlowValidationError(f"Missing required field: {key}", node_id)
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


def _normalize_pairs(value: Any, field_name: str, node_id: str) -> Dict[str, Any]:
    """Accept either a mapping or the editor's [{key, value}] rows."""
    if value is None or value == '':
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        pairs = {}
        for row in value:
            if not isinstance(row, dict):
                raise FlowValidationError(f"Invalid entry in {field_name}: {row!r}", node_id)
            key = row.get('key')
            if key:
                pairs[str(key)] = row.get('value', '')
        return pairs
    raise FlowValidationError(f"{field_name} must be an object or a list of key/value rows", node_id)


@dataclass(frozen=True)
class HttpConfig:
    endpoint: str
    method: str = 'GET'
    body: Any = None
    query_params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, Any] = field(default_factory=dict)
    connector: Optional[str] = None
    fail_on_error: bool = True
    parse_json: bool = True
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'HttpConfig':
        method = str(data.get('method') or 'GET').upper()
        if method not in HTTP_METHODS:
            raise FlowValidationError(f"Unsupported HTTP method: {method}", node_id)

        timeout = data.get('timeout')
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                raise FlowValidationError(f"Invalid timeout: {timeout!r}", node_id)
            if timeout <= 0:
                raise FlowValidationError("timeout must be positive", node_id)

        return cls(
            endpoint=_require_str(data, 'endpoint', node_id),
            method=method,
            body=data.get('body'),
            query_params=_normalize_pairs(data.get('queryParams'), 'queryParams', node_id),
            headers=_normalize_pairs(data.get('headers'), 'headers', node_id),
            connector=_optional_str(data.get('connector')),
            fail_on_error=data.get('failOnError') is not False,
            parse_json=data.get('parseJson') is not False,
            timeout=timeout,
        )


@dataclass(frozen=True)
class IfElseConfig:
    mode: ConditionMode = ConditionMode.SIMPLE
    variable: Optional[str] = None
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    condition: Optional[str] = None
    true_next: Optional[str] = None
    false_next: Optional[str] = None
    merge_next: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'IfElseConfig':
        raw_mode = data.get('mode')
        if not raw_mode:
            raw_mode = 'code' if data.get('condition') and not data.get('variable') else 'simple'
        mode = _enum_value(ConditionMode, raw_mode, 'mode', node_id)

        if mode == ConditionMode.CODE:
            condition = _require_str(data, 'condition', node_id)
            variable = None
        else:
            condition = None
            variable = _require_str(data, 'variable', node_id)

        return cls(
            mode=mode,
            variable=variable,
            operator=_enum_value(
                ConditionOperator, data.get('operator'), 'operator', node_id,
                default=ConditionOperator.EQUALS
            ),
            value=data.get('value'),
            condition=condition,
            true_next=_optional_str(data.get('trueNext')),
            false_next=_optional_str(data.get('falseNext')),
            merge_next=_optional_str(data.get('mergeNext')),
        )


@dataclass(frozen=True)
class LoopConfig:
    loop_type: LoopType = LoopType.FOR_EACH
    array_path: Optional[str] = None
    batch_size: Any = None
    condition_expression: Optional[str] = None
    max_iterations: Optional[int] = None
    nodes: List['Node'] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'LoopConfig':
        loop_type = _enum_value(LoopType, data.get('loopType'), 'loopType', node_id, default=LoopType.FOR_EACH)

        array_path = None
        condition_expression = None
        if loop_type == LoopType.FOR_EACH:
            array_path = _require_str(data, 'arrayPath', node_id)
        else:
            condition_expression = _require_str(data, 'conditionExpression', node_id)

        max_iterations = data.get('maxIterations')
        if max_iterations is not None:
            if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations <= 0:
                raise FlowValidationError(f"Invalid maxIterations: {max_iterations!r}", node_id)

        children = data.get('nodes') or []
        if not isinstance(children, list):
            raise FlowValidationError("Loop nodes must be a list", node_id)

        return cls(
            loop_type=loop_type,
            array_path=array_path,
            batch_size=data.get('batchSize'),
            condition_expression=condition_expression,
            max_iterations=max_iterations,
            nodes=[Node.from_dict(child) for child in children],
        )


@dataclass(frozen=True)
class SetVariableConfig:
    variable_key: str
    variable_value: Any = None
    use_transform: bool = False
    source_path: Optional[str] = None
    transform_script: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'SetVariableConfig':
        use_transform = bool(data.get('useTransform'))
        transform_script = data.get('transformScript')
        if use_transform and not (isinstance(transform_script, str) and transform_script.strip()):
            raise FlowValidationError("Missing required field: transformScript", node_id)

        return cls(
            variable_key=_require_str(data, 'variableKey', node_id).strip(),
            variable_value=data.get('variableValue'),
            use_transform=use_transform,
            source_path=_optional_str(data.get('sourcePath')),
            transform_script=transform_script if use_transform else None,
        )


@dataclass(frozen=True)
class LogConfig:
    message: str = ''
    log_level: LogLevel = LogLevel.INFO

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'LogConfig':
        return cls(
            message=str(data.get('message') or ''),
            log_level=_enum_value(
                LogLevel, data.get('logLevel'), 'logLevel', node_id,
                default=LogLevel.INFO, aliases=_LOG_LEVEL_ALIASES
            ),
        )


@dataclass(frozen=True)
class DelayConfig:
    delay_type: DelayType = DelayType.DURATION
    delay_amount: Any = 0
    delay_unit: DelayUnit = DelayUnit.SECONDS
    cron_expression: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'DelayConfig':
        delay_type = _enum_value(
            DelayType, data.get('delayType'), 'delayType', node_id,
            default=DelayType.DURATION, aliases=_DELAY_TYPE_ALIASES
        )
        cron_expression = None
        if delay_type == DelayType.CRON:
            cron_expression = _require_str(data, 'cronExpression', node_id).strip()

        return cls(
            delay_type=delay_type,
            delay_amount=data.get('delayAmount') or 0,
            delay_unit=_enum_value(
                DelayUnit, data.get('delayUnit'), 'delayUnit', node_id,
                default=DelayUnit.SECONDS, aliases=_DELAY_UNIT_ALIASES
            ),
            cron_expression=cron_expression,
        )


@dataclass(frozen=True)
class StopJobConfig:
    stop_type: StopType = StopType.SUCCESS
    error_message: Optional[str] = None
    error_variable: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: str) -> 'StopJobConfig':
        return cls(
            stop_type=_enum_value(StopType, data.get('stopType'), 'stopType', node_id, default=StopType.SUCCESS),
            error_message=_optional_str(data.get('errorMessage')),
            error_variable=_optional_str(data.get('errorVariable')),
        )


NodeConfig = Union[
    HttpConfig, IfElseConfig, LoopConfig, SetVariableConfig, LogConfig, DelayConfig, StopJobConfig
]

CONFIG_TYPES = {
    NodeType.HTTP: HttpConfig,
    NodeType.IF_ELSE: IfElseConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.SET_VARIABLE: SetVariableConfig,
    NodeType.LOG: LogConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.STOP_JOB: StopJobConfig,
}


@dataclass(frozen=True)
class Node:
    """A single typed step of a flow"""
    id: str
    type: NodeType
    config: NodeConfig
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Node':
        if not isinstance(data, dict):
            raise FlowValidationError(f"Node definition must be an object, got {type(data).__name__}")

        node_id = data.get('id')
        if not isinstance(node_id, str) or not node_id.strip():
            raise FlowValidationError("Node is missing an id")

        # 'httpRequest' is the editor's palette name for http nodes
        raw_type = data.get('type')
        if raw_type == 'httpRequest':
            raw_type = NodeType.HTTP.value
        node_type = _enum_value(NodeType, raw_type, 'type', node_id)

        raw_config = data.get('config')
        if raw_config is None:
            raw_config = data.get('data') or {}
        if not isinstance(raw_config, dict):
            raise FlowValidationError("Node config must be an object", node_id)

        config = CONFIG_TYPES[node_type].from_dict(raw_config, node_id)
        label = data.get('label') or raw_config.get('label')

        return cls(id=node_id, type=node_type, config=config, label=label)

    @property
    def children(self) -> List['Node']:
        if isinstance(self.config, LoopConfig):
            return self.config.nodes
        return []


def iter_nodes(nodes: List[Node]) -> Iterator[Node]:
    """Walk nodes depth-first, including loop bodies."""
    for node in nodes:
        yield node
        yield from iter_nodes(node.children)


@dataclass(frozen=True)
class Flow:
    """Ordered list of nodes plus metadata"""
    id: Optional[str]
    name: str
    nodes: List[Node]
    owner_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Flow':
        if not isinstance(data, dict):
            raise FlowValidationError("Flow definition must be an object")

        raw_nodes = data.get('nodes') or []
        if not isinstance(raw_nodes, list):
            raise FlowValidationError("Flow nodes must be a list")

        flow = cls(
            id=_optional_str(data.get('id')),
            name=str(data.get('name') or 'Untitled flow'),
            nodes=[Node.from_dict(n) for n in raw_nodes],
            owner_id=_optional_str(data.get('ownerId')),
        )
        flow.validate()
        return flow

    def validate(self):
        seen = set()
        for node in iter_nodes(self.nodes):
            if node.id in seen:
                raise FlowValidationError(f"Duplicate node id: {node.id}", node.id)
            seen.add(node.id)

        known = seen | {None}
        for node in iter_nodes(self.nodes):
            if isinstance(node.config, IfElseConfig):
                for target in (node.config.true_next, node.config.false_next, node.config.merge_next):
                    if target not in known:
                        raise FlowValidationError(f"Branch target not found: {target}", node.id)

    def snapshot(self) -> 'Flow':
        """Deep copy used by a running execution so later edits cannot leak in."""
        return copy.deepcopy(self)
