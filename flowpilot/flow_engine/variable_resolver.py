"""
Variable Resolver - Resolves {{nodeId.result.field}} and {{vars.name}} references

Supports:
- {{vars.name}} - user variables written by setVariable nodes
- {{nodeId.result.field}} - output of a previously completed node
- {{nodeId.status}} - status of a previously completed node
- {{loop.item}} / {{loop.index}} ... - current loop iteration (inside loop bodies)
- Nested paths: {{fetch.result.body.contact.email}}
- Array access: {{fetch.result.body.items[0].name}}
- Length of arrays and strings: {{fetch.result.body.items.length}}

Resolution is single pass; placeholders are never expanded recursively.
"""

import json
import logging
import re
from typing import Any, List, Optional, Union

from flowpilot.exceptions import ResolutionWarning
from flowpilot.models.execution import ExecutionContext

logger = logging.getLogger(__name__)


class _Undefined:
    """Marker for a path that does not resolve (distinct from a JSON null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return 'UNDEFINED'


UNDEFINED = _Undefined()

PathToken = Union[str, int]


class VariableResolver:
    """
    Resolves variable references in node configuration.

    Examples:
        {{vars.customerId}} -> "12345"
        {{fetch.result.status}} -> 200
        {{fetch.result.body.items[0].name}} -> "Product A"
        "Hello {{vars.name}}" -> "Hello John"
    """

    # Pattern to match {{variable.path}}
    VARIABLE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')

    # One dot-separated segment: optional name followed by any number of [n]
    SEGMENT_PATTERN = re.compile(r'([^\[\]]*)((?:\[\d+\])*)')
    INDEX_PATTERN = re.compile(r'\[(\d+)\]')

    def __init__(self, context: Optional[ExecutionContext] = None, execution_logger=None):
        """
        Initialize resolver.

        Args:
            context: Execution context holding node results and variables
            execution_logger: Optional ExecutionLogger receiving warnings for unresolved paths
        """
        self.context = context or ExecutionContext()
        self.execution_logger = execution_logger
        self.warnings: List[ResolutionWarning] = []

    def resolve(self, value: Any, node_id: Optional[str] = None) -> Any:
        """
        Resolve variables in value (recursively handles dicts, lists, strings).

        Args:
            value: Value to resolve (can be string, dict, list, or primitive)
            node_id: Node doing the resolving, used to attribute warnings

        Returns:
            Value with all {{variables}} resolved. A string that is exactly one
            placeholder resolves to the referenced value with its type intact
            (UNDEFINED if it cannot be resolved). Inside dicts and lists an
            unresolved placeholder becomes None.
        """
        if isinstance(value, str):
            return self._resolve_string(value, node_id)
        elif isinstance(value, dict):
            return {k: self._nested(v, node_id) for k, v in value.items()}
        elif isinstance(value, list):
            return [self._nested(item, node_id) for item in value]
        else:
            return value

    def _nested(self, value: Any, node_id: Optional[str]) -> Any:
        resolved = self.resolve(value, node_id)
        return None if resolved is UNDEFINED else resolved

    def resolve_text(self, value: Any, node_id: Optional[str] = None) -> str:
        """Resolve and always return a string (UNDEFINED becomes '')."""
        return self.stringify(self.resolve(value, node_id))

    def _resolve_string(self, text: str, node_id: Optional[str]) -> Any:
        # Entire string is a single variable: keep the value's type
        match = self.VARIABLE_PATTERN.fullmatch(text)
        if match:
            return self._lookup(match.group(1), node_id)

        def replace_var(m):
            return self.stringify(self._lookup(m.group(1), node_id))

        return self.VARIABLE_PATTERN.sub(replace_var, text)

    def _lookup(self, raw_path: str, node_id: Optional[str]) -> Any:
        path = raw_path.strip()
        value, reason = self.resolve_path(path)
        if value is UNDEFINED:
            self._warn(path, reason, node_id)
        return value

    def resolve_path(self, path: str):
        """
        Resolve a path like "fetch.result.body.id" or "vars.name".

        Returns:
            Tuple of (value, reason). value is UNDEFINED when the path cannot be
            resolved, in which case reason explains why.
        """
        tokens = self.parse_path(path)
        if not tokens:
            return UNDEFINED, 'invalid path'

        source_name = tokens[0]
        if not isinstance(source_name, str):
            return UNDEFINED, 'path must start with a name'

        if source_name == 'vars':
            current = self.context.vars
        elif source_name == 'loop' and self.context.loop is not None:
            current = self.context.loop
        elif source_name in self.context.nodes:
            current = self.context.nodes[source_name]
        else:
            return UNDEFINED, f"unknown source '{source_name}'"

        for token in tokens[1:]:
            current = self._step(current, token)
            if current is UNDEFINED:
                return UNDEFINED, f"'{token}' not found"

        return current, None

    @staticmethod
    def _step(current: Any, token: PathToken) -> Any:
        if isinstance(token, int):
            if isinstance(current, list) and 0 <= token < len(current):
                return current[token]
            return UNDEFINED

        if isinstance(current, dict):
            if token in current:
                return current[token]
            if token == 'length':
                return len(current)
            return UNDEFINED

        if isinstance(current, (list, str)):
            if token == 'length':
                return len(current)
            if isinstance(current, list) and token.isdecimal():
                index = int(token)
                return current[index] if index < len(current) else UNDEFINED

        return UNDEFINED

    @classmethod
    def parse_path(cls, path: str) -> Optional[List[PathToken]]:
        """
        Split a path into name and index tokens.

        "items[0].name" -> ['items', 0, 'name']
        Returns None for malformed paths.
        """
        if not path:
            return None

        tokens: List[PathToken] = []
        for part in path.split('.'):
            match = cls.SEGMENT_PATTERN.fullmatch(part)
            if not match:
                return None
            name, indexes = match.group(1), match.group(2)
            if name:
                if '{' in name or '}' in name:
                    return None
                tokens.append(name)
            elif not indexes:
                return None
            tokens.extend(int(i) for i in cls.INDEX_PATTERN.findall(indexes))
        return tokens

    @staticmethod
    def stringify(value: Any) -> str:
        """Text used when a value is embedded inside a larger string."""
        if value is UNDEFINED or value is None:
            return ''
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)

    def _warn(self, path: str, reason: Optional[str], node_id: Optional[str]):
        warning = ResolutionWarning(path=path, reason=reason or 'not found')
        self.warnings.append(warning)
        logger.debug(f"Unresolved path {path}: {warning.reason}")
        if self.execution_logger is not None:
            self.execution_logger.warn(str(warning), node_id=node_id, data={'path': path})

    def find_references(self, value: Any) -> List[str]:
        """List every placeholder path referenced in value."""
        paths: List[str] = []

        def collect(val):
            if isinstance(val, str):
                paths.extend(m.group(1).strip() for m in self.VARIABLE_PATTERN.finditer(val))
            elif isinstance(val, dict):
                for v in val.values():
                    collect(v)
            elif isinstance(val, list):
                for item in val:
                    collect(item)

        collect(value)
        return paths

    def validate(self, value: Any) -> List[str]:
        """
        Validate that all variables in value can be resolved.

        Returns:
            List of unresolved variable paths (empty if all valid)
        """
        return [
            path for path in self.find_references(value)
            if self.resolve_path(path)[0] is UNDEFINED
        ]
