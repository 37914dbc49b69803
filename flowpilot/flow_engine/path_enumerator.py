"""
Path Enumerator - lists the variable paths available inside a node result.

Used by the editor to suggest {{nodeId.result.<path>}} placeholders and to
check that a node's output can be referenced. Every path produced here is
resolvable by VariableResolver against the same value.

Traversal uses an explicit frontier instead of recursion so the depth and
width caps are part of the loop structure:
- objects: one path per scalar property, one path per nested object/array
- arrays: the array, <path>.length, <path>[0] and, when the first element is
  an object, that element's paths (arrays are sampled, never expanded)
"""

from collections import deque
from typing import Any, Deque, Dict, List, Tuple

DEFAULT_MAX_DEPTH = 4
DEFAULT_MAX_PROPERTIES = 15
DEFAULT_MAX_PATHS = 25

# Keys that cannot be written in the placeholder grammar are skipped
_UNSAFE_KEY_CHARS = set('.[]{}')

_Frame = Tuple[Any, str, int]


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _is_safe_key(key: Any) -> bool:
    if not isinstance(key, str) or not key:
        return False
    if key != key.strip():
        return False
    return not (_UNSAFE_KEY_CHARS & set(key))


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def enumerate_paths(
    value: Any,
    prefix: str = '',
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_properties: int = DEFAULT_MAX_PROPERTIES,
    max_paths: int = DEFAULT_MAX_PATHS,
) -> List[str]:
    """
    Enumerate dot/bracket paths into value.

    Args:
        value: Any JSON-like value
        prefix: Path to prepend to every result
        max_depth: Number of nesting levels expanded
        max_properties: Properties considered per object
        max_paths: Maximum number of paths returned

    Returns:
        Deduplicated paths in traversal order. Empty for scalars and None.
    """
    if not isinstance(value, (dict, list)):
        return []

    found: Dict[str, None] = {}

    def emit(path: str) -> bool:
        if path:
            found.setdefault(path, None)
        return len(found) < max_paths

    frontier: Deque[_Frame] = deque([(value, prefix, 0)])

    while frontier and len(found) < max_paths:
        current, path, depth = frontier.popleft()

        if not emit(path):
            break

        if isinstance(current, list):
            if not emit(_join(path, 'length')):
                break
            if not current:
                continue
            first_path = f"{path}[0]"
            if not emit(first_path):
                break
            if isinstance(current[0], dict) and depth + 1 < max_depth:
                frontier.append((current[0], first_path, depth + 1))
            continue

        # dict
        keys = [k for k in current.keys() if _is_safe_key(k)][:max_properties]
        for key in keys:
            child = current[key]
            child_path = _join(path, key)
            if _is_scalar(child):
                if not emit(child_path):
                    break
            elif isinstance(child, (dict, list)) and depth + 1 < max_depth:
                frontier.append((child, child_path, depth + 1))

    return list(found)[:max_paths]


def enumerate_node_variables(node_id: str, result: Any, **limits) -> List[str]:
    """
    Placeholder strings for a node's result, ready to paste into a config field.

    enumerate_node_variables('fetch', {'status': 200})
        -> ['{{fetch.result.status}}']
    """
    return [
        f"{{{{{node_id}.result{'' if path.startswith('[') else '.'}{path}}}}}"
        for path in enumerate_paths(result, **limits)
    ]
