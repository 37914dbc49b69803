"""
Flow Engine - interprets flows node by node

Resolves {{placeholders}} between nodes, applies branching, loops and stops,
and authenticates outbound calls through connectors.
"""

from flowpilot.flow_engine.executor import FlowExecutor
from flowpilot.flow_engine.variable_resolver import VariableResolver
from flowpilot.flow_engine.step_processor import StepProcessor
from flowpilot.flow_engine.path_enumerator import enumerate_paths, enumerate_node_variables

__all__ = [
    'FlowExecutor',
    'VariableResolver',
    'StepProcessor',
    'enumerate_paths',
    'enumerate_node_variables',
]
