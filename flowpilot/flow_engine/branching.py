"""
Branching Logic - Handle ifElse nodes in flows

Supports:
- Simple conditions (equals, not equals, contains, greater than, ...)
- Code conditions ({{fetch.result.status}} === 200 && {{vars.retry}} < 3)
- Branch skipping on a linear node list (trueNext / falseNext / mergeNext)
"""

import logging
from typing import Any, Dict, List, Optional, Set

from flowpilot.flow_engine.script_evaluator import evaluate_condition
from flowpilot.flow_engine.variable_resolver import UNDEFINED, VariableResolver
from flowpilot.models.flow import ConditionMode, ConditionOperator, IfElseConfig, Node

logger = logging.getLogger(__name__)


class BranchingHandler:
    """
    Handles conditional branching logic in flows.

    ifElse definition example:
    {
        "id": "checkStatus",
        "type": "ifElse",
        "config": {
            "variable": "{{fetch.result.status}}",
            "operator": "equals",
            "value": 200,
            "trueNext": "saveContact",
            "falseNext": "logFailure",
            "mergeNext": "done"
        }
    }

    The nodes from trueNext up to falseNext form the true branch, the nodes
    from falseNext up to mergeNext form the false branch. The branch that is
    not taken is skipped; execution reconverges at mergeNext.
    """

    def __init__(self, resolver: VariableResolver):
        """
        Initialize branching handler.

        Args:
            resolver: Variable resolver for evaluating conditions
        """
        self.resolver = resolver

    def evaluate(self, config: IfElseConfig, node_id: Optional[str] = None) -> bool:
        """
        Evaluate an ifElse condition.

        Raises:
            ScriptError: If a code-mode expression is invalid or fails
        """
        if config.mode == ConditionMode.CODE:
            outcome = evaluate_condition(config.condition, self.resolver, node_id)
            logger.debug(f"Code condition {config.condition!r} -> {outcome}")
            return outcome

        variable = config.variable
        if '{{' not in variable:
            # The editor also stores bare paths like "fetch.result.status"
            variable = f"{{{{{variable.strip()}}}}}"

        actual = self.resolver.resolve(variable, node_id)
        expected = self.resolver.resolve(config.value, node_id)
        outcome = self._check_condition(actual, config.operator, expected)
        logger.debug(f"Condition {variable} {config.operator.value} {expected!r} -> {outcome}")
        return outcome

    def _check_condition(
        self,
        actual: Any,
        operator: ConditionOperator,
        expected: Any
    ) -> bool:
        """
        Check a simple condition.

        Args:
            actual: Actual value from flow data
            operator: Condition operator
            expected: Expected value

        Returns:
            True if condition matches
        """
        if expected is UNDEFINED:
            expected = None

        if operator == ConditionOperator.EXISTS:
            return actual is not UNDEFINED and actual is not None

        if operator == ConditionOperator.IS_EMPTY:
            return self._is_empty(actual)

        if operator == ConditionOperator.IS_NOT_EMPTY:
            return not self._is_empty(actual)

        if actual is UNDEFINED:
            actual = None

        try:
            if operator == ConditionOperator.EQUALS:
                return self._equals(actual, expected)

            elif operator == ConditionOperator.NOT_EQUALS:
                return not self._equals(actual, expected)

            elif operator == ConditionOperator.CONTAINS:
                return self._contains(actual, expected)

            elif operator == ConditionOperator.NOT_CONTAINS:
                return not self._contains(actual, expected)

            elif operator == ConditionOperator.STARTS_WITH:
                return self._text(actual).startswith(self._text(expected))

            elif operator == ConditionOperator.ENDS_WITH:
                return self._text(actual).endswith(self._text(expected))

            elif operator == ConditionOperator.GREATER_THAN:
                return float(actual) > float(expected)

            elif operator == ConditionOperator.LESS_THAN:
                return float(actual) < float(expected)

            else:
                logger.warning(f"Unknown operator: {operator}")
                return False

        except (ValueError, TypeError) as e:
            logger.warning(f"Error evaluating condition: {e}")
            return False

    @staticmethod
    def _text(value: Any) -> str:
        return VariableResolver.stringify(value)

    @classmethod
    def _equals(cls, actual: Any, expected: Any) -> bool:
        if isinstance(actual, bool) != isinstance(expected, bool):
            # bool is an int: True must not equal 1
            return cls._text(actual) == cls._text(expected)
        if actual == expected:
            return True
        # Values typed in the editor arrive as strings: compare as numbers, then as text
        try:
            if not isinstance(actual, bool) and not isinstance(expected, bool):
                return float(actual) == float(expected)
        except (TypeError, ValueError):
            pass
        return cls._text(actual) == cls._text(expected)

    @classmethod
    def _contains(cls, actual: Any, expected: Any) -> bool:
        if isinstance(actual, list):
            return any(cls._equals(item, expected) for item in actual)
        if isinstance(actual, dict):
            return cls._text(expected) in actual
        return cls._text(expected) in cls._text(actual)

    @staticmethod
    def _is_empty(value: Any) -> bool:
        if value is UNDEFINED or value is None:
            return True
        if isinstance(value, (str, list, dict)):
            return len(value) == 0
        return False

    def branch_segments(
        self,
        nodes: List[Node],
        if_index: int,
        config: IfElseConfig
    ) -> Dict[bool, Set[str]]:
        """
        Node ids of the true and false branches of an ifElse node.

        A branch starts at its trueNext / falseNext id and extends up to (not
        including) the nearest of the other branch's start, mergeNext, or the
        end of the list. When only falseNext is set, the nodes right after the
        ifElse node form the true branch.

        Args:
            nodes: The node list containing the ifElse node
            if_index: Position of the ifElse node in nodes

        Returns:
            {True: ids, False: ids}, a branch without a start is left out.
            Only nodes after the ifElse node in the same list are included.
        """
        positions = {node.id: i for i, node in enumerate(nodes) if i > if_index}

        starts: Dict[bool, int] = {}
        if config.true_next in positions:
            starts[True] = positions[config.true_next]
        elif config.true_next is None and config.false_next in positions:
            starts[True] = if_index + 1
        if config.false_next in positions:
            starts[False] = positions[config.false_next]

        segments: Dict[bool, Set[str]] = {}
        for branch, start in starts.items():
            boundaries = [len(nodes)]
            for marker in (starts.get(not branch), positions.get(config.merge_next)):
                if marker is not None and marker > start:
                    boundaries.append(marker)
            segments[branch] = {node.id for node in nodes[start:min(boundaries)]}

        return segments

    def skipped_node_ids(
        self,
        nodes: List[Node],
        if_index: int,
        config: IfElseConfig,
        outcome: bool
    ) -> Set[str]:
        """
        Ids of the nodes on the branch that was not taken.

        Args:
            nodes: The node list containing the ifElse node
            if_index: Position of the ifElse node in nodes
            config: The ifElse config
            outcome: Result of evaluate()

        Returns:
            Set of node ids to mark skipped
        """
        return self.branch_segments(nodes, if_index, config).get(not outcome, set())

    def failed_node_ids(self, nodes: List[Node], if_index: int, config: IfElseConfig) -> Set[str]:
        """Ids to skip when the condition itself failed: neither branch runs."""
        skipped: Set[str] = set()
        for segment in self.branch_segments(nodes, if_index, config).values():
            skipped |= segment
        return skipped
