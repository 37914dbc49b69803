"""
Loop Handler - Handle iteration in flows

Supports:
- forEach over an array resolved from a previous node or variable
- Batching (batchSize = N yields chunks of N items, 0 yields one batch)
- while loops with a hard iteration cap
- Iteration scope exposed to nested nodes as {{loop.*}}
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flowpilot.exceptions import LoopLimitError
from flowpilot.flow_engine.script_evaluator import evaluate_condition
from flowpilot.flow_engine.variable_resolver import UNDEFINED, VariableResolver
from flowpilot.models.connector import format_timestamp
from flowpilot.models.flow import LoopConfig

logger = logging.getLogger(__name__)


class LoopHandler:
    """
    Handles loop/iteration logic in flows.

    Loop definition example:
    {
        "id": "eachContact",
        "type": "loop",
        "config": {
            "loopType": "forEach",
            "arrayPath": "{{fetch.result.body.contacts}}",
            "batchSize": 0,
            "nodes": [
                {
                    "id": "upsert",
                    "type": "http",
                    "config": {
                        "method": "POST",
                        "endpoint": "/contacts",
                        "body": {"email": "{{loop.item.email}}"}
                    }
                }
            ]
        }
    }
    """

    MAX_ITERATIONS = 10000  # Safety limit for while loops

    def __init__(self, resolver: VariableResolver, max_iterations: Optional[int] = None):
        """
        Initialize loop handler.

        Args:
            resolver: Variable resolver
            max_iterations: Default cap for while loops without maxIterations
        """
        self.resolver = resolver
        self.max_iterations = max_iterations or self.MAX_ITERATIONS

    def get_loop_items(self, config: LoopConfig, node_id: Optional[str] = None) -> List[Any]:
        """
        Resolve the array a forEach loop iterates over.

        Returns:
            List of items, empty when the path does not resolve to an array
        """
        items = self.resolver.resolve(config.array_path, node_id)

        if items is UNDEFINED or items is None:
            logger.warning(f"Loop array {config.array_path} did not resolve")
            return []

        if not isinstance(items, list):
            logger.warning(f"Loop items is not a list: {type(items).__name__}")
            return []

        return items

    def get_batch_size(self, config: LoopConfig, node_id: Optional[str] = None) -> Optional[int]:
        """
        Resolved batch size.

        Returns:
            None when no batch size is set (one iteration per item),
            0 for a single batch holding every item, N for chunks of N
        """
        raw = self.resolver.resolve(config.batch_size, node_id)
        if raw is None or raw is UNDEFINED or raw == '':
            return None
        try:
            size = int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid batchSize {raw!r}, processing all items together")
            return 0
        return max(size, 0)

    @staticmethod
    def get_batches(items: List[Any], size: int) -> List[List[Any]]:
        """
        Split loop items into chunks of size.

        size 0 means one batch holding every item.
        """
        if not items:
            return []
        if size <= 0:
            return [list(items)]
        return [items[i:i + size] for i in range(0, len(items), size)]

    def create_item_scope(self, item: Any, index: int) -> Dict[str, Any]:
        """Scope for one forEach iteration (index is 0-based, number 1-based)."""
        return {
            'item': item,
            'index': index,
            'number': index + 1,
        }

    def create_batch_scope(self, batch: List[Any], index: int) -> Dict[str, Any]:
        """Scope for one batch of a batched forEach loop."""
        return {
            'item': batch[0] if batch else None,
            'batch': batch,
            'index': index,
            'number': index + 1,
        }

    def create_while_scope(self, iteration: int, start_time: datetime) -> Dict[str, Any]:
        return {
            'iteration': iteration,
            'index': iteration,
            'number': iteration + 1,
            'startTime': format_timestamp(start_time),
        }

    def get_iteration_limit(self, config: LoopConfig) -> int:
        return config.max_iterations or self.max_iterations

    def should_continue(self, config: LoopConfig, iteration: int, node_id: Optional[str] = None) -> bool:
        """
        Evaluate the while condition before an iteration.

        Raises:
            LoopLimitError: When the iteration cap is reached with the condition still true
            ScriptError: When the condition expression is invalid
        """
        if not evaluate_condition(config.condition_expression, self.resolver, node_id):
            return False

        limit = self.get_iteration_limit(config)
        if iteration >= limit:
            raise LoopLimitError(limit)
        return True

    @staticmethod
    def process_loop_results(iterations: int, failures: int, **extra) -> Dict[str, Any]:
        """
        Summary stored as the loop node's result.
        """
        result = {
            'iterations': iterations,
            'successCount': iterations - failures,
            'errorCount': failures,
        }
        result.update(extra)
        return result
