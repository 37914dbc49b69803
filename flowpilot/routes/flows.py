"""
Flow execution endpoint

- POST /api/v1/flows/{flow_id}/execute
"""
from flask import Blueprint, request, jsonify, current_app
from flowpilot.exceptions import ConcurrentExecutionError, FlowValidationError
from flowpilot.models.flow import Flow
import asyncio
import logging

logger = logging.getLogger(__name__)
flows_bp = Blueprint('flows', __name__, url_prefix='/api/v1/flows')


@flows_bp.route('/<flow_id>/execute', methods=['POST'])
def execute_flow(flow_id):
    """
    Executa um flow e devolve o ExecutionResult completo.

    Headers:
        X-Owner-ID: dono dos connectors usados pelo flow

    Body (opcional):
        {
            "flow": {...},          // definição inline (senão carregada do storage)
            "executionId": "..."    // id usado pelo endpoint de cancelamento
        }
    """
    owner_id = request.headers.get('X-Owner-ID')
    data = request.get_json(silent=True) or {}
    storage = current_app.extensions['storage']
    executor = current_app.extensions['flow_executor']

    if data.get('flow') is not None:
        if not isinstance(data['flow'], dict):
            return jsonify({'error': 'flow deve ser um objeto'}), 400
        try:
            flow = Flow.from_dict({**data['flow'], 'id': flow_id})
        except FlowValidationError as e:
            return jsonify({'error': str(e), 'nodeId': e.node_id}), 400
    else:
        flow = storage.get_flow(owner_id, flow_id)
        if flow is None:
            return jsonify({'error': f'Flow not found: {flow_id}'}), 404

    try:
        result = asyncio.run(executor.execute_flow(flow, owner_id, execution_id=data.get('executionId')))
    except ConcurrentExecutionError as e:
        return jsonify({'error': str(e), 'executionId': e.execution_id}), 409
    logger.info(f"Flow {flow_id} executed: {result.status.value}")

    return jsonify(result.to_dict()), 200
