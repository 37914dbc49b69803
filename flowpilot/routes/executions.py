"""
Execution control

- POST /api/v1/executions/{execution_id}/cancel
"""
from flask import Blueprint, jsonify, current_app

executions_bp = Blueprint('executions', __name__, url_prefix='/api/v1/executions')


@executions_bp.route('/<execution_id>/cancel', methods=['POST'])
def cancel_execution(execution_id):
    """
    Cancela uma execução em andamento. O cancelamento vale a partir do próximo node.

    Returns:
        {'status': 'cancel_requested'} ou 404 se a execução não está rodando
    """
    executor = current_app.extensions['flow_executor']

    if not executor.cancel(execution_id):
        return jsonify({'error': f'Execution not running: {execution_id}'}), 404

    return jsonify({'status': 'cancel_requested', 'executionId': execution_id}), 202
