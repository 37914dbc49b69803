"""
Node test endpoint (botão "testar node" do editor)

- POST /api/v1/nodes/test
"""
from flask import Blueprint, request, jsonify, current_app
from flowpilot.flow_engine.path_enumerator import enumerate_node_variables
from flowpilot.models.execution import NodeStatus
import asyncio

nodes_bp = Blueprint('nodes', __name__, url_prefix='/api/v1/nodes')


@nodes_bp.route('/test', methods=['POST'])
def test_node():
    """
    Executa um node http isolado (autenticação + chamada + resultado).

    Body:
        {"node": {"id": "fetch", "type": "http", "config": {...}}}

    Returns:
        NodeResult + lista de variáveis disponíveis ({{fetch.result...}})
    """
    data = request.get_json(silent=True) or {}
    node = data.get('node')
    if not isinstance(node, dict):
        return jsonify({'error': 'node é obrigatório'}), 400

    executor = current_app.extensions['flow_executor']
    result = asyncio.run(executor.test_node(node, request.headers.get('X-Owner-ID')))

    response = result.to_dict()
    response['variables'] = (
        enumerate_node_variables(result.node_id, result.result)
        if result.status == NodeStatus.SUCCEEDED else []
    )
    return jsonify(response), 200
