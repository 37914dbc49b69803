"""
Connector token endpoints

- GET  /api/v1/connectors/{connector_id}/token-status
- POST /api/v1/connectors/{connector_id}/refresh
"""
from flask import Blueprint, request, jsonify, current_app
from flowpilot.models.connector import AuthType

connectors_bp = Blueprint('connectors', __name__, url_prefix='/api/v1/connectors')


def _load_connector(connector_id):
    storage = current_app.extensions['storage']
    return storage.get_connector(request.headers.get('X-Owner-ID'), connector_id)


@connectors_bp.route('/<connector_id>/token-status', methods=['GET'])
def token_status(connector_id):
    """Status do token OAuth2 (valid, expiring_soon, expired, no_token, not_applicable)"""
    connector = _load_connector(connector_id)
    if connector is None:
        return jsonify({'error': f'Connector not found: {connector_id}'}), 404

    service = current_app.extensions['token_refresh_service']
    return jsonify(service.get_token_status(connector)), 200


@connectors_bp.route('/<connector_id>/refresh', methods=['POST'])
def refresh_token(connector_id):
    """
    Força o refresh do token de um connector OAuth2.

    Returns:
        {'refreshed': bool, ...status}
    """
    connector = _load_connector(connector_id)
    if connector is None:
        return jsonify({'error': f'Connector not found: {connector_id}'}), 404
    if connector.auth_type != AuthType.OAUTH2:
        return jsonify({'error': 'Connector does not use OAuth2'}), 400

    service = current_app.extensions['token_refresh_service']
    refreshed = service.refresh_specific_connector(connector.owner_id, connector.id, force=True)

    response = service.get_token_status(_load_connector(connector_id) or connector)
    response['refreshed'] = refreshed
    return jsonify(response), 200 if refreshed else 502
