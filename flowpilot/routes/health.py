"""
Endpoint de health check geral da API
"""
from flask import Blueprint, jsonify, current_app
from datetime import datetime, timezone

bp = Blueprint('health', __name__, url_prefix='/api')


@bp.route('/health', methods=['GET'])
def health_check():
    """Healthcheck: API online e estado do refresher de tokens"""
    token_service = current_app.extensions.get('token_refresh_service')

    return jsonify({
        'status': 'healthy',
        'message': 'API is online',
        'tokenRefresh': 'running' if token_service and token_service.is_running else 'stopped',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }), 200
