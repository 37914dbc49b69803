"""
Tests for the HTTP API
"""

import threading

import httpx
import pytest
from flowpilot import create_app
from flowpilot.config import TestingConfig
from flowpilot.models.flow import Flow


def _handler(request):
    if request.url.host == 'auth.example.com':
        if b'refresh_token=revoked' in request.content:
            return httpx.Response(400, json={'error': 'invalid_grant'})
        return httpx.Response(200, json={'access_token': 'access-2', 'expires_in': 3600})
    return httpx.Response(200, json={'id': 42})


@pytest.fixture
def api(recording_transport):
    return recording_transport(_handler)


@pytest.fixture
def app(storage, api):
    return create_app(TestingConfig, storage=storage, transport=api.transport)


@pytest.fixture
def client(app):
    return app.test_client()


class TestHealth:

    def test_health(self, client):
        response = client.get('/api/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'
        assert response.get_json()['tokenRefresh'] == 'stopped'


class TestExecuteFlow:
    """Test POST /api/v1/flows/<id>/execute"""

    def test_inline_flow(self, client):
        response = client.post('/api/v1/flows/f1/execute', json={
            'flow': {'name': 'Inline', 'nodes': [{'id': 'hello', 'type': 'log', 'config': {'message': 'hi'}}]},
        })

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'success'
        assert data['flowId'] == 'f1'
        assert data['perNodeResults']['hello']['result'] == {'message': 'hi', 'level': 'info'}
        assert data['logs']

    def test_inline_flow_invalid(self, client):
        response = client.post('/api/v1/flows/f1/execute', json={
            'flow': {'nodes': [{'id': 'bad', 'type': 'http', 'config': {}}]},
        })

        assert response.status_code == 400
        assert response.get_json()['nodeId'] == 'bad'

    def test_inline_flow_not_object(self, client):
        response = client.post('/api/v1/flows/f1/execute', json={'flow': ['x']})

        assert response.status_code == 400

    def test_stored_flow(self, client, storage, api, make_connector, owner_id):
        """Test a stored flow runs with the caller's connectors"""
        make_connector(auth_type='apiKey', auth_config={'apiKey': 'k1'})
        storage.save_flow(Flow.from_dict({
            'id': 'f2',
            'ownerId': owner_id,
            'nodes': [{'id': 'call', 'type': 'http', 'config': {'endpoint': '/contacts/7', 'connector': 'crm'}}],
        }))

        response = client.post(
            '/api/v1/flows/f2/execute',
            json={'executionId': 'exec-9'},
            headers={'X-Owner-ID': owner_id},
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data['executionId'] == 'exec-9'
        assert data['status'] == 'success'
        assert data['perNodeResults']['call']['result']['body'] == {'id': 42}
        assert api.requests[0].headers['X-API-Key'] == 'k1'

    def test_execution_id_already_running(self, app, client):
        executor = app.extensions['flow_executor']
        running = threading.Event()
        executor._cancel_events['exec-1'] = running

        response = client.post('/api/v1/flows/f1/execute', json={
            'executionId': 'exec-1',
            'flow': {'nodes': [{'id': 'hello', 'type': 'log', 'config': {'message': 'hi'}}]},
        })

        assert response.status_code == 409
        assert response.get_json()['executionId'] == 'exec-1'
        assert executor._cancel_events['exec-1'] is running

    def test_flow_not_found(self, client):
        response = client.post('/api/v1/flows/missing/execute', headers={'X-Owner-ID': 'owner-1'})

        assert response.status_code == 404


class TestCancel:

    def test_cancel_not_running(self, client):
        response = client.post('/api/v1/executions/nope/cancel')

        assert response.status_code == 404

    def test_cancel_running(self, app, client):
        """Test cancel is accepted while the execution is registered"""
        executor = app.extensions['flow_executor']
        executor._cancel_events['exec-1'] = threading.Event()

        response = client.post('/api/v1/executions/exec-1/cancel')

        assert response.status_code == 202
        assert executor._cancel_events['exec-1'].is_set()


class TestNodeTest:
    """Test POST /api/v1/nodes/test"""

    def test_missing_node(self, client):
        response = client.post('/api/v1/nodes/test', json={})

        assert response.status_code == 400

    def test_http_node(self, client, make_connector, owner_id):
        make_connector()

        response = client.post(
            '/api/v1/nodes/test',
            json={'node': {'id': 'fetch', 'type': 'http', 'config': {'endpoint': '/contacts/7', 'connector': 'crm'}}},
            headers={'X-Owner-ID': owner_id},
        )

        data = response.get_json()
        assert response.status_code == 200
        assert data['status'] == 'succeeded'
        assert '{{fetch.result.body.id}}' in data['variables']

    def test_failed_node_has_no_variables(self, client):
        response = client.post('/api/v1/nodes/test', json={'node': {'id': 'l', 'type': 'log', 'config': {}}})

        data = response.get_json()
        assert data['status'] == 'failed'
        assert data['variables'] == []


class TestConnectorTokens:
    """Test token status and manual refresh"""

    def test_token_status(self, client, oauth_connector, owner_id):
        response = client.get('/api/v1/connectors/hub/token-status', headers={'X-Owner-ID': owner_id})

        assert response.status_code == 200
        assert response.get_json()['status'] == 'valid'

    def test_token_status_not_found(self, client):
        response = client.get('/api/v1/connectors/nope/token-status')

        assert response.status_code == 404

    def test_refresh(self, client, storage, oauth_connector, owner_id):
        response = client.post('/api/v1/connectors/hub/refresh', headers={'X-Owner-ID': owner_id})

        assert response.status_code == 200
        assert response.get_json()['refreshed'] is True
        assert storage.get_connector(owner_id, 'hub').auth_config['accessToken'] == 'access-2'

    def test_refresh_failure(self, client, make_connector, owner_id, expiry):
        make_connector('hub', auth_type='oauth2', auth_config={
            'tokenUrl': 'https://auth.example.com/oauth/token',
            'accessToken': 'a',
            'refreshToken': 'revoked',
            'tokenExpiresAt': expiry(3600),
        })

        response = client.post('/api/v1/connectors/hub/refresh', headers={'X-Owner-ID': owner_id})

        assert response.status_code == 502
        data = response.get_json()
        assert data['refreshed'] is False
        assert data['needsReauth'] is True

    def test_refresh_non_oauth(self, client, make_connector, owner_id):
        make_connector()

        response = client.post('/api/v1/connectors/crm/refresh', headers={'X-Owner-ID': owner_id})

        assert response.status_code == 400
