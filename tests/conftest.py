"""
Pytest fixtures shared by the flowpilot tests
"""

import os

os.environ.setdefault('INTEGRATION_ENCRYPTION_KEY', '0f' * 32)

import httpx
import pytest
from datetime import timedelta

from flowpilot.models.connector import Connector, format_timestamp
from flowpilot.models.execution import ExecutionContext, NodeStatus, utcnow
from flowpilot.services.storage import MemoryStorage
from flowpilot.utils.credentials_encryption import CredentialsEncryption

OWNER_ID = 'owner-1'


class RecordingTransport:
    """
    Wraps httpx.MockTransport and keeps every request it served.

    handler(request) -> httpx.Response
    """

    def __init__(self, handler=None):
        self.requests = []
        self._handler = handler or (lambda request: httpx.Response(200, json={'ok': True}))
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request):
        self.requests.append(request)
        return self._handler(request)

    def requests_to(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def recording_transport():
    """Factory: recording_transport(handler) -> RecordingTransport"""
    return RecordingTransport


@pytest.fixture
def encryption():
    return CredentialsEncryption('0f' * 32)


@pytest.fixture
def storage(encryption):
    return MemoryStorage(encryption)


@pytest.fixture
def owner_id():
    return OWNER_ID


def in_seconds(seconds):
    return format_timestamp(utcnow() + timedelta(seconds=seconds))


@pytest.fixture
def expiry():
    """expiry(seconds) -> timestamp that many seconds from now"""
    return in_seconds


@pytest.fixture
def make_connector(storage):
    """Factory that builds and stores a connector"""

    def _make(connector_id='crm', auth_type='none', auth_config=None, base_url='https://api.example.com', **extra):
        connector = Connector.from_dict({
            'id': connector_id,
            'name': extra.pop('name', connector_id.upper()),
            'baseUrl': base_url,
            'authType': auth_type,
            'authConfig': auth_config or {},
            'ownerId': extra.pop('owner_id', OWNER_ID),
            **extra,
        })
        storage.save_connector(connector)
        return connector

    return _make


@pytest.fixture
def oauth_connector(make_connector):
    """authorization_code connector whose token is far from expiry"""
    return make_connector(
        connector_id='hub',
        auth_type='oauth2',
        auth_config={
            'oauth2Type': 'authorization_code',
            'clientId': 'client-id',
            'clientSecret': 'client-secret',
            'tokenUrl': 'https://auth.example.com/oauth/token',
            'accessToken': 'access-1',
            'refreshToken': 'refresh-1',
            'tokenExpiresAt': in_seconds(3600),
        },
    )


@pytest.fixture
def context():
    """Execution context with one finished http node and a user variable"""
    ctx = ExecutionContext()
    ctx.vars['name'] = 'John'
    ctx.record('fetch', NodeStatus.SUCCEEDED, {
        'status': 200,
        'body': {
            'contact': {'email': 'john@example.com', 'tags': ['vip', 'new']},
            'items': [{'name': 'Product A', 'price': 10}, {'name': 'Product B', 'price': 20}],
            'active': True,
            'total': 30,
            'note': None,
        },
    })
    return ctx
