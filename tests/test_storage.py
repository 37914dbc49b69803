"""
Tests for MemoryStorage
"""

import pytest
from flowpilot.models.flow import Flow
from flowpilot.services.storage import MemoryStorage


class TestMemoryStorage:
    """Test the in-memory storage collaborator"""

    def test_auth_config_encrypted_at_rest(self, storage, make_connector):
        """Test credentials are sealed in the store and opened on read"""
        make_connector(auth_type='basic', auth_config={'username': 'u', 'password': 'p'})

        record = storage._connectors[('owner-1', 'crm')]
        assert set(record['authConfig'].keys()) == {'_encrypted'}

        connector = storage.get_connector('owner-1', 'crm')
        assert connector.auth_config == {'username': 'u', 'password': 'p'}

    def test_reads_are_copies(self, storage, make_connector):
        """Test mutating a returned connector does not change the store"""
        make_connector(auth_type='basic', auth_config={'username': 'u', 'password': 'p'})

        connector = storage.get_connector('owner-1', 'crm')
        connector.auth_config['password'] = 'changed'

        assert storage.get_connector('owner-1', 'crm').auth_config['password'] == 'p'

    def test_owner_scoping(self, storage, make_connector):
        """Test connectors are looked up per owner, any owner when None"""
        make_connector()

        assert storage.get_connector('someone-else', 'crm') is None
        assert storage.get_connector(None, 'crm').id == 'crm'

    def test_update_connector_auth(self, storage, make_connector):
        make_connector(auth_type='apiKey', auth_config={'apiKey': 'old'})

        storage.update_connector_auth('owner-1', 'crm', {'apiKey': 'new'})

        assert storage.get_connector('owner-1', 'crm').auth_config == {'apiKey': 'new'}

    def test_update_missing_connector(self, storage):
        with pytest.raises(KeyError):
            storage.update_connector_auth('owner-1', 'missing', {})

    def test_list_connectors(self, storage, make_connector):
        make_connector('a')
        make_connector('b', owner_id='owner-2')

        assert {c.id for c in storage.list_connectors()} == {'a', 'b'}
        assert [c.id for c in storage.list_connectors('owner-2')] == ['b']

    def test_flows(self):
        """Test flows are stored by owner and id"""
        storage = MemoryStorage()
        flow = Flow.from_dict({'id': 'f1', 'ownerId': 'o', 'nodes': [{'id': 'a', 'type': 'log'}]})

        storage.save_flow(flow)

        assert storage.get_flow('o', 'f1') == flow
        assert storage.get_flow('other', 'f1') is None

    def test_flow_without_id_rejected(self):
        with pytest.raises(ValueError):
            MemoryStorage().save_flow(Flow.from_dict({'nodes': []}))

    def test_last_results(self):
        """Test last results are stored as copies"""
        storage = MemoryStorage()
        result = {'status': 200}

        storage.save_last_result('fetch', result)
        result['status'] = 500

        assert storage.get_last_result('fetch') == {'status': 200}
        assert storage.get_last_result('other') is None
