"""
Tests for flow and connector models
"""

import pytest
from datetime import datetime, timezone
from flowpilot.exceptions import FlowValidationError
from flowpilot.models.connector import AuthType, Connector, OAuth2Type, format_timestamp, parse_timestamp
from flowpilot.models.flow import (
    ConditionMode,
    DelayType,
    DelayUnit,
    Flow,
    HttpConfig,
    LogLevel,
    LoopType,
    Node,
    NodeType,
    iter_nodes,
)


class TestNode:
    """Test node parsing"""

    def test_http_node(self):
        node = Node.from_dict({
            'id': 'fetch',
            'type': 'httpRequest',
            'data': {
                'endpoint': '/contacts',
                'method': 'post',
                'queryParams': [{'key': 'limit', 'value': '10'}, {'key': '', 'value': 'ignored'}],
                'headers': {'X-Trace': '1'},
                'failOnError': False,
            },
        })

        assert node.type == NodeType.HTTP
        assert isinstance(node.config, HttpConfig)
        assert node.config.method == 'POST'
        assert node.config.query_params == {'limit': '10'}
        assert node.config.headers == {'X-Trace': '1'}
        assert node.config.fail_on_error is False

    @pytest.mark.parametrize('data, message', [
        ({'type': 'log'}, 'missing an id'),
        ({'id': 'a', 'type': 'nope'}, 'Invalid value for type'),
        ({'id': 'a', 'type': 'http', 'config': {'endpoint': '/x', 'method': 'FETCH'}}, 'Unsupported HTTP method'),
        ({'id': 'a', 'type': 'http', 'config': {'endpoint': '/x', 'timeout': -1}}, 'timeout'),
        ({'id': 'a', 'type': 'setVariable', 'config': {}}, 'variableKey'),
        ({'id': 'a', 'type': 'setVariable', 'config': {'variableKey': 'x', 'useTransform': True}}, 'transformScript'),
        ({'id': 'a', 'type': 'loop', 'config': {}}, 'arrayPath'),
        ({'id': 'a', 'type': 'loop', 'config': {'loopType': 'while'}}, 'conditionExpression'),
        ({'id': 'a', 'type': 'loop', 'config': {'arrayPath': 'x', 'maxIterations': 0}}, 'maxIterations'),
        ({'id': 'a', 'type': 'delay', 'config': {'delayType': 'cron'}}, 'cronExpression'),
        ({'id': 'a', 'type': 'ifElse', 'config': {'operator': 'equals'}}, 'variable'),
        ({'id': 'a', 'type': 'ifElse', 'config': {'variable': 'x', 'operator': 'like'}}, 'operator'),
        ({'id': 'a', 'type': 'log', 'config': 'text'}, 'config must be an object'),
    ])
    def test_invalid_nodes(self, data, message):
        """Test invalid configs are rejected at load time"""
        with pytest.raises(FlowValidationError) as exc:
            Node.from_dict(data)

        assert message in str(exc.value)

    def test_aliases(self):
        """Test value aliases written by older editors"""
        log = Node.from_dict({'id': 'l', 'type': 'log', 'config': {'logLevel': 'warn'}})
        delay = Node.from_dict({'id': 'd', 'type': 'delay', 'config': {'delayType': 'seconds', 'delayUnit': 'ms'}})

        assert log.config.log_level == LogLevel.WARNING
        assert delay.config.delay_type == DelayType.DURATION
        assert delay.config.delay_unit == DelayUnit.MILLISECONDS

    def test_if_else_mode_inferred(self):
        node = Node.from_dict({'id': 'c', 'type': 'ifElse', 'config': {'condition': '1 == 1'}})

        assert node.config.mode == ConditionMode.CODE

    def test_loop_children(self):
        node = Node.from_dict({'id': 'w', 'type': 'loop', 'config': {
            'loopType': 'while',
            'conditionExpression': 'true',
            'nodes': [{'id': 'inner', 'type': 'log'}],
        }})

        assert node.config.loop_type == LoopType.WHILE
        assert [child.id for child in node.children] == ['inner']


class TestFlow:
    """Test flow validation"""

    def test_duplicate_ids_across_loops(self):
        """Test ids must be unique including loop bodies"""
        with pytest.raises(FlowValidationError) as exc:
            Flow.from_dict({'nodes': [
                {'id': 'a', 'type': 'log'},
                {'id': 'each', 'type': 'loop', 'config': {'arrayPath': 'x', 'nodes': [{'id': 'a', 'type': 'log'}]}},
            ]})

        assert 'Duplicate node id: a' in str(exc.value)

    def test_branch_target_must_exist(self):
        with pytest.raises(FlowValidationError):
            Flow.from_dict({'nodes': [
                {'id': 'c', 'type': 'ifElse', 'config': {'variable': 'x', 'trueNext': 'ghost'}},
            ]})

    def test_iter_nodes(self):
        flow = Flow.from_dict({'id': 'f', 'nodes': [
            {'id': 'each', 'type': 'loop', 'config': {'arrayPath': 'x', 'nodes': [{'id': 'inner', 'type': 'log'}]}},
            {'id': 'after', 'type': 'log'},
        ]})

        assert [n.id for n in iter_nodes(flow.nodes)] == ['each', 'inner', 'after']

    def test_snapshot_is_independent(self):
        flow = Flow.from_dict({'id': 'f', 'nodes': [
            {'id': 'call', 'type': 'http', 'config': {'endpoint': '/x', 'headers': {'A': '1'}}},
        ]})

        snapshot = flow.snapshot()
        flow.nodes[0].config.headers['A'] = 'changed'

        assert snapshot.nodes[0].config.headers == {'A': '1'}


class TestConnector:
    """Test connector parsing"""

    def test_from_dict(self):
        connector = Connector.from_dict({
            'id': 'hub',
            'baseUrl': 'https://api.example.com',
            'authType': 'oauth2',
            'authConfig': {'oauth2Type': 'client_credentials', 'headers': {'X-A': '1'}},
            'headers': {'X-B': '2'},
        })

        assert connector.name == 'hub'
        assert connector.auth_type == AuthType.OAUTH2
        assert connector.oauth2_type == OAuth2Type.CLIENT_CREDENTIALS
        assert connector.headers == {'X-A': '1', 'X-B': '2'}

    def test_unknown_auth_type(self):
        with pytest.raises(ValueError):
            Connector.from_dict({'id': 'x', 'authType': 'kerberos'})

    @pytest.mark.parametrize('value', [
        '2024-01-02T03:04:05Z',
        '2024-01-02T03:04:05+00:00',
        '2024-01-02T03:04:05',
        1704164645,
        1704164645000,
    ])
    def test_parse_timestamp(self, value):
        """Test the stored expiry formats"""
        assert parse_timestamp(value) == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_parse_invalid_timestamp(self):
        assert parse_timestamp('tomorrow') is None
        assert parse_timestamp(None) is None

    def test_format_timestamp(self):
        assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)) == '2024-01-02T03:04:05Z'
