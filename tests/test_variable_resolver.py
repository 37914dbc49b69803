"""
Tests for VariableResolver
"""

import pytest
from flowpilot.flow_engine.variable_resolver import UNDEFINED, VariableResolver
from flowpilot.models.execution import ExecutionContext
from flowpilot.services.execution_logger import ExecutionLogger


class TestVariableResolver:
    """Test variable resolution"""

    def test_user_variable(self, context):
        """Test resolving a vars.* reference"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{vars.name}}') == 'John'

    def test_nested_node_result(self, context):
        """Test resolving nested node output"""
        resolver = VariableResolver(context)

        result = resolver.resolve('{{fetch.result.body.contact.email}}')
        assert result == 'john@example.com'

    def test_array_access(self, context):
        """Test array access in variables"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.result.body.items[1].name}}') == 'Product B'
        assert resolver.resolve('{{fetch.result.body.contact.tags[0]}}') == 'vip'

    def test_node_status(self, context):
        """Test {{node.status}} exposes the node's state"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.status}}') == 'succeeded'

    def test_length(self, context):
        """Test .length on arrays and strings"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.result.body.items.length}}') == 2
        assert resolver.resolve('{{vars.name.length}}') == 4

    def test_preserve_type(self, context):
        """Test that a whole-string placeholder keeps the value's type"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.result.status}}') == 200
        assert resolver.resolve('{{fetch.result.body.active}}') is True
        items = resolver.resolve('{{fetch.result.body.items}}')
        assert isinstance(items, list) and len(items) == 2

    def test_whitespace_inside_braces(self, context):
        """Test that spaces around the path are ignored"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{ vars.name }}') == 'John'

    def test_string_interpolation(self, context):
        """Test embedding values in text"""
        resolver = VariableResolver(context)

        result = resolver.resolve('Hi {{vars.name}}, status {{fetch.result.status}}, active {{fetch.result.body.active}}')
        assert result == 'Hi John, status 200, active true'

    def test_embedded_object_is_json(self, context):
        """Test embedding a dict produces JSON text"""
        resolver = VariableResolver(context)

        result = resolver.resolve('tags={{fetch.result.body.contact.tags}}')
        assert result == 'tags=["vip", "new"]'

    def test_embedded_null_is_empty(self, context):
        """Test embedding None produces an empty string"""
        resolver = VariableResolver(context)

        assert resolver.resolve('note=[{{fetch.result.body.note}}]') == 'note=[]'

    def test_dict_and_list_resolution(self, context):
        """Test resolving variables in dicts and lists"""
        resolver = VariableResolver(context)

        data = {
            'email': '{{fetch.result.body.contact.email}}',
            'tags': ['{{vars.name}}', 'static'],
            'count': 3,
        }

        result = resolver.resolve(data)
        assert result == {'email': 'john@example.com', 'tags': ['John', 'static'], 'count': 3}

    def test_unresolved_inside_containers_is_none(self, context):
        """Test a missing value inside a body becomes null"""
        resolver = VariableResolver(context)

        assert resolver.resolve({'a': '{{vars.missing}}', 'b': ['{{vars.missing}}']}) == {'a': None, 'b': [None]}

    def test_unresolved_whole_string_is_undefined(self, context):
        """Test unresolvable single placeholder returns the UNDEFINED marker"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.result.body.missing}}') is UNDEFINED
        assert resolver.resolve('{{unknown.result}}') is UNDEFINED
        assert resolver.resolve('{{fetch.result.body.items[9]}}') is UNDEFINED

    def test_unresolved_embedded_is_empty_and_warns(self, context):
        """Test unresolvable embedded placeholder becomes '' and logs a warning"""
        execution_logger = ExecutionLogger('exec-1')
        resolver = VariableResolver(context, execution_logger)

        result = resolver.resolve('Hello {{vars.missing}}!', node_id='greet')

        assert result == 'Hello !'
        assert len(resolver.warnings) == 1
        assert resolver.warnings[0].path == 'vars.missing'
        entry = execution_logger.entries[0]
        assert entry.level == 'warning'
        assert entry.node_id == 'greet'
        assert entry.data == {'path': 'vars.missing'}

    @pytest.mark.parametrize('text', [
        '{{',
        '}}',
        '{{vars.name',
        'a {{ b }} c {{',
        '{{}}',
        '{{.}}',
        '{{a..b}}',
        '{{fetch.result[x]}}',
        '{{[0]}}',
        '{{vars.{{vars.name}}}}',
        '{{fetch.result.body.items.²}}',
        '{{fetch.result.body.items.①}}',
    ])
    def test_never_raises(self, context, text):
        """Test malformed input never raises"""
        resolver = VariableResolver(context)

        resolver.resolve(text)

    def test_dotted_index_needs_decimal_digits(self, context):
        """Test only plain digits index a list after a dot"""
        resolver = VariableResolver(context)

        assert resolver.resolve('{{fetch.result.body.items.1.name}}') == 'Product B'
        assert resolver.resolve('{{fetch.result.body.items.²}}') is UNDEFINED
        assert resolver.resolve('items: {{fetch.result.body.items.①}}') == 'items: '

    def test_single_pass(self):
        """Test resolved values are not expanded again"""
        ctx = ExecutionContext(vars={'a': '{{vars.b}}', 'b': 'secret'})
        resolver = VariableResolver(ctx)

        assert resolver.resolve('{{vars.a}}') == '{{vars.b}}'
        assert resolver.resolve('x {{vars.a}}') == 'x {{vars.b}}'

    def test_loop_scope(self, context):
        """Test loop.* resolves against the innermost loop scope"""
        context.push_loop({'item': {'id': 1}, 'index': 0})
        context.push_loop({'item': {'id': 2}, 'index': 5})
        resolver = VariableResolver(context)

        assert resolver.resolve('{{loop.item.id}}') == 2
        context.pop_loop()
        assert resolver.resolve('{{loop.index}}') == 0
        context.pop_loop()
        assert resolver.resolve('{{loop.index}}') is UNDEFINED

    def test_parse_path(self):
        """Test splitting paths into tokens"""
        assert VariableResolver.parse_path('items[0].name') == ['items', 0, 'name']
        assert VariableResolver.parse_path('grid[1][2]') == ['grid', 1, 2]
        assert VariableResolver.parse_path('a..b') is None

    def test_validate_unresolved(self, context):
        """Test validation finds unresolved variables"""
        resolver = VariableResolver(context)

        unresolved = resolver.validate({'a': '{{vars.name}}', 'b': 'x {{fetch.result.nope}}'})
        assert unresolved == ['fetch.result.nope']

    def test_find_references(self, context):
        """Test listing placeholder paths"""
        resolver = VariableResolver(context)

        refs = resolver.find_references(['{{vars.a}}', {'k': 'x {{ b.result }} y'}])
        assert refs == ['vars.a', 'b.result']
