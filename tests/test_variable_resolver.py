"""
Tests for VariableStore and VariableResolver
"""

import pytest

from flow_automation.flow_engine.errors import VariableNotFound
from flow_automation.flow_engine.variable_resolver import (
    REDACTED,
    VariableResolver,
    VariableStore,
    redact,
)


@pytest.fixture
def store(repository):
    return VariableStore(repository)


class TestVariableStore:
    """Scoped variables"""

    def test_set_is_an_upsert(self, store, repository):
        """Setting a key twice leaves only the last value"""
        store.set('flow', 'greeting', 'v1', scope_id='flow-1')
        store.set('flow', 'greeting', 'v2', scope_id='flow-1')

        assert store.resolve('greeting', flow_id='flow-1') == 'v2'
        assert len(repository.list_variables('flow', 'flow-1')) == 1

    def test_lookup_order(self, store):
        """Execution scope wins over flow scope, which wins over global"""
        store.set('global', 'name', 'global')
        store.set('flow', 'name', 'flow', scope_id='flow-1')
        store.set('execution', 'name', 'execution', scope_id='exec-1')

        assert store.resolve('name', execution_id='exec-1', flow_id='flow-1') == 'execution'
        assert store.resolve('name', execution_id='exec-2', flow_id='flow-1') == 'flow'
        assert store.resolve('name', execution_id='exec-2', flow_id='flow-2') == 'global'

    def test_flow_defaults_sit_between_flow_and_global(self, store):
        """A flow's own variable map is consulted after flow-scope records"""
        store.set('global', 'currency', 'USD')

        assert store.resolve('currency', flow_id='flow-1', flow_defaults={'currency': 'BRL'}) == 'BRL'

        store.set('flow', 'currency', 'EUR', scope_id='flow-1')
        assert store.resolve('currency', flow_id='flow-1', flow_defaults={'currency': 'BRL'}) == 'EUR'

    def test_not_found(self, store):
        with pytest.raises(VariableNotFound) as exc:
            store.resolve('missing', execution_id='exec-1', flow_id='flow-1')

        assert exc.value.key == 'missing'

    def test_scope_id_required(self, store):
        """Flow and execution variables need a scope id"""
        with pytest.raises(ValueError, match='scope_id is required'):
            store.set('execution', 'x', 1)

    def test_global_ignores_scope_id(self, store):
        variable = store.set('global', 'x', 1, scope_id='ignored')

        assert variable.scope_id is None
        assert store.get('global', 'x').value == 1

    def test_unknown_scope(self, store):
        with pytest.raises(ValueError):
            store.set('organization', 'x', 1, scope_id='org-1')

    def test_visible_merges_scopes(self, store):
        """Narrower scopes override wider ones"""
        store.set('global', 'a', 'global-a')
        store.set('global', 'b', 'global-b')
        store.set('flow', 'b', 'flow-b', scope_id='flow-1')
        store.set('execution', 'c', 'exec-c', scope_id='exec-1')

        values = store.visible('exec-1', 'flow-1', {'d': 'default-d'})

        assert values == {'a': 'global-a', 'b': 'flow-b', 'c': 'exec-c', 'd': 'default-d'}

    def test_clear_execution(self, store):
        """Execution variables do not outlive their execution"""
        store.set('execution', 'tmp', 1, scope_id='exec-1')
        store.set('flow', 'keep', 2, scope_id='flow-1')

        assert store.clear_execution('exec-1') == 1
        assert store.lookup('tmp', execution_id='exec-1', flow_id='flow-1') is None
        assert store.lookup('keep', execution_id='exec-1', flow_id='flow-1').value == 2

    def test_secret_values(self, store):
        store.set('global', 'api_key', 'sk-123', is_secret=True)
        store.set('global', 'public', 'hello')

        assert store.secret_values('exec-1', 'flow-1') == ['sk-123']


class TestRedaction:
    """Secret redaction in snapshots and logs"""

    def test_nested_values(self):
        data = {'headers': {'Authorization': 'Bearer sk-123'}, 'items': ['sk-123', 'ok'], 'n': 5}

        result = redact(data, ['sk-123'])

        assert result['headers']['Authorization'] == f'Bearer {REDACTED}'
        assert result['items'] == [REDACTED, 'ok']
        assert result['n'] == 5

    def test_non_string_secret(self):
        """Whole non-string values equal to a secret are replaced"""
        assert redact({'pin': 1234}, [1234]) == {'pin': REDACTED}

    def test_no_secrets_returns_value(self):
        data = {'a': 1}

        assert redact(data, []) is data


class TestVariableResolver:
    """Test template resolution"""

    def test_simple_trigger_variable(self):
        """Test resolving simple trigger variable"""
        resolver = VariableResolver(trigger_output={'name': 'John'})

        assert resolver.resolve('{{trigger.name}}') == 'John'

    def test_array_access(self):
        """Test array access in variables"""
        resolver = VariableResolver(trigger_output={
            'items': [{'name': 'Item 1'}, {'name': 'Item 2'}]
        })

        assert resolver.resolve('{{trigger.items[1].name}}') == 'Item 2'

    def test_step_output_variable(self):
        """Test resolving an ancestor node's output"""
        resolver = VariableResolver(
            trigger_output={},
            steps_output={'getContact': {'id': '123', 'name': 'Jane'}}
        )

        assert resolver.resolve('{{getContact.name}}') == 'Jane'

    def test_scoped_variable(self):
        resolver = VariableResolver(variables={'api_base': 'https://api.example.com'})

        assert resolver.resolve('{{vars.api_base}}/orders') == 'https://api.example.com/orders'

    def test_preserve_type_int(self):
        """A whole-string reference keeps the value's type"""
        resolver = VariableResolver(trigger_output={'amount': 1000})

        result = resolver.resolve('{{trigger.amount}}')
        assert result == 1000
        assert isinstance(result, int)

    def test_string_interpolation(self):
        resolver = VariableResolver(trigger_output={'name': 'John', 'age': 30})

        assert resolver.resolve('Name: {{trigger.name}}, Age: {{trigger.age}}') == 'Name: John, Age: 30'

    def test_missing_path_interpolates_empty(self):
        resolver = VariableResolver(trigger_output={})

        assert resolver.resolve('Hi {{trigger.name}}!') == 'Hi !'
        assert resolver.resolve('{{trigger.name}}') is None

    def test_dict_and_list_resolution(self):
        resolver = VariableResolver(trigger_output={'email': 'test@example.com'})

        result = resolver.resolve({'to': '{{trigger.email}}', 'cc': ['{{trigger.email}}', 'static']})

        assert result == {'to': 'test@example.com', 'cc': ['test@example.com', 'static']}

    def test_validate_unresolved(self):
        """Test validation finds unresolved variables"""
        resolver = VariableResolver(trigger_output={'name': 'John'})

        unresolved = resolver.validate({'a': '{{trigger.name}}', 'b': '{{trigger.missing_field}}'})
        assert unresolved == ['trigger.missing_field']

    def test_add_step_output(self):
        resolver = VariableResolver()
        resolver.add_step_output('lookup', {'id': 7})

        assert resolver.resolve('{{lookup.id}}') == 7
        assert 'lookup' in resolver.get_available_variables()
