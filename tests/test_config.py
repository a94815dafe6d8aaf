"""
Tests for configuration helpers
"""

import pytest

from flow_automation.config import (
    Config,
    TestConfig,
    config_value,
    environment_source,
    mapping_source,
    normalize_database_url,
    resolve_integration_config,
)
from flow_automation.flow_engine.errors import ConfigurationError
from flow_automation.flow_engine.nodes import ErrorHandling, FlowSettings


class TestDatabaseUrl:

    @pytest.mark.parametrize('url,expected', [
        ('postgres://u:p@db/flows', 'postgresql+psycopg2://u:p@db/flows'),
        ('postgresql://u:p@db/flows', 'postgresql+psycopg2://u:p@db/flows'),
        ('postgresql+psycopg2://u:p@db/flows', 'postgresql+psycopg2://u:p@db/flows'),
        ('sqlite:///:memory:', 'sqlite:///:memory:'),
    ])
    def test_normalize(self, url, expected):
        assert normalize_database_url(url) == expected


class TestConfigValue:
    """Config class or Flask mapping"""

    def test_reads_class_and_mapping(self):
        assert config_value(TestConfig, 'FLOW_DEFAULT_RETRY_DELAY_MS') == 0
        assert config_value({'FLOW_MAX_CONCURRENCY': 8}, 'FLOW_MAX_CONCURRENCY') == 8
        assert config_value(None, 'ANYTHING', 'fallback') == 'fallback'

    def test_settings_defaults_from_config(self):
        defaults = FlowSettings.defaults_from_config(Config)

        assert defaults.timeout_ms == Config.FLOW_DEFAULT_TIMEOUT_MS
        assert defaults.max_concurrency == Config.FLOW_MAX_CONCURRENCY

    def test_flow_settings_override_defaults(self):
        defaults = FlowSettings.defaults_from_config({'FLOW_DEFAULT_RETRY_ATTEMPTS': 5})

        settings = FlowSettings.from_dict({'errorHandling': 'continue'}, defaults)

        assert settings.retry_attempts == 5
        assert settings.error_handling == ErrorHandling.CONTINUE


class TestIntegrationConfig:
    """Ordered credential sources"""

    def test_first_source_wins(self):
        value = resolve_integration_config('api_key', [
            mapping_source('overrides', {'api_key': ''}),
            mapping_source('flow', {'api_key': 'from-flow'}),
            mapping_source('global', {'api_key': 'from-global'}),
        ])

        assert value == 'from-flow'

    def test_environment_source(self, monkeypatch):
        monkeypatch.setenv('MESSAGING_API_KEY', 'from-env')

        assert resolve_integration_config('api_key', [environment_source('messaging_')]) == 'from-env'

    def test_missing_names_every_source(self):
        with pytest.raises(ConfigurationError) as exc:
            resolve_integration_config('api_key', [mapping_source('overrides', None), environment_source('nope_')])

        assert exc.value.sources == ['overrides', 'environment']

    def test_global_variable_source(self, repository):
        from flow_automation.flow_engine.variable_resolver import VariableStore, variable_source

        store = VariableStore(repository)
        store.set('global', 'api_key', 'from-variable', is_secret=True)

        value = resolve_integration_config('api_key', [
            mapping_source('overrides', {}),
            variable_source(store),
            environment_source('nope_'),
        ])

        assert value == 'from-variable'
