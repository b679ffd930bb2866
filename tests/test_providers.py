"""Tests for reconciler.providers module."""

import json
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from reconciler.providers import (
    LocalProvider,
    NullProvider,
    Provider,
    ProviderError,
    ProviderRegistry,
    RandomProvider,
    RestProvider,
    default_registry,
)


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = json.dumps(body).encode() if body is not None else b''
    resp.json.return_value = body
    resp.text = json.dumps(body) if body is not None else ''
    return resp


class TestRegistry:
    """Tests for ProviderRegistry."""

    def test_default_registry(self):
        registry = default_registry()
        assert registry.names == ['local', 'null', 'random', 'rest']
        for name in registry.names:
            assert isinstance(registry.get(name), Provider)

    def test_for_type_uses_prefix(self):
        registry = default_registry()
        assert registry.for_type('local_file').name == 'local'
        assert registry.for_type('random_string').name == 'random'

    def test_unknown_provider(self):
        with pytest.raises(ConfigError) as exc_info:
            default_registry().for_type('aws_instance')
        assert "Unknown provider 'aws'" in str(exc_info.value)

    def test_unsupported_type(self):
        with pytest.raises(ProviderError):
            default_registry().schema('null_thing')

    def test_configure_unknown_provider(self):
        with pytest.raises(ConfigError):
            ProviderRegistry([NullProvider()]).configure({'rest': {}})


class TestNullProvider:
    """Tests for null_resource."""

    def test_schema(self):
        schema = NullProvider().schema('null_resource')
        assert 'triggers' in schema.force_new
        assert 'id' in schema.computed

    def test_create_assigns_id(self):
        result = NullProvider().create('null_resource', {'triggers': {'v': '1'}})
        assert result['triggers'] == {'v': '1'}
        assert result['id'].isdigit()


class TestLocalProvider:
    """Tests for local_file."""

    def test_create_writes_file(self, tmp_path):
        target = tmp_path / 'out' / 'hello.txt'
        result = LocalProvider().create('local_file', {'filename': str(target), 'content': 'hi'})
        assert target.read_text() == 'hi'
        assert result['file_permission'] == '0644'
        assert len(result['id']) == 40
        assert oct(os.stat(target).st_mode & 0o777) == '0o644'

    def test_custom_permission(self, tmp_path):
        target = tmp_path / 'secret.txt'
        LocalProvider().create('local_file', {'filename': str(target), 'content': 'x',
                                              'file_permission': '0600'})
        assert os.stat(target).st_mode & 0o777 == 0o600

    def test_missing_required(self, tmp_path):
        with pytest.raises(ProviderError) as exc_info:
            LocalProvider().create('local_file', {'filename': str(tmp_path / 'x')})
        assert 'content' in str(exc_info.value)

    def test_read_detects_drift_and_absence(self, tmp_path):
        provider = LocalProvider()
        target = tmp_path / 'f.txt'
        created = provider.create('local_file', {'filename': str(target), 'content': 'one'})
        target.write_text('two')
        current = provider.read('local_file', created)
        assert current['content'] == 'two'
        assert current['id'] != created['id']

        target.unlink()
        assert provider.read('local_file', created) is None

    def test_delete(self, tmp_path):
        provider = LocalProvider()
        target = tmp_path / 'f.txt'
        created = provider.create('local_file', {'filename': str(target), 'content': 'x'})
        provider.delete('local_file', created)
        assert not target.exists()
        provider.delete('local_file', created)


class TestRandomProvider:
    """Tests for random_string."""

    def test_length_and_alphabet(self):
        result = RandomProvider().create('random_string', {'length': 24, 'special': False})
        assert len(result['result']) == 24
        assert result['result'].isalnum()
        assert result['id'] == result['result']

    def test_invalid_length(self):
        with pytest.raises(ProviderError):
            RandomProvider().create('random_string', {'length': 0})
        with pytest.raises(ProviderError):
            RandomProvider().create('random_string', {'length': 'long'})

    def test_read_is_stable(self):
        provider = RandomProvider()
        created = provider.create('random_string', {'length': 8})
        assert provider.read('random_string', created) == created


class TestRestProvider:
    """Tests for rest_object with a mocked session."""

    def _provider(self, *responses, **config):
        session = MagicMock()
        session.headers = {}
        session.request.side_effect = list(responses)
        provider = RestProvider(session=session)
        provider.configure({'base_url': 'https://api.example/v1/', **config})
        return provider, session

    def test_configure_requires_base_url(self):
        with pytest.raises(ConfigError):
            RestProvider(session=MagicMock()).configure({})

    def test_configure_sets_headers(self):
        _, session = self._provider(token='t0k', headers={'X-Team': 'infra'})
        assert session.headers['Authorization'] == 'Bearer t0k'
        assert session.headers['X-Team'] == 'infra'
        assert session.headers['Accept'] == 'application/json'

    def test_create(self):
        provider, session = self._provider(_response(201, {'id': 42, 'name': 'web'}))
        result = provider.create('rest_object', {'path': '/apps', 'data': {'name': 'web'}})
        assert result['id'] == '42'
        assert result['response'] == {'id': 42, 'name': 'web'}
        session.request.assert_called_once_with(
            'POST', 'https://api.example/v1/apps', timeout=30, verify=True, json={'name': 'web'},
        )

    def test_create_custom_id_attribute(self):
        provider, _ = self._provider(_response(200, {'uuid': 'u-1'}))
        result = provider.create('rest_object', {'path': 'apps', 'data': {}, 'id_attribute': 'uuid'})
        assert result['id'] == 'u-1'

    def test_create_without_id_fails(self):
        provider, _ = self._provider(_response(200, {'name': 'web'}))
        with pytest.raises(ProviderError) as exc_info:
            provider.create('rest_object', {'path': 'apps', 'data': {}})
        assert "no 'id' field" in str(exc_info.value)

    def test_create_error_status(self):
        provider, _ = self._provider(_response(500, {'error': 'down'}))
        with pytest.raises(ProviderError) as exc_info:
            provider.create('rest_object', {'path': 'apps', 'data': {}})
        assert exc_info.value.status_code == 500
        assert 'unexpected response 500' in str(exc_info.value)

    def test_read_gone(self):
        provider, session = self._provider(_response(404))
        assert provider.read('rest_object', {'path': 'apps', 'id': '42'}) is None
        assert session.request.call_args[0] == ('GET', 'https://api.example/v1/apps/42')

    def test_update(self):
        provider, session = self._provider(_response(200, {'id': 42, 'name': 'api'}))
        prior = {'path': 'apps', 'data': {'name': 'web'}, 'id': '42'}
        result = provider.update('rest_object', prior, {'path': 'apps', 'data': {'name': 'api'}})
        assert result['id'] == '42'
        assert result['data'] == {'name': 'api'}
        assert session.request.call_args[0] == ('PUT', 'https://api.example/v1/apps/42')

    def test_delete_tolerates_404(self):
        provider, _ = self._provider(_response(404))
        provider.delete('rest_object', {'path': 'apps', 'id': '42'})

    def test_timeout(self):
        provider, _ = self._provider(requests.exceptions.Timeout())
        with pytest.raises(ProviderError) as exc_info:
            provider.read('rest_object', {'path': 'apps', 'id': '1'})
        assert 'timed out' in str(exc_info.value)

    def test_unconfigured(self):
        with pytest.raises(ProviderError):
            RestProvider(session=MagicMock()).read('rest_object', {'path': 'a', 'id': '1'})
