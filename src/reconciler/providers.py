"""Resource providers for stack reconciliation.

A provider owns a family of resource types (selected by the type prefix
before the first '_') and implements read/create/update/delete against
the real system. The engine treats providers as opaque: it only sees the
attribute dicts they accept and return.

Built-in providers:
- null:   null_resource (no side effects, triggers force replacement)
- local:  local_file (writes a file on the local filesystem)
- random: random_string (generated once, stable until replaced)
- rest:   rest_object (generic JSON REST object over HTTP)
"""

import hashlib
import logging
import os
import secrets
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import requests

from config import ConfigError

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider operation failed.

    Attributes:
        partial: Attributes of an object the provider created before failing
        status_code: HTTP status for remote providers
    """

    def __init__(self, message: str, partial: Optional[dict] = None,
                 status_code: Optional[int] = None):
        self.message = message
        self.partial = partial
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class ResourceSchema:
    """Attribute behaviour for a resource type.

    Attributes:
        required: Attributes that must be configured
        force_new: Attributes whose change requires replacement
        computed: Attributes set by the provider, never diffed
    """
    required: frozenset = frozenset()
    force_new: frozenset = frozenset()
    computed: frozenset = frozenset({'id'})


@runtime_checkable
class Provider(Protocol):
    """Protocol for resource providers."""

    name: str

    def schema(self, resource_type: str) -> ResourceSchema:
        """Describe the attributes of a resource type."""

    def configure(self, config: dict) -> None:
        """Apply provider configuration from the stack."""

    def read(self, resource_type: str, attributes: dict) -> Optional[dict]:
        """Return current attributes, or None if the object no longer exists."""

    def create(self, resource_type: str, attributes: dict) -> dict:
        """Create the object and return its full attributes."""

    def update(self, resource_type: str, prior: dict, desired: dict) -> dict:
        """Update the object in place and return its full attributes."""

    def delete(self, resource_type: str, attributes: dict) -> None:
        """Delete the object."""


class BaseProvider:
    """Shared behaviour: schema lookup, required-attribute checks, defaults."""

    name = ''
    schemas: dict[str, ResourceSchema] = {}

    def __init__(self):
        self.config: dict = {}

    def schema(self, resource_type: str) -> ResourceSchema:
        try:
            return self.schemas[resource_type]
        except KeyError:
            raise ProviderError(
                f"Provider '{self.name}' does not support resource type '{resource_type}'"
            )

    def configure(self, config: dict) -> None:
        self.config = dict(config or {})

    def check_required(self, resource_type: str, attributes: dict) -> None:
        missing = sorted(a for a in self.schema(resource_type).required
                         if attributes.get(a) is None)
        if missing:
            raise ProviderError(
                f"{resource_type}: missing required attribute(s): {', '.join(missing)}"
            )

    def read(self, resource_type: str, attributes: dict) -> Optional[dict]:
        return dict(attributes)

    def update(self, resource_type: str, prior: dict, desired: dict) -> dict:
        merged = dict(prior)
        merged.update(desired)
        return merged


class NullProvider(BaseProvider):
    """null_resource: no real object; 'triggers' changes force replacement."""

    name = 'null'
    schemas = {
        'null_resource': ResourceSchema(force_new=frozenset({'triggers'})),
    }

    def create(self, resource_type: str, attributes: dict) -> dict:
        self.schema(resource_type)
        result = dict(attributes)
        result['id'] = str(secrets.randbits(63))
        return result

    def delete(self, resource_type: str, attributes: dict) -> None:
        self.schema(resource_type)


class LocalProvider(BaseProvider):
    """local_file: manages a file's content and permissions."""

    name = 'local'
    schemas = {
        'local_file': ResourceSchema(
            required=frozenset({'filename', 'content'}),
            force_new=frozenset({'filename', 'content', 'file_permission'}),
            computed=frozenset({'id', 'content_sha256'}),
        ),
    }

    DEFAULT_PERMISSION = '0644'

    @staticmethod
    def _describe(filename: str, content: str, permission: str) -> dict:
        data = content.encode('utf-8')
        return {
            'filename': filename,
            'content': content,
            'file_permission': permission,
            'id': hashlib.sha1(data).hexdigest(),
            'content_sha256': hashlib.sha256(data).hexdigest(),
        }

    def create(self, resource_type: str, attributes: dict) -> dict:
        self.check_required(resource_type, attributes)
        path = Path(str(attributes['filename']))
        content = str(attributes['content'])
        permission = str(attributes.get('file_permission') or self.DEFAULT_PERMISSION)
        try:
            mode = int(permission, 8)
        except ValueError:
            raise ProviderError(f"local_file: invalid file_permission '{permission}'")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding='utf-8')
            os.chmod(path, mode)
        except OSError as e:
            raise ProviderError(f"local_file: cannot write {path}: {e}")
        logger.debug(f"Wrote {len(content)} bytes to {path}")
        return self._describe(str(path), content, permission)

    def read(self, resource_type: str, attributes: dict) -> Optional[dict]:
        path = Path(str(attributes['filename']))
        if not path.exists():
            return None
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ProviderError(f"local_file: cannot read {path}: {e}")
        permission = attributes.get('file_permission') or self.DEFAULT_PERMISSION
        return self._describe(str(path), content, permission)

    def delete(self, resource_type: str, attributes: dict) -> None:
        path = Path(str(attributes['filename']))
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"local_file: cannot delete {path}: {e}")


class RandomProvider(BaseProvider):
    """random_string: generated on create, stable until replaced."""

    name = 'random'
    schemas = {
        'random_string': ResourceSchema(
            required=frozenset({'length'}),
            force_new=frozenset({'length', 'special', 'keepers'}),
            computed=frozenset({'id', 'result'}),
        ),
    }

    SPECIAL = '!@#$%&*()-_=+[]{}<>:?'

    def create(self, resource_type: str, attributes: dict) -> dict:
        self.check_required(resource_type, attributes)
        try:
            length = int(attributes['length'])
        except (TypeError, ValueError):
            raise ProviderError(f"random_string: length must be an integer, got {attributes['length']!r}")
        if length < 1:
            raise ProviderError("random_string: length must be >= 1")
        alphabet = string.ascii_letters + string.digits
        if attributes.get('special', True):
            alphabet += self.SPECIAL
        result = ''.join(secrets.choice(alphabet) for _ in range(length))
        created = dict(attributes)
        created.update({'result': result, 'id': result})
        return created

    def delete(self, resource_type: str, attributes: dict) -> None:
        self.schema(resource_type)


class RestProvider(BaseProvider):
    """rest_object: a JSON object managed through a REST collection endpoint.

    Provider configuration:
        base_url: API root (required)
        token: Bearer token (optional)
        headers: Extra request headers (optional)
        timeout: Request timeout in seconds (default 30)
        verify: TLS certificate verification (default True)

    Resource attributes:
        path: Collection path, e.g. /users (objects live at path/id)
        data: JSON body sent on create and update
        id_attribute: Response field holding the object id (default 'id')
    """

    name = 'rest'
    schemas = {
        'rest_object': ResourceSchema(
            required=frozenset({'path', 'data'}),
            force_new=frozenset({'path', 'id_attribute'}),
            computed=frozenset({'id', 'response'}),
        ),
    }

    def __init__(self, session: Optional[requests.Session] = None):
        super().__init__()
        self.session = session or requests.Session()

    def configure(self, config: dict) -> None:
        super().configure(config)
        if not self.config.get('base_url'):
            raise ConfigError("rest provider requires 'base_url'")
        headers = {'Accept': 'application/json'}
        headers.update(self.config.get('headers') or {})
        if token := self.config.get('token'):
            headers['Authorization'] = f'Bearer {token}'
        self.session.headers.update(headers)

    def _url(self, path: str, object_id: Optional[str] = None) -> str:
        base = str(self.config.get('base_url', '')).rstrip('/')
        url = f"{base}/{str(path).strip('/')}"
        if object_id is not None:
            url = f'{url}/{object_id}'
        return url

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        if not self.config.get('base_url'):
            raise ProviderError("rest provider is not configured (missing base_url)")
        try:
            resp = self.session.request(
                method,
                url,
                timeout=self.config.get('timeout', 30),
                verify=self.config.get('verify', True),
                **kwargs,
            )
        except requests.exceptions.Timeout:
            raise ProviderError(f"{method} {url}: timed out")
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url}: {e}")
        logger.debug(f"{method} {url} -> {resp.status_code}")
        return resp

    @staticmethod
    def _fail(method: str, url: str, resp: requests.Response) -> ProviderError:
        return ProviderError(
            f"{method} {url}: unexpected response {resp.status_code} - {resp.text[:100]}",
            status_code=resp.status_code,
        )

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def create(self, resource_type: str, attributes: dict) -> dict:
        self.check_required(resource_type, attributes)
        url = self._url(attributes['path'])
        resp = self._request('POST', url, json=attributes['data'])
        if resp.status_code >= 400:
            raise self._fail('POST', url, resp)
        body = self._json(resp)
        id_attribute = attributes.get('id_attribute') or 'id'
        object_id = body.get(id_attribute) if isinstance(body, dict) else None
        if object_id is None:
            raise ProviderError(f"POST {url}: response has no '{id_attribute}' field")
        created = dict(attributes)
        created.update({'id': str(object_id), 'response': body})
        return created

    def read(self, resource_type: str, attributes: dict) -> Optional[dict]:
        url = self._url(attributes['path'], attributes['id'])
        resp = self._request('GET', url)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise self._fail('GET', url, resp)
        current = dict(attributes)
        current['response'] = self._json(resp)
        return current

    def update(self, resource_type: str, prior: dict, desired: dict) -> dict:
        self.check_required(resource_type, desired)
        url = self._url(prior['path'], prior['id'])
        resp = self._request('PUT', url, json=desired['data'])
        if resp.status_code >= 400:
            raise self._fail('PUT', url, resp)
        updated = dict(desired)
        updated.update({'id': prior['id'], 'response': self._json(resp) or prior.get('response')})
        return updated

    def delete(self, resource_type: str, attributes: dict) -> None:
        url = self._url(attributes['path'], attributes['id'])
        resp = self._request('DELETE', url)
        if resp.status_code == 404:
            logger.debug(f"{url} already gone")
            return
        if resp.status_code >= 400:
            raise self._fail('DELETE', url, resp)


class ProviderRegistry:
    """Maps resource types to providers by type prefix."""

    def __init__(self, providers: Optional[list] = None):
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise ConfigError(
                f"Unknown provider '{name}'. Available: {', '.join(self.names) or 'none'}"
            )

    def for_type(self, resource_type: str) -> Provider:
        """Provider owning a resource type (prefix before the first '_')."""
        return self.get(resource_type.split('_', 1)[0])

    def schema(self, resource_type: str) -> ResourceSchema:
        return self.for_type(resource_type).schema(resource_type)

    def configure(self, configs: dict[str, dict]) -> None:
        """Configure providers from the stack's providers block.

        Raises:
            ConfigError: If a configured provider is unknown or rejects its config
        """
        for name, config in configs.items():
            self.get(name).configure(config or {})


def default_registry() -> ProviderRegistry:
    """Registry with all built-in providers."""
    return ProviderRegistry([NullProvider(), LocalProvider(), RandomProvider(), RestProvider()])
