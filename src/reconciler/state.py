"""State management for stack reconciliation.

Persists the last-applied attributes of every resource instance plus root
outputs. Writes are guarded by an optimistic serial check: a snapshot may
only be written over the exact serial (and lineage) it was read at. Runs
that modify state additionally hold an advisory lock for their duration.

Backends:
- LocalStateStore: JSON file with .backup copy and a .lock sidecar
- HttpStateStore: remote state over HTTP (GET/POST state, LOCK/UNLOCK)
"""

import getpass
import json
import logging
import os
import shutil
import socket
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import requests

from config import ConfigError, Settings
from stack import BackendConfig

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateError(Exception):
    """State could not be read or written."""


class StateConflictError(StateError):
    """Stored state changed since the snapshot was read."""


class StateLockError(StateError):
    """State lock is held by someone else (or not held by us).

    Attributes:
        info: LockInfo of the current holder, when known
    """

    def __init__(self, message: str, info: Optional['LockInfo'] = None):
        self.info = info
        if info is not None:
            message = (f"{message}\n  Lock ID: {info.id}\n  Operation: {info.operation}\n"
                       f"  Who: {info.who}\n  Created: {info.created}")
        super().__init__(message)


@dataclass
class LockInfo:
    """Holder details recorded with a state lock."""
    id: str
    operation: str
    who: str
    created: str
    path: str = ''

    @classmethod
    def new(cls, operation: str, path: str = '') -> 'LockInfo':
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = 'unknown'
        return cls(
            id=str(uuid.uuid4()),
            operation=operation,
            who=f'{user}@{socket.gethostname()}',
            created=datetime.now(timezone.utc).isoformat(),
            path=path,
        )

    def to_dict(self) -> dict:
        return {
            'ID': self.id,
            'Operation': self.operation,
            'Who': self.who,
            'Created': self.created,
            'Path': self.path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            id=data.get('ID', ''),
            operation=data.get('Operation', ''),
            who=data.get('Who', ''),
            created=data.get('Created', ''),
            path=data.get('Path', ''),
        )


@dataclass
class ResourceState:
    """Stored state of one resource instance.

    Attributes:
        address: Instance address
        type: Resource type
        name: Resource name
        module_path: Module names from root
        index_key: count index or for_each key
        provider: Provider name
        attributes: Full attributes as returned by the provider
        dependencies: Instance addresses it depended on when applied
        config_keys: Attribute names set by configuration when applied
        status: 'created' or 'tainted' (must be replaced)
    """
    address: str
    type: str
    name: str
    provider: str
    attributes: dict = field(default_factory=dict)
    module_path: list[str] = field(default_factory=list)
    index_key: Any = None
    dependencies: list[str] = field(default_factory=list)
    config_keys: list[str] = field(default_factory=list)
    status: str = 'created'

    @property
    def tainted(self) -> bool:
        return self.status == 'tainted'

    def taint(self) -> None:
        self.status = 'tainted'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'type': self.type,
            'name': self.name,
            'provider': self.provider,
            'status': self.status,
            'attributes': self.attributes,
        }
        if self.module_path:
            d['module_path'] = self.module_path
        if self.index_key is not None:
            d['index_key'] = self.index_key
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.config_keys:
            d['config_keys'] = self.config_keys
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            address=data['address'],
            type=data['type'],
            name=data['name'],
            provider=data.get('provider', data['type'].split('_', 1)[0]),
            attributes=data.get('attributes', {}),
            module_path=data.get('module_path', []),
            index_key=data.get('index_key'),
            dependencies=data.get('dependencies', []),
            config_keys=data.get('config_keys', []),
            status=data.get('status', 'created'),
        )


@dataclass
class StateSnapshot:
    """A point-in-time copy of stack state.

    Attributes:
        lineage: Identity of this state's history (set once on creation)
        serial: Serial the snapshot was read at; bumped by each write
        resources: ResourceState by address
        outputs: Output name -> {'value': ..., 'sensitive': bool}
    """
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    version: int = STATE_VERSION
    resources: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, dict] = field(default_factory=dict)

    @property
    def addresses(self) -> list[str]:
        return sorted(self.resources)

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def get(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)

    def set(self, resource: ResourceState) -> None:
        self.resources[resource.address] = resource

    def remove(self, address: str) -> Optional[ResourceState]:
        return self.resources.pop(address, None)

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'lineage': self.lineage,
            'serial': self.serial,
            'resources': [self.resources[a].to_dict() for a in self.addresses],
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StateSnapshot':
        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise StateError(f"Unsupported state version: {version} (expected {STATE_VERSION})")
        if 'lineage' not in data:
            raise StateError("State missing required field: lineage")
        snapshot = cls(
            lineage=data['lineage'],
            serial=int(data.get('serial', 0)),
            version=version,
            outputs=data.get('outputs', {}),
        )
        for item in data.get('resources', []):
            snapshot.set(ResourceState.from_dict(item))
        return snapshot

    def copy(self) -> 'StateSnapshot':
        return StateSnapshot.from_dict(json.loads(json.dumps(self.to_dict())))


class StateStore:
    """Base class for state backends.

    Subclasses implement _fetch/_store and lock/unlock; the optimistic
    serial check lives here.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._lock_id: Optional[str] = None

    @property
    def description(self) -> str:
        return type(self).__name__

    def _fetch(self) -> Optional[dict]:
        """Return stored state data, or None if nothing is stored."""
        raise NotImplementedError

    def _store(self, data: dict) -> None:
        raise NotImplementedError

    def lock(self, operation: str) -> LockInfo:
        raise NotImplementedError

    def unlock(self, lock_id: str, force: bool = False) -> None:
        raise NotImplementedError

    def read(self) -> StateSnapshot:
        """Read current state (an empty snapshot if none is stored)."""
        data = self._fetch()
        if data is None:
            return StateSnapshot()
        return StateSnapshot.from_dict(data)

    def write(self, snapshot: StateSnapshot) -> int:
        """Persist a snapshot if stored state is still at snapshot.serial.

        On success snapshot.serial is advanced so further writes chain.

        Returns:
            The new stored serial

        Raises:
            StateConflictError: If stored serial or lineage differ
        """
        with self._mutex:
            current = self._fetch()
            if current is not None:
                if current.get('lineage') != snapshot.lineage:
                    raise StateConflictError(
                        f"State lineage mismatch: stored {current.get('lineage')}, "
                        f"writing {snapshot.lineage}"
                    )
                stored_serial = int(current.get('serial', 0))
            else:
                stored_serial = 0
            if stored_serial != snapshot.serial:
                raise StateConflictError(
                    f"State changed since it was read (stored serial {stored_serial}, "
                    f"expected {snapshot.serial})"
                )

            snapshot.serial += 1
            try:
                self._store(snapshot.to_dict())
            except Exception:
                snapshot.serial -= 1
                raise
            logger.debug(f"Wrote state serial {snapshot.serial} to {self.description}")
            return snapshot.serial

    def acquire(self, operation: str, timeout: float = 0.0, interval: float = 1.0) -> LockInfo:
        """Take the state lock, retrying until timeout seconds have passed."""
        start = time.time()
        while True:
            try:
                return self.lock(operation)
            except StateLockError:
                if time.time() - start >= timeout:
                    raise
                logger.info(f"State locked, retrying in {interval}s...")
                time.sleep(interval)

    @contextmanager
    def locked(self, operation: str, timeout: float = 0.0) -> Iterator[LockInfo]:
        """Hold the state lock for the duration of a block."""
        info = self.acquire(operation, timeout=timeout)
        try:
            yield info
        finally:
            self.unlock(info.id)


class LocalStateStore(StateStore):
    """State in a local JSON file.

    The previous version is kept as <path>.backup; the lock is a
    <path>.lock file created exclusively.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self.backup_path = self.path.with_name(self.path.name + '.backup')

    @property
    def description(self) -> str:
        return str(self.path)

    def _fetch(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state file {self.path}: {e}")

    def _store(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copyfile(self.path, self.backup_path)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f'.{self.path.name}.')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def lock_info(self) -> Optional[LockInfo]:
        """Current lock holder, or None if unlocked."""
        try:
            with open(self.lock_path, encoding='utf-8') as f:
                return LockInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            return LockInfo(id='', operation='unknown', who='unknown', created='')

    def lock(self, operation: str) -> LockInfo:
        info = LockInfo.new(operation, path=str(self.path))
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise StateLockError(f"State {self.path} is locked", self.lock_info())
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info.to_dict(), f, indent=2)
        self._lock_id = info.id
        logger.debug(f"Acquired state lock {info.id} on {self.path}")
        return info

    def unlock(self, lock_id: str, force: bool = False) -> None:
        holder = self.lock_info()
        if holder is None:
            raise StateLockError(f"State {self.path} is not locked")
        if holder.id != lock_id and not force:
            raise StateLockError(f"Lock ID '{lock_id}' does not match the current lock", holder)
        self.lock_path.unlink(missing_ok=True)
        self._lock_id = None
        logger.debug(f"Released state lock {holder.id} on {self.path}")


class HttpStateStore(StateStore):
    """State stored behind an HTTP endpoint.

    Protocol:
        GET address            -> 200 with state JSON, or 204/404 when empty
        POST address?ID=<lock> -> store state
        LOCK lock_address      -> 200 locked, 423/409 held (body: holder LockInfo)
        UNLOCK unlock_address  -> 200 released

    Without lock_address, locking is a no-op.
    """

    def __init__(self, address: str, lock_address: Optional[str] = None,
                 unlock_address: Optional[str] = None, username: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        super().__init__()
        self.address = address
        self.lock_address = lock_address
        self.unlock_address = unlock_address or lock_address
        self.timeout = timeout
        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password or '')

    @property
    def description(self) -> str:
        return self.address

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise StateError(f"{method} {url} failed: {e}")

    def _fetch(self) -> Optional[dict]:
        resp = self._request('GET', self.address)
        if resp.status_code in (204, 404) or (resp.status_code == 200 and not resp.content):
            return None
        if resp.status_code != 200:
            raise StateError(f"GET {self.address}: unexpected response {resp.status_code} - {resp.text[:100]}")
        try:
            return resp.json()
        except ValueError as e:
            raise StateError(f"GET {self.address}: invalid state JSON: {e}")

    def _store(self, data: dict) -> None:
        params = {'ID': self._lock_id} if self._lock_id else None
        resp = self._request('POST', self.address, json=data, params=params)
        if resp.status_code == 409:
            raise StateConflictError(f"POST {self.address}: state conflict")
        if resp.status_code == 423:
            raise StateLockError(f"POST {self.address}: state is locked", self._holder(resp))
        if resp.status_code not in (200, 201, 204):
            raise StateError(f"POST {self.address}: unexpected response {resp.status_code} - {resp.text[:100]}")

    @staticmethod
    def _holder(resp: requests.Response) -> Optional[LockInfo]:
        try:
            data = resp.json()
        except ValueError:
            return None
        return LockInfo.from_dict(data) if isinstance(data, dict) else None

    def lock(self, operation: str) -> LockInfo:
        info = LockInfo.new(operation, path=self.address)
        if not self.lock_address:
            return info
        resp = self._request('LOCK', self.lock_address, json=info.to_dict())
        if resp.status_code in (409, 423):
            raise StateLockError(f"State {self.address} is locked", self._holder(resp))
        if resp.status_code != 200:
            raise StateError(f"LOCK {self.lock_address}: unexpected response {resp.status_code}")
        self._lock_id = info.id
        return info

    def unlock(self, lock_id: str, force: bool = False) -> None:
        if not self.unlock_address:
            return
        body = {} if force else {'ID': lock_id}
        resp = self._request('UNLOCK', self.unlock_address, json=body)
        if resp.status_code in (409, 423):
            raise StateLockError(f"Lock ID '{lock_id}' does not match the current lock", self._holder(resp))
        if resp.status_code != 200:
            raise StateError(f"UNLOCK {self.unlock_address}: unexpected response {resp.status_code}")
        self._lock_id = None


def create_state_store(backend: BackendConfig, stack_name: str, base_dir: Path,
                       settings: Optional[Settings] = None) -> StateStore:
    """Build the state store for a stack's backend configuration.

    Local state defaults to <base_dir>/<state_dir>/<stack>.state.json.
    """
    settings = settings or Settings()
    options = backend.options
    if backend.type == 'local':
        if path := options.get('path'):
            state_path = Path(path)
            if not state_path.is_absolute():
                state_path = base_dir / state_path
        else:
            state_path = base_dir / settings.state_dir / f'{stack_name}.state.json'
        return LocalStateStore(state_path)
    if backend.type == 'http':
        return HttpStateStore(
            address=options['address'],
            lock_address=options.get('lock_address'),
            unlock_address=options.get('unlock_address'),
            username=options.get('username'),
            password=options.get('password'),
            timeout=float(options.get('timeout', 30)),
        )
    raise ConfigError(f"Unknown backend type '{backend.type}'")
