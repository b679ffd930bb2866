"""Shared pytest fixtures for stackctl tests."""

import sys
import threading
import time
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconciler.providers import BaseProvider, ProviderError, ProviderRegistry, ResourceSchema  # noqa: E402


class FakeProvider(BaseProvider):
    """In-memory provider for 'fake_thing' resources.

    Objects live in self.objects keyed by id. Calls are recorded in order
    as (method, label) where label is the 'name' attribute.
    """

    name = 'fake'
    schemas = {
        'fake_thing': ResourceSchema(
            force_new=frozenset({'zone'}),
            computed=frozenset({'id', 'serial'}),
        ),
    }

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.partial_on: set[str] = set()
        self.active = 0
        self.max_active = 0
        self._counter = 0
        self._lock = threading.Lock()

    def _enter(self, method: str, attributes: dict) -> str:
        label = str(attributes.get('name', ''))
        with self._lock:
            self.calls.append((method, label))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.delay:
            time.sleep(self.delay)
        return label

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def _next_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f'fake-{self._counter}'

    def methods(self, method: str) -> list[str]:
        return [label for m, label in self.calls if m == method]

    def read(self, resource_type: str, attributes: dict):
        obj = self.objects.get(attributes.get('id'))
        return dict(obj) if obj is not None else None

    def create(self, resource_type: str, attributes: dict) -> dict:
        label = self._enter('create', attributes)
        try:
            if label in self.partial_on:
                partial = dict(attributes, id=self._next_id())
                self.objects[partial['id']] = partial
                raise ProviderError(f"{label}: setup failed after create", partial=partial)
            if label in self.fail_on:
                raise ProviderError(f"{label}: create failed")
            created = dict(attributes, id=self._next_id(), serial=1)
            self.objects[created['id']] = created
            return dict(created)
        finally:
            self._leave()

    def update(self, resource_type: str, prior: dict, desired: dict) -> dict:
        label = self._enter('update', desired)
        try:
            if label in self.fail_on:
                raise ProviderError(f"{label}: update failed")
            updated = dict(desired, id=prior['id'], serial=prior.get('serial', 0) + 1)
            self.objects[updated['id']] = updated
            return dict(updated)
        finally:
            self._leave()

    def delete(self, resource_type: str, attributes: dict) -> None:
        label = self._enter('delete', attributes)
        try:
            if label in self.fail_on:
                raise ProviderError(f"{label}: delete failed")
            self.objects.pop(attributes.get('id'), None)
        finally:
            self._leave()


@pytest.fixture
def fake_provider():
    """A fresh FakeProvider."""
    return FakeProvider()


@pytest.fixture
def fake_registry(fake_provider):
    """Registry holding only the fake provider."""
    return ProviderRegistry([fake_provider])


@pytest.fixture
def write_stack(tmp_path):
    """Write a stack definition to <tmp_path>/<subdir>/stack.yaml.

    Returns:
        Function (data, subdir='') -> Path of the written file
    """
    def _write(data: dict, subdir: str = '') -> Path:
        directory = tmp_path / subdir if subdir else tmp_path
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / 'stack.yaml'
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path
    return _write


@pytest.fixture(autouse=True)
def clean_stackctl_env(monkeypatch):
    """Keep STACKCTL_* variables from the host out of tests."""
    import os
    for key in list(os.environ):
        if key.startswith('STACKCTL_'):
            monkeypatch.delenv(key)
