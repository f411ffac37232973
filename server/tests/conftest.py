# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Pytest configuration and fixtures for sandbox manager tests.

This module provides shared fixtures and configuration for all test modules.
"""

import fnmatch
import os
import threading
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

TEST_CONFIG_PATH = Path(__file__).resolve().parent / "testdata" / "config.toml"
os.environ.setdefault("SANDBOX_CONFIG_PATH", str(TEST_CONFIG_PATH))

# Prevent real Docker connections during tests by mocking docker.from_env
import docker  # noqa: E402

_mock_docker_client = MagicMock()
_mock_docker_client.containers.list.return_value = []
docker.from_env = lambda: _mock_docker_client  # type: ignore

from sandbox_manager.config import AppConfig  # noqa: E402
from sandbox_manager.main import app  # noqa: E402


class FakeRedis:
    """
    In-process stand-in for the subset of ``redis.Redis`` the services use.

    Behaves like a client created with ``decode_responses=True``: values come
    back as ``str``.
    """

    def __init__(self):
        self._data = {}
        self._lock = threading.RLock()

    # strings
    def get(self, key):
        with self._lock:
            value = self._data.get(key)
            return value if isinstance(value, str) else None

    def set(self, key, value, nx=False):
        with self._lock:
            if nx and key in self._data:
                return None
            self._data[key] = str(value)
            return True

    def delete(self, *keys):
        with self._lock:
            return sum(1 for key in keys if self._data.pop(key, None) is not None)

    def exists(self, *keys):
        with self._lock:
            return sum(1 for key in keys if key in self._data)

    def scan_iter(self, match="*"):
        with self._lock:
            keys = [key for key in self._data if fnmatch.fnmatchcase(key, match)]
        return iter(keys)

    def keys(self, pattern="*"):
        return list(self.scan_iter(pattern))

    # sets
    def sadd(self, key, *values):
        with self._lock:
            members = self._data.setdefault(key, set())
            added = 0
            for value in values:
                if str(value) not in members:
                    members.add(str(value))
                    added += 1
            return added

    def srem(self, key, *values):
        with self._lock:
            members = self._data.get(key, set())
            removed = 0
            for value in values:
                if str(value) in members:
                    members.discard(str(value))
                    removed += 1
            return removed

    def smembers(self, key):
        with self._lock:
            return set(self._data.get(key, set()))

    def sismember(self, key, value):
        with self._lock:
            return str(value) in self._data.get(key, set())

    # lists
    def rpush(self, key, *values):
        with self._lock:
            items = self._data.setdefault(key, [])
            items.extend(str(value) for value in values)
            return len(items)

    def lpop(self, key):
        with self._lock:
            items = self._data.get(key)
            if not items:
                return None
            return items.pop(0)

    def llen(self, key):
        with self._lock:
            return len(self._data.get(key, []))

    def pipeline(self):
        return FakePipeline(self)

    def ping(self):
        return True

    def close(self):
        pass


class FakePipeline:
    def __init__(self, client: FakeRedis):
        self.client = client
        self._ops = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self._ops = []

    def set(self, *args, **kwargs):
        self._ops.append(("set", args, kwargs))
        return self

    def delete(self, *args, **kwargs):
        self._ops.append(("delete", args, kwargs))
        return self

    def execute(self):
        with self.client._lock:
            results = [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self._ops]
        self._ops = []
        return results


def pytest_configure(config):
    """
    Configure pytest with custom markers.
    """
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require Docker)"
    )


@pytest.fixture(scope="session")
def test_api_key() -> str:
    """
    Fixture providing a test API key (matches test configuration file).
    """
    return "test-api-key-12345"


@pytest.fixture(scope="function")
def client() -> TestClient:
    """
    Fixture providing a FastAPI test client.
    """
    return TestClient(app)


@pytest.fixture(scope="function")
def auth_headers(test_api_key: str) -> dict:
    """
    Fixture providing authentication headers.
    """
    return {"Authorization": f"Bearer {test_api_key}"}


@pytest.fixture(scope="function")
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(scope="session")
def app_config() -> AppConfig:
    """
    Fixture providing the test configuration file parsed into AppConfig.
    """
    return AppConfig.from_file(str(TEST_CONFIG_PATH))
