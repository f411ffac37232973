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

from unittest.mock import MagicMock, patch

import pytest

from sandbox_manager.config import AppConfig, CloudConfig
from sandbox_manager.services.cloud import CloudSessionDriver
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.errors import (
    BackendUnsupportedOperationError,
    ProvisioningError,
    SandboxError,
)


def _driver(client=None):
    config = AppConfig(cloud=CloudConfig(api_key="key", image_id="linux_latest"))
    return CloudSessionDriver(config=config, client=client or MagicMock())


@patch.object(CloudSessionDriver, "_new_session_params")
def test_create_uses_configured_image_for_placeholder(mock_params):
    client = MagicMock()
    client.create.return_value = MagicMock(success=True, session=MagicMock(session_id="sess-1"))
    driver = _driver(client)

    result = driver.create_container("sbx-1", "agentbay-cloud", [], [], {}, {})

    assert result.container_id == "sess-1"
    assert result.ip is None
    assert result.ports == []
    mock_params.assert_called_once_with("linux_latest", {"sandbox-name": "sbx-1"})
    client.create.assert_called_once_with(mock_params.return_value)


@patch.object(CloudSessionDriver, "_new_session_params")
def test_create_failure_raises(mock_params):
    client = MagicMock()
    client.create.return_value = MagicMock(success=False, error_message="quota")

    with pytest.raises(ProvisioningError) as exc:
        _driver(client).create_container("sbx-1", "custom-image", [], [], {}, {})
    assert exc.value.code == SandboxErrorCodes.CLOUD_SESSION_FAILED
    mock_params.assert_called_once_with("custom-image", {"sandbox-name": "sbx-1"})


def test_stop_deletes_session():
    client = MagicMock()
    session = MagicMock()
    client.get.return_value = MagicMock(success=True, session=session)
    client.delete.return_value = MagicMock(success=True)

    _driver(client).stop_container("sess-1")

    client.delete.assert_called_once_with(session)


def test_stop_of_missing_session_is_noop():
    client = MagicMock()
    client.get.return_value = MagicMock(success=False)

    _driver(client).stop_container("sess-1")

    client.delete.assert_not_called()


def test_stop_failure_raises():
    client = MagicMock()
    client.get.return_value = MagicMock(success=True, session=MagicMock())
    client.delete.return_value = MagicMock(success=False, error_message="denied")

    with pytest.raises(SandboxError):
        _driver(client).stop_container("sess-1")


def test_remove_is_unsupported():
    driver = _driver()
    assert driver.supports_remove is False
    with pytest.raises(BackendUnsupportedOperationError) as exc:
        driver.remove_container("sess-1")
    assert exc.value.status_code == 501


def test_get_status_reports_session_state():
    client = MagicMock()
    session = MagicMock()
    session.get_status.return_value = MagicMock(success=True, status="RUNNING")
    client.get.return_value = MagicMock(success=True, session=session)

    assert _driver(client).get_status("sess-1") == "running"

    client.get.return_value = MagicMock(success=False)
    assert _driver(client).get_status("sess-1") == "not_found"


def test_describe_returns_session_info():
    client = MagicMock()
    session = MagicMock()
    info = MagicMock(success=True, request_id="req-1")
    info.data.session_id = "sess-1"
    info.data.resource_url = "https://console/resource"
    session.info.return_value = info
    client.get.return_value = MagicMock(success=True, session=session)

    data = _driver(client).describe("sess-1")

    assert data["sessionId"] == "sess-1"
    assert data["resourceUrl"] == "https://console/resource"
    assert data["requestId"] == "req-1"


def test_missing_api_key_fails_on_first_use():
    driver = CloudSessionDriver(config=AppConfig(cloud=CloudConfig(api_key=None)))
    with pytest.raises(SandboxError) as exc:
        driver.get_status("sess-1")
    assert exc.value.code == SandboxErrorCodes.CLOUD_INITIALIZATION_ERROR


@patch.object(CloudSessionDriver, "_new_session_params")
def test_create_merges_caller_labels(mock_params):
    client = MagicMock()
    client.create.return_value = MagicMock(success=True, session=MagicMock(session_id="sess-2"))

    _driver(client).create_container("sbx-2", "img-custom", [], [], {}, {}, labels={"team": "eval"})

    mock_params.assert_called_once_with("img-custom", {"team": "eval", "sandbox-name": "sbx-2"})
