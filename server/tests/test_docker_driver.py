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
from docker.errors import APIError, ImageNotFound, NotFound

from sandbox_manager.config import AppConfig, RuntimeConfig
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.docker import DockerDriver
from sandbox_manager.services.errors import ProvisioningError, SandboxError
from sandbox_manager.services.models import VolumeBinding


def _config() -> AppConfig:
    return AppConfig(runtime=RuntimeConfig(host="10.1.2.3", protocol="http"))


@patch("sandbox_manager.services.docker.docker")
def test_create_container_publishes_port_and_mounts(mock_docker):
    mock_client = MagicMock()
    mock_client.containers.create.return_value = MagicMock(id="cid-123")
    mock_docker.from_env.return_value = mock_client

    driver = DockerDriver(config=_config())
    result = driver.create_container(
        name="runtime_sandbox_container_abc",
        image="img:latest",
        ports=[41000],
        volume_bindings=[VolumeBinding("/host/work", "/workspace", "rw")],
        env={"SECRET_TOKEN": "tok"},
        runtime_config={"shm_size": "1gb", "privileged": "true"},
        labels={"team": "eval"},
    )

    assert result.container_id == "cid-123"
    assert result.ip == "10.1.2.3"
    assert result.ports == [41000]
    kwargs = mock_client.containers.create.call_args.kwargs
    assert kwargs["image"] == "img:latest"
    assert kwargs["name"] == "runtime_sandbox_container_abc"
    assert kwargs["ports"] == {"80/tcp": 41000}
    assert kwargs["volumes"] == {"/host/work": {"bind": "/workspace", "mode": "rw"}}
    assert kwargs["environment"] == {"SECRET_TOKEN": "tok"}
    assert kwargs["shm_size"] == 1_000_000_000
    assert kwargs["privileged"] is True
    assert kwargs["labels"] == {"team": "eval"}


@patch("sandbox_manager.services.docker.docker")
def test_create_failure_raises_provisioning_error(mock_docker):
    mock_client = MagicMock()
    mock_client.containers.create.side_effect = APIError("conflict")
    mock_docker.from_env.return_value = mock_client

    driver = DockerDriver(config=_config())

    with pytest.raises(ProvisioningError) as exc:
        driver.create_container("name", "img", [41000], [], {}, {})
    assert exc.value.code == SandboxErrorCodes.CONTAINER_CREATE_FAILED


@patch("sandbox_manager.services.docker.docker")
def test_missing_image_is_pulled(mock_docker):
    mock_client = MagicMock()
    mock_client.images.get.side_effect = ImageNotFound("missing")
    mock_docker.from_env.return_value = mock_client

    driver = DockerDriver(config=_config())

    assert driver.ensure_image_available("img:latest") is True
    mock_client.images.pull.assert_called_once_with("img:latest")


@patch("sandbox_manager.services.docker.docker")
def test_cached_image_is_not_pulled(mock_docker):
    mock_client = MagicMock()
    mock_docker.from_env.return_value = mock_client

    DockerDriver(config=_config()).ensure_image_available("img:latest")

    mock_client.images.pull.assert_not_called()


@patch("sandbox_manager.services.docker.docker")
def test_pull_failure_raises(mock_docker):
    mock_client = MagicMock()
    mock_client.images.get.side_effect = ImageNotFound("missing")
    mock_client.images.pull.side_effect = APIError("denied")
    mock_docker.from_env.return_value = mock_client

    with pytest.raises(ProvisioningError) as exc:
        DockerDriver(config=_config()).ensure_image_available("img:latest")
    assert exc.value.code == SandboxErrorCodes.IMAGE_PULL_FAILED


@patch("sandbox_manager.services.docker.docker")
def test_lifecycle_calls_reach_container(mock_docker):
    mock_client = MagicMock()
    container = MagicMock()
    mock_client.containers.get.return_value = container
    mock_docker.from_env.return_value = mock_client
    driver = DockerDriver(config=_config())

    driver.start_container("cid")
    driver.stop_container("cid")
    driver.remove_container("cid")

    container.start.assert_called_once()
    container.stop.assert_called_once()
    container.remove.assert_called_once_with(force=True)


@patch("sandbox_manager.services.docker.docker")
def test_stop_and_remove_of_missing_container_are_noops(mock_docker):
    mock_client = MagicMock()
    mock_client.containers.get.side_effect = NotFound("gone")
    mock_docker.from_env.return_value = mock_client
    driver = DockerDriver(config=_config())

    driver.stop_container("cid")
    driver.remove_container("cid")
    assert driver.get_status("cid") == "not_found"


@patch("sandbox_manager.services.docker.docker")
def test_stop_failure_raises_sandbox_error(mock_docker):
    mock_client = MagicMock()
    mock_client.containers.get.return_value.stop.side_effect = APIError("boom")
    mock_docker.from_env.return_value = mock_client

    with pytest.raises(SandboxError) as exc:
        DockerDriver(config=_config()).stop_container("cid")
    assert exc.value.code == SandboxErrorCodes.CONTAINER_STOP_FAILED


@patch("sandbox_manager.services.docker.docker")
def test_get_status_reads_container_state(mock_docker):
    mock_client = MagicMock()
    container = MagicMock()
    container.attrs = {"State": {"Status": "Exited"}}
    mock_client.containers.get.return_value = container
    mock_docker.from_env.return_value = mock_client

    assert DockerDriver(config=_config()).get_status("cid") == "exited"


@patch("sandbox_manager.services.docker.docker")
def test_client_init_failure_raises(mock_docker):
    mock_docker.from_env.side_effect = FileNotFoundError("No such file or directory")

    with pytest.raises(SandboxError) as exc:
        DockerDriver(config=_config())
    assert exc.value.code == SandboxErrorCodes.DOCKER_INITIALIZATION_ERROR
    assert exc.value.status_code == 503


@patch("sandbox_manager.services.docker.docker")
def test_container_name_keeps_underscores(mock_docker):
    driver = DockerDriver(config=_config())
    assert driver.container_name("Runtime_Sandbox_", "AbC") == "runtime_sandbox_abc"
