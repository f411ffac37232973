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
Sandbox orchestration service.

``SandboxService`` resolves a sandbox identity to a running container: it
reuses the registered one, draws from the warm pool, or creates a fresh one.
It owns release, soft close and bulk cleanup, and routes tool calls to the
wire client matching the container's image. It is the error boundary for
everything below it: failed provisioning is rolled back and surfaces as a
single ``ProvisioningError``.
"""

import logging
import os
import shutil
from typing import Any, Dict, List, Optional, Union

from fastapi import status

from sandbox_manager.config import AppConfig, get_config
from sandbox_manager.services import registry
from sandbox_manager.services.constants import (
    REUSABLE_STATUSES,
    STATUS_NOT_FOUND,
    STATUS_UNKNOWN,
    WORKSPACE_DIR,
    SandboxErrorCodes,
)
from sandbox_manager.services.driver import ContainerDriver, timed_operation
from sandbox_manager.services.errors import ProvisioningError, SandboxError, SandboxNotFoundError
from sandbox_manager.services.factory import (
    create_driver,
    create_port_allocator,
    create_sandbox_map,
    redis_key,
)
from sandbox_manager.services.models import (
    ContainerRecord,
    ReleaseResult,
    SandboxIdentity,
    SandboxKind,
    VolumeBinding,
    build_urls,
    new_runtime_token,
    new_session_token,
)
from sandbox_manager.services.pool import (
    ContainerPool,
    InMemoryContainerQueue,
    RedisContainerQueue,
)
from sandbox_manager.services.ports import PortAllocator
from sandbox_manager.services.redis_factory import get_redis_client
from sandbox_manager.services.remote import RemoteSandboxClient
from sandbox_manager.services.sandbox_map import SandboxMap
from sandbox_manager.services.storage import StorageSync, create_storage_sync
from sandbox_manager.services.wire import DEFAULT_TIMEOUT, connect, error_payload

logger = logging.getLogger(__name__)

SandboxTarget = Union[SandboxIdentity, str]


class SandboxService:
    """
    Facade over the registry, port ledger, storage, driver and pool.

    When ``remote.base_url`` is configured every public operation is sent to
    that manager instead and no local collaborator is built.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        driver: Optional[ContainerDriver] = None,
        sandbox_map: Optional[SandboxMap] = None,
        ports: Optional[PortAllocator] = None,
        storage: Optional[StorageSync] = None,
        pool: Optional[ContainerPool] = None,
        remote: Optional[RemoteSandboxClient] = None,
    ):
        self.config = config or get_config()

        if remote is None and self.config.remote_mode:
            remote = RemoteSandboxClient(
                self.config.remote.base_url,
                self.config.remote.bearer_token,
                timeout=self.config.remote.timeout,
            )
        self.remote = remote
        if self.remote is not None:
            logger.info("SandboxService running in remote mode")
            self.driver = None
            self.sandbox_map = None
            self.ports = None
            self.storage = None
            self.pool = None
            return

        self.driver = driver if driver is not None else create_driver(self.config)
        self.sandbox_map = sandbox_map if sandbox_map is not None else create_sandbox_map(self.config)
        self.ports = ports if ports is not None else create_port_allocator(self.config)
        self.storage = storage if storage is not None else create_storage_sync(self.config.storage)
        self.pool = pool if pool is not None else self._build_pool()
        logger.info(
            "SandboxService initialized: driver=%s, shared_store=%s, pool=%s",
            self.driver.name,
            self.config.redis.enabled,
            f"{self.pool.kind}x{self.pool.size}" if self.pool else "disabled",
        )

    def _build_pool(self) -> Optional[ContainerPool]:
        pool_config = self.config.pool
        if pool_config.size <= 0:
            return None
        if self.config.redis.enabled:
            queue = RedisContainerQueue(
                get_redis_client(self.config.redis),
                redis_key(self.config, self.config.redis.pool_key),
            )
        else:
            queue = InMemoryContainerQueue()
        kind = SandboxKind.normalize(pool_config.kind)
        return ContainerPool(
            kind=kind,
            size=pool_config.size,
            factory=lambda: self.create_container(kind),
            queue=queue,
            release_fn=lambda record: self._teardown(record, sync_storage=False),
            status_fn=self._backend_status,
            current_version=registry.resolve_image(kind, self.config.runtime),
        )

    def warm_up(self) -> None:
        """Start filling the warm pool in the background."""
        if self.pool is not None:
            self.pool.start()

    def shutdown(self, cleanup: bool = True) -> None:
        """Stop the pool, release pooled containers and optionally every registered one."""
        if self.remote is not None:
            self.remote.close_client()
            return
        if self.pool is not None:
            self.pool.stop()
            self.pool.drain()
        if cleanup:
            self.cleanup_all()

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(
        self,
        identity: SandboxIdentity,
        env: Optional[Dict[str, str]] = None,
        storage_path: Optional[str] = None,
        mount_dir: Optional[str] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> ContainerRecord:
        """
        Return the running sandbox for ``identity``, creating one if needed.

        Repeated calls for a live identity return the same record and reopen a
        soft-closed identity. A registered record whose container is gone,
        stopped or unreadable is released and replaced.

        Args:
            identity: Owner, session and kind the sandbox belongs to
            env: Environment overrides for a new container
            storage_path: Logical storage path hydrated into the working directory
            mount_dir: Host working directory; generated when omitted
            image_id: Image used instead of the kind's registered one
            labels: Labels attached to the backend resource

        Raises:
            ProvisioningError: If a new container could not be created
        """
        if self.remote is not None:
            return self.remote.provision(identity, env, storage_path, mount_dir, image_id, labels)

        existing = self.sandbox_map.get(identity)
        if existing is not None:
            try:
                current = self._backend_status(existing)
            except SandboxError as exc:
                logger.warning("Status of %s unavailable: %s", existing.sandbox_id, exc.message)
                current = STATUS_UNKNOWN
            if current in REUSABLE_STATUSES:
                self._reopen(identity)
                logger.info("Reusing sandbox %s for %s", existing.sandbox_id, identity.key())
                return existing
            logger.info(
                "Sandbox %s for %s is %s; replacing it",
                existing.sandbox_id,
                identity.key(),
                current,
            )
            self._release_quietly(existing)

        record = None
        if not (env or mount_dir or image_id or labels):
            record = self._draw_from_pool(identity, storage_path)
        if record is None:
            record = self.create_container(identity.kind, env, storage_path, mount_dir, image_id, labels)

        winner = self.sandbox_map.put_if_absent(identity, record)
        if winner is not None:
            logger.info(
                "Lost provisioning race for %s to %s; releasing %s",
                identity.key(),
                winner.sandbox_id,
                record.sandbox_id,
            )
            self._teardown(record, sync_storage=False)
            record = winner
        self._reopen(identity)
        return record

    def _draw_from_pool(
        self,
        identity: SandboxIdentity,
        storage_path: Optional[str],
    ) -> Optional[ContainerRecord]:
        # Pooled containers carry the registered image, environment and labels only.
        if self.pool is None:
            return None
        record = self.pool.draw(identity.kind)
        if record is None:
            return None
        if storage_path and self.driver.supports_bind_mounts and record.mount_dir:
            if not self.storage.download(storage_path, record.mount_dir):
                logger.warning("Hydration of %s from %s failed; continuing empty", record.sandbox_id, storage_path)
            record.storage_path = storage_path
        return record

    def create_container(
        self,
        kind: str,
        env: Optional[Dict[str, str]] = None,
        storage_path: Optional[str] = None,
        mount_dir: Optional[str] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> ContainerRecord:
        """
        Create and start a fresh, unregistered container of ``kind``.

        Every resource taken along the way (ports, working directory,
        container) is released again if a later step fails. A caller supplied
        ``mount_dir`` is only deleted on rollback when this call created it.

        Raises:
            ProvisioningError: On any failure
        """
        kind = SandboxKind.normalize(kind)
        runtime = self.config.runtime
        driver = self.driver
        environment = registry.merge_environment(kind, env)
        image = image_id or registry.resolve_image(kind, runtime)
        runtime_config = registry.runtime_config(kind)

        session_token = new_session_token()
        name = driver.container_name(runtime.container_prefix, session_token)
        runtime_token = new_runtime_token()
        environment["SECRET_TOKEN"] = runtime_token

        ports: List[int] = []
        requested_mount_dir = mount_dir
        mount_dir = None
        created_mount_dir = False
        container_id: Optional[str] = None
        try:
            if driver.supports_image_pull and not driver.ensure_image_available(image):
                raise ProvisioningError(
                    f"Image {image} is not available",
                    code=SandboxErrorCodes.IMAGE_PULL_FAILED,
                )
            if driver.uses_host_ports:
                ports = self.ports.acquire_many(1)

            bindings: List[VolumeBinding] = []
            if driver.supports_bind_mounts:
                mount_dir = os.path.abspath(
                    os.path.expanduser(requested_mount_dir)
                    if requested_mount_dir
                    else os.path.join(os.getcwd(), self.config.storage.mount_dir, session_token)
                )
                created_mount_dir = not os.path.isdir(mount_dir)
                os.makedirs(mount_dir, exist_ok=True)
                if storage_path and not self.storage.download(storage_path, mount_dir):
                    logger.warning("Hydration of %s from %s failed; continuing empty", name, storage_path)
                bindings.append(VolumeBinding(mount_dir, WORKSPACE_DIR, "rw"))
                bindings.extend(self._readonly_bindings())

            result = driver.create_container(
                name, image, ports, bindings, environment, runtime_config, labels=labels
            )
            container_id = result.container_id
            driver.start_container(container_id)

            host = driver.get_endpoint(container_id) or result.ip
            access_port = result.ports[0] if result.ports else 80
            urls = build_urls(result.protocol, host, access_port, runtime_token) if host else {}
            record = ContainerRecord(
                session_id=session_token,
                container_id=container_id,
                container_name=name,
                ports=list(result.ports),
                mount_dir=mount_dir,
                storage_path=storage_path,
                runtime_token=runtime_token,
                version=image,
                kind=kind,
                **urls,
            )
            self._wait_until_ready(record)
        except Exception as exc:
            self._rollback(name, container_id, ports, mount_dir if created_mount_dir else None)
            if isinstance(exc, ProvisioningError):
                raise
            if isinstance(exc, SandboxError):
                raise ProvisioningError(exc.message, code=exc.code, status_code=exc.status_code) from exc
            raise ProvisioningError(f"Failed to create sandbox {name}: {exc}") from exc

        logger.info("Created sandbox %s (kind=%s, container=%s)", name, kind, container_id)
        return record

    def _wait_until_ready(self, record: ContainerRecord) -> None:
        timeout = self.config.runtime.readiness_timeout
        if timeout <= 0 or not record.base_url:
            return
        with connect(record, timeout=DEFAULT_TIMEOUT) as client:
            client.wait_until_healthy(timeout=timeout)

    def _readonly_bindings(self) -> List[VolumeBinding]:
        bindings = []
        for host_path, container_path in self.config.storage.readonly_mounts.items():
            host_path = os.path.abspath(os.path.expanduser(host_path))
            if not os.path.exists(host_path):
                logger.warning("Readonly mount host path does not exist: %s, skipping", host_path)
                continue
            bindings.append(VolumeBinding(host_path, container_path, "ro"))
        return bindings

    def _rollback(
        self,
        name: str,
        container_id: Optional[str],
        ports: List[int],
        mount_dir: Optional[str],
    ) -> None:
        logger.warning("Rolling back partially created sandbox %s", name)
        if container_id:
            try:
                if self.driver.supports_remove:
                    self.driver.remove_container(container_id)
                else:
                    self.driver.stop_container(container_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("Rollback of container %s failed: %s", container_id, exc)
        if ports:
            self.ports.release_all(ports)
        if mount_dir:
            shutil.rmtree(mount_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Release and status
    # ------------------------------------------------------------------

    def _lookup(self, target: SandboxTarget) -> Optional[ContainerRecord]:
        if isinstance(target, SandboxIdentity):
            return self.sandbox_map.get(target)
        if not target:
            return None
        return self.sandbox_map.get_by_id(target)

    def _require(self, sandbox_id: str) -> ContainerRecord:
        record = self._lookup(sandbox_id)
        if record is None:
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
        return record

    def _backend_status(self, record: ContainerRecord) -> str:
        """Query the backend and store the answer on the registered record."""
        current = self.driver.get_status(record.container_id)
        if current != record.status:
            record.status = current
            self.sandbox_map.update(record)
        return current

    def release(self, target: SandboxTarget) -> ReleaseResult:
        """
        Hard release: stop, persist the working directory, remove, free ports
        and drop the registry entry.

        Returns:
            ReleaseResult; ``storage_synced`` is False when the upload failed
        """
        if self.remote is not None:
            return self.remote.release(target)
        record = self._lookup(target)
        if record is None:
            logger.info("Release of %s: no such sandbox", target)
            return ReleaseResult(released=False, message="not_found")
        return self._teardown(record, sync_storage=True)

    def _release_quietly(self, record: ContainerRecord) -> None:
        try:
            self._teardown(record, sync_storage=True)
        except SandboxError as exc:
            logger.warning("Failed to release stale sandbox %s: %s", record.sandbox_id, exc.message)

    def _teardown(self, record: ContainerRecord, sync_storage: bool) -> ReleaseResult:
        driver = self.driver
        sandbox_id = record.sandbox_id
        errors: List[Exception] = []
        synced = True
        try:
            with timed_operation("release", sandbox_id):
                try:
                    driver.stop_container(record.container_id)
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)

                if sync_storage and record.storage_path and record.mount_dir and driver.supports_bind_mounts:
                    synced = self.storage.upload(record.mount_dir, record.storage_path)
                    if not synced:
                        logger.error(
                            "Working directory of %s was not persisted to %s",
                            sandbox_id,
                            record.storage_path,
                        )

                if driver.supports_remove:
                    try:
                        driver.remove_container(record.container_id)
                    except Exception as exc:  # noqa: BLE001
                        errors.append(exc)
        finally:
            if driver.uses_host_ports and record.ports:
                self.ports.release_all(record.ports)
            identity = self.sandbox_map.get_identity(sandbox_id)
            self.sandbox_map.remove(sandbox_id)
            if identity is not None:
                self._reopen(identity)

        if errors:
            first = errors[0]
            raise SandboxError(
                f"Failed to release sandbox {sandbox_id}: {first}",
                code=getattr(first, "code", SandboxErrorCodes.SANDBOX_DELETE_FAILED),
            ) from first
        message = None if synced else "working directory was not persisted"
        return ReleaseResult(released=True, storage_synced=synced, message=message)

    def close(self, target: SandboxTarget) -> bool:
        """
        Soft close: refuse tool calls for the sandbox but keep the container.

        The flag lives in the registry, so every orchestrator sharing it sees
        the close. A later ``provision`` for the same identity reopens it.
        """
        if self.remote is not None:
            return self.remote.close(target)
        if isinstance(target, SandboxIdentity):
            identity = target if self.sandbox_map.get(target) is not None else None
        else:
            identity = self.sandbox_map.get_identity(target)
        if identity is None:
            return False
        self.sandbox_map.set_closed(identity, True)
        logger.info("Sandbox for %s closed", identity.key())
        return True

    def _reopen(self, identity: SandboxIdentity) -> None:
        self.sandbox_map.set_closed(identity, False)

    def is_closed(self, identity: SandboxIdentity) -> bool:
        return self.sandbox_map.is_closed(identity)

    def get_status(self, target: SandboxTarget) -> str:
        """Backend status of the sandbox, or ``not_found`` when none is registered."""
        if self.remote is not None:
            return self.remote.get_status(target)
        record = self._lookup(target)
        if record is None:
            return STATUS_NOT_FOUND
        return self._backend_status(record)

    def get_info(self, sandbox_id: str) -> ContainerRecord:
        """Registered record with the current backend status and backend details."""
        if self.remote is not None:
            return self.remote.get_info(sandbox_id)
        record = self._require(sandbox_id)
        self._backend_status(record)
        details = self.driver.describe(record.container_id)
        if details is not None and details != record.backend_info:
            record.backend_info = details
            self.sandbox_map.update(record)
        return record

    def list_sandboxes(self) -> Dict[SandboxIdentity, ContainerRecord]:
        if self.remote is not None:
            raise SandboxError(
                "Listing sandboxes is not available in remote mode",
                code=SandboxErrorCodes.API_NOT_SUPPORTED,
                status_code=status.HTTP_501_NOT_IMPLEMENTED,
            )
        return self.sandbox_map.list_all()

    def start(self, sandbox_id: str) -> bool:
        if self.remote is not None:
            return self.remote.start(sandbox_id)
        record = self._require(sandbox_id)
        self.driver.start_container(record.container_id)
        self._backend_status(record)
        return True

    def stop(self, sandbox_id: str) -> bool:
        if self.remote is not None:
            return self.remote.stop(sandbox_id)
        record = self._require(sandbox_id)
        self.driver.stop_container(record.container_id)
        self._backend_status(record)
        return True

    def remove(self, sandbox_id: str) -> bool:
        """Remove the container and its registry entry without stopping or syncing first."""
        if self.remote is not None:
            return self.remote.remove(sandbox_id)
        record = self._lookup(sandbox_id)
        if record is None:
            return False
        identity = self.sandbox_map.get_identity(record.sandbox_id)
        try:
            if self.driver.supports_remove:
                self.driver.remove_container(record.container_id)
            else:
                self.driver.stop_container(record.container_id)
        finally:
            if self.driver.uses_host_ports and record.ports:
                self.ports.release_all(record.ports)
            self.sandbox_map.remove(record.sandbox_id)
            if identity is not None:
                self._reopen(identity)
        return True

    def cleanup_all(self) -> int:
        """
        Release every registered sandbox.

        Individual failures are logged and counted; the registry is empty
        afterwards either way.

        Returns:
            Number of sandboxes whose release failed
        """
        if self.remote is not None:
            return self.remote.cleanup_all()
        failures = 0
        for identity, record in self.sandbox_map.list_all().items():
            try:
                self._teardown(record, sync_storage=True)
            except Exception as exc:  # noqa: BLE001
                failures += 1
                logger.error("Error cleaning up sandbox %s (%s): %s", record.sandbox_id, identity.key(), exc)
        if self.sandbox_map.size():
            self.sandbox_map.clear()
        logger.info("Cleanup finished with %d failure(s)", failures)
        return failures

    # ------------------------------------------------------------------
    # Tool routing
    # ------------------------------------------------------------------

    def _connect(self, sandbox_id: Optional[str], owner_id: Optional[str], session_id: Optional[str]):
        """
        Resolve a running record for a tool call and open its wire client.

        Raises:
            SandboxError: If the sandbox is unknown, not owned by the caller
                or soft-closed
        """
        record = self._lookup(sandbox_id) if sandbox_id else None
        identity = self.sandbox_map.get_identity(sandbox_id) if record is not None else None
        if record is None or identity is None:
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
        if (owner_id and identity.owner_id != owner_id) or (session_id and identity.session_id != session_id):
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found for {owner_id}/{session_id}")
        if self.is_closed(identity):
            raise SandboxError(
                f"Sandbox {sandbox_id} is closed",
                code=SandboxErrorCodes.SANDBOX_CLOSED,
                status_code=status.HTTP_409_CONFLICT,
            )
        if self._backend_status(record) not in REUSABLE_STATUSES:
            logger.info("Sandbox %s is not running; provisioning %s again", sandbox_id, identity.key())
            record = self.provision(identity, storage_path=record.storage_path)
        return connect(record, timeout=DEFAULT_TIMEOUT)

    def list_tools(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str] = None,
        session_id: Optional[str] = None,
        tool_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.remote is not None:
            return self.remote.list_tools(sandbox_id, owner_id, session_id, tool_type)
        try:
            with self._connect(sandbox_id, owner_id, session_id) as client:
                return client.list_tools(tool_type)
        except SandboxError as exc:
            logger.error("Error listing tools for %s: %s", sandbox_id, exc.message)
            return {}

    def call_tool(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str],
        session_id: Optional[str],
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Invoke a tool; failures are returned as an error payload, never raised."""
        try:
            if self.remote is not None:
                return self.remote.call_tool(sandbox_id, owner_id, session_id, name, arguments)
            with self._connect(sandbox_id, owner_id, session_id) as client:
                return client.call_tool(name, arguments or {})
        except SandboxError as exc:
            logger.error("Error calling tool %s on %s: %s", name, sandbox_id, exc.message)
            return error_payload(f"Error calling tool: {exc.message}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error calling tool %s on %s", name, sandbox_id)
            return error_payload(f"Error calling tool: {exc}")

    def add_mcp_servers(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str],
        session_id: Optional[str],
        server_configs: Dict[str, Any],
        overwrite: bool = False,
    ) -> Dict[str, Any]:
        if self.remote is not None:
            return self.remote.add_mcp_servers(sandbox_id, owner_id, session_id, server_configs, overwrite)
        try:
            with self._connect(sandbox_id, owner_id, session_id) as client:
                return client.add_mcp_servers(server_configs, overwrite)
        except SandboxError as exc:
            logger.error("Error adding MCP servers to %s: %s", sandbox_id, exc.message)
            return {}


__all__ = ["SandboxService", "SandboxTarget"]
