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
Warm pool of pre-created containers for one sandbox kind.

Pooled records wait in a FIFO queue. With Redis the queue is a list shared by
every orchestrator process: ``RPUSH`` to add, ``LPOP`` to take, so a record
is handed to exactly one drawer. Refill tops the queue up to ``size`` on a
background daemon thread.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Optional

import redis

from sandbox_manager.services.constants import STATUS_RUNNING, STATUS_UNKNOWN
from sandbox_manager.services.models import ContainerRecord, SandboxKind

logger = logging.getLogger(__name__)

DEFAULT_REFILL_INTERVAL = 30.0


class ContainerQueue(ABC):
    @abstractmethod
    def push(self, record: ContainerRecord) -> None:
        pass

    @abstractmethod
    def pop(self) -> Optional[ContainerRecord]:
        pass

    @abstractmethod
    def size(self) -> int:
        pass


class InMemoryContainerQueue(ContainerQueue):
    def __init__(self):
        self._items: Deque[ContainerRecord] = deque()
        self._lock = threading.Lock()

    def push(self, record: ContainerRecord) -> None:
        with self._lock:
            self._items.append(record)

    def pop(self) -> Optional[ContainerRecord]:
        with self._lock:
            return self._items.popleft() if self._items else None

    def size(self) -> int:
        with self._lock:
            return len(self._items)


class RedisContainerQueue(ContainerQueue):
    """Queue stored as a Redis list of record JSON documents."""

    def __init__(self, client: redis.Redis, key: str):
        self.client = client
        self.key = key

    def push(self, record: ContainerRecord) -> None:
        self.client.rpush(self.key, json.dumps(record.to_dict()))

    def pop(self) -> Optional[ContainerRecord]:
        raw = self.client.lpop(self.key)
        if not raw:
            return None
        return ContainerRecord.from_dict(json.loads(raw))

    def size(self) -> int:
        return int(self.client.llen(self.key))


class ContainerPool:
    """
    Pre-created containers of a single kind.

    Args:
        kind: The pooled sandbox kind; draws for any other kind miss
        size: Target number of queued containers
        factory: Creates one fresh, unregistered container record
        queue: Where pooled records wait
        release_fn: Tears down a record that is discarded or drained
        status_fn: Reports the backend status of a record
        current_version: Image a pooled record must have been created from
    """

    def __init__(
        self,
        kind: str,
        size: int,
        factory: Callable[[], ContainerRecord],
        queue: ContainerQueue,
        release_fn: Callable[[ContainerRecord], None],
        status_fn: Callable[[ContainerRecord], str],
        current_version: Optional[str] = None,
        refill_interval: float = DEFAULT_REFILL_INTERVAL,
    ):
        self.kind = SandboxKind.normalize(kind)
        self.size = size
        self.factory = factory
        self.queue = queue
        self.release_fn = release_fn
        self.status_fn = status_fn
        self.current_version = current_version
        self.refill_interval = refill_interval
        self._fill_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def fill(self) -> int:
        """
        Top the queue up to ``size``.

        Returns:
            Number of containers created
        """
        created = 0
        with self._fill_lock:
            missing = self.size - self.queue.size()
            for _ in range(max(missing, 0)):
                if self._stop.is_set() and self._thread is not None:
                    break
                record = self.factory()
                self.queue.push(record)
                created += 1
        if created:
            logger.info("Pool %s: added %d container(s)", self.kind, created)
        return created

    def draw(self, kind: str) -> Optional[ContainerRecord]:
        """
        Take a ready container of ``kind`` from the queue.

        Records from an outdated image or no longer running are released and
        skipped. Returns None on a miss.
        """
        if self.size <= 0 or SandboxKind.normalize(kind) != self.kind:
            return None

        for _ in range(self.size + 1):
            record = self.queue.pop()
            if record is None:
                break
            if self.current_version and record.version != self.current_version:
                logger.info(
                    "Pool %s: discarding %s built from %s (current %s)",
                    self.kind,
                    record.sandbox_id,
                    record.version,
                    self.current_version,
                )
                self._discard(record)
                continue
            status = self._status(record)
            if status != STATUS_RUNNING:
                logger.info("Pool %s: discarding %s in status %s", self.kind, record.sandbox_id, status)
                self._discard(record)
                continue
            logger.info("Pool %s: drew %s", self.kind, record.sandbox_id)
            self.request_refill()
            return record

        logger.info("Pool %s: no ready container", self.kind)
        self.request_refill()
        return None

    def _status(self, record: ContainerRecord) -> str:
        try:
            return self.status_fn(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Pool %s: status check of %s failed: %s", self.kind, record.sandbox_id, exc)
            return STATUS_UNKNOWN

    def _discard(self, record: ContainerRecord) -> None:
        try:
            self.release_fn(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Pool %s: failed to release %s: %s", self.kind, record.sandbox_id, exc)

    def _safe_fill(self) -> None:
        try:
            self.fill()
        except Exception as exc:  # noqa: BLE001
            logger.error("Pool %s: refill failed: %s", self.kind, exc)

    def _run(self) -> None:
        while not self._stop.is_set():
            self._safe_fill()
            self._wake.wait(self.refill_interval)
            self._wake.clear()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background refill thread."""
        if self.size <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"sandbox-pool-{self.kind}", daemon=True)
        self._thread.start()
        logger.info("Pool %s: refill thread started (size=%d)", self.kind, self.size)

    def request_refill(self) -> None:
        """Wake the refill thread, if it is running."""
        if self.running:
            self._wake.set()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def drain(self) -> int:
        """Release every queued container. Returns how many were released."""
        drained = 0
        while True:
            record = self.queue.pop()
            if record is None:
                break
            self._discard(record)
            drained += 1
        if drained:
            logger.info("Pool %s: drained %d container(s)", self.kind, drained)
        return drained


__all__ = [
    "ContainerPool",
    "ContainerQueue",
    "InMemoryContainerQueue",
    "RedisContainerQueue",
]
