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
Host port allocation for sandbox containers.

Two allocators share one contract. ``LocalPortAllocator`` keeps its ledger in
process memory; ``RedisPortAllocator`` keeps it in a Redis set so that several
orchestrator processes never hand out the same port. Both skip ports the
operating system refuses to bind.
"""

from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from threading import Lock
from typing import Iterable, List, Set

import redis

from sandbox_manager.services.errors import PortExhaustedError

logger = logging.getLogger(__name__)


def is_port_bindable(port: int) -> bool:
    """Return True when a TCP socket can bind ``port`` on all interfaces."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


class PortAllocator(ABC):
    """Hands out ports from a closed range ``[start, end]``."""

    def __init__(self, start: int, end: int):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end

    @abstractmethod
    def acquire(self) -> int:
        """
        Reserve one free port.

        Raises:
            PortExhaustedError: If no port in the range is available
        """

    @abstractmethod
    def release(self, port: int) -> None:
        """Return ``port`` to the range. Releasing a port that is not held is a no-op."""

    @abstractmethod
    def is_allocated(self, port: int) -> bool:
        pass

    @abstractmethod
    def allocated(self) -> Set[int]:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def acquire_many(self, count: int) -> List[int]:
        """Reserve ``count`` ports, rolling back the partial set on failure."""
        acquired: List[int] = []
        try:
            for _ in range(count):
                acquired.append(self.acquire())
        except PortExhaustedError:
            self.release_all(acquired)
            raise
        return acquired

    def release_all(self, ports: Iterable[int]) -> None:
        for port in ports:
            self.release(port)

    def _exhausted(self) -> PortExhaustedError:
        return PortExhaustedError(f"No available ports in range {self.start}-{self.end}")


class LocalPortAllocator(PortAllocator):
    """In-process allocator; safe across threads of one orchestrator."""

    def __init__(self, start: int, end: int):
        super().__init__(start, end)
        self._allocated: Set[int] = set()
        self._lock = Lock()

    def acquire(self) -> int:
        with self._lock:
            for port in range(self.start, self.end + 1):
                if port in self._allocated:
                    continue
                if not is_port_bindable(port):
                    continue
                self._allocated.add(port)
                logger.debug("Allocated port %d", port)
                return port
        raise self._exhausted()

    def release(self, port: int) -> None:
        with self._lock:
            if port in self._allocated:
                self._allocated.discard(port)
                logger.debug("Released port %d", port)

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._allocated

    def allocated(self) -> Set[int]:
        with self._lock:
            return set(self._allocated)

    def clear(self) -> None:
        with self._lock:
            self._allocated.clear()


class RedisPortAllocator(PortAllocator):
    """
    Allocator backed by a Redis set.

    ``SADD`` returns 1 only for the process that inserted the member, which
    makes taking a port atomic across processes without a separate lock.
    """

    def __init__(self, client: redis.Redis, key: str, start: int, end: int):
        super().__init__(start, end)
        self.client = client
        self.key = key

    def acquire(self) -> int:
        taken = {int(p) for p in self.client.smembers(self.key)}
        for port in range(self.start, self.end + 1):
            if port in taken:
                continue
            if not is_port_bindable(port):
                continue
            if self.client.sadd(self.key, port) == 1:
                logger.debug("Allocated port %d in %s", port, self.key)
                return port
        raise self._exhausted()

    def release(self, port: int) -> None:
        if self.client.srem(self.key, port):
            logger.debug("Released port %d in %s", port, self.key)

    def is_allocated(self, port: int) -> bool:
        return bool(self.client.sismember(self.key, port))

    def allocated(self) -> Set[int]:
        return {int(p) for p in self.client.smembers(self.key)}

    def clear(self) -> None:
        self.client.delete(self.key)


__all__ = [
    "LocalPortAllocator",
    "PortAllocator",
    "RedisPortAllocator",
    "is_port_bindable",
]
