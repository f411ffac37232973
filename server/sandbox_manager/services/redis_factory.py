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

"""Shared Redis client used by the registry, port ledger and pool queue."""

import logging
import time
from threading import Lock
from typing import Dict, Optional

import redis

from sandbox_manager.config import RedisConfig

logger = logging.getLogger(__name__)

_clients: Dict[str, redis.Redis] = {}
_lock = Lock()


def _create_client(config: RedisConfig) -> redis.Redis:
    return redis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        username=config.username,
        password=config.password,
        decode_responses=True,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.connect_timeout,
    )


def get_redis_client(config: RedisConfig) -> redis.Redis:
    """
    Return a verified client for ``config``, reusing one per server/db.

    Raises:
        redis.RedisError: If the server cannot be reached after all retries
    """
    cache_key = f"{config.host}:{config.port}/{config.db}"
    client = _clients.get(cache_key)
    if client is not None:
        return client

    with _lock:
        # Double-check after acquiring lock
        client = _clients.get(cache_key)
        if client is not None:
            return client

        last_error: Optional[Exception] = None
        for attempt in range(max(config.max_retries, 1)):
            try:
                client = _create_client(config)
                client.ping()
                logger.info("Redis connection established to %s", cache_key)
                _clients[cache_key] = client
                return client
            except redis.RedisError as exc:
                last_error = exc
                if attempt < config.max_retries - 1:
                    logger.warning(
                        "Redis connection attempt %d/%d failed: %s, retrying in %ss",
                        attempt + 1,
                        config.max_retries,
                        exc,
                        config.retry_delay,
                    )
                    time.sleep(config.retry_delay)

        logger.error("Failed to connect to Redis at %s: %s", cache_key, last_error)
        raise last_error


def reset_clients() -> None:
    with _lock:
        for client in _clients.values():
            try:
                client.close()
            except redis.RedisError as exc:
                logger.debug("Ignoring error while closing Redis client: %s", exc)
        _clients.clear()
