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
Registry mapping sandbox identities to container records.

``InMemorySandboxMap`` serves a single orchestrator process.
``RedisSandboxMap`` keeps the same view in Redis so several processes agree
on which sandbox backs which identity. Identity and id lookups always resolve
to the same record.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from threading import RLock
from typing import Dict, Optional, Set

import redis

from sandbox_manager.services.errors import RegistryInconsistencyError
from sandbox_manager.services.models import ContainerRecord, SandboxIdentity

logger = logging.getLogger(__name__)


class SandboxMap(ABC):
    """Contract shared by registry backends."""

    @abstractmethod
    def get(self, identity: SandboxIdentity) -> Optional[ContainerRecord]:
        pass

    @abstractmethod
    def get_by_id(self, sandbox_id: str) -> Optional[ContainerRecord]:
        pass

    @abstractmethod
    def get_identity(self, sandbox_id: str) -> Optional[SandboxIdentity]:
        pass

    @abstractmethod
    def put(self, identity: SandboxIdentity, record: ContainerRecord) -> None:
        """Store ``record`` for ``identity``, replacing any existing entry."""

    @abstractmethod
    def put_if_absent(self, identity: SandboxIdentity, record: ContainerRecord) -> Optional[ContainerRecord]:
        """
        Store ``record`` only when ``identity`` has no entry.

        Returns:
            None when ``record`` was stored, else the record already registered
        """

    @abstractmethod
    def update(self, record: ContainerRecord) -> None:
        """Persist a mutated record under its existing identity."""

    @abstractmethod
    def remove(self, sandbox_id: str) -> bool:
        pass

    @abstractmethod
    def list_all(self) -> Dict[SandboxIdentity, ContainerRecord]:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    @abstractmethod
    def set_closed(self, identity: SandboxIdentity, closed: bool) -> None:
        """Mark or unmark ``identity`` as soft-closed."""

    @abstractmethod
    def is_closed(self, identity: SandboxIdentity) -> bool:
        pass

    def size(self) -> int:
        return len(self.list_all())


class InMemorySandboxMap(SandboxMap):
    def __init__(self):
        self._by_identity: Dict[SandboxIdentity, str] = {}
        self._records: Dict[str, ContainerRecord] = {}
        self._identities: Dict[str, SandboxIdentity] = {}
        self._closed: Set[SandboxIdentity] = set()
        self._lock = RLock()

    def get(self, identity: SandboxIdentity) -> Optional[ContainerRecord]:
        with self._lock:
            sandbox_id = self._by_identity.get(identity)
            return self._records.get(sandbox_id) if sandbox_id else None

    def get_by_id(self, sandbox_id: str) -> Optional[ContainerRecord]:
        with self._lock:
            return self._records.get(sandbox_id)

    def get_identity(self, sandbox_id: str) -> Optional[SandboxIdentity]:
        with self._lock:
            return self._identities.get(sandbox_id)

    def put(self, identity: SandboxIdentity, record: ContainerRecord) -> None:
        with self._lock:
            previous = self._by_identity.get(identity)
            if previous and previous != record.sandbox_id:
                self._records.pop(previous, None)
                self._identities.pop(previous, None)
            self._by_identity[identity] = record.sandbox_id
            self._records[record.sandbox_id] = record
            self._identities[record.sandbox_id] = identity

    def put_if_absent(self, identity: SandboxIdentity, record: ContainerRecord) -> Optional[ContainerRecord]:
        with self._lock:
            existing = self.get(identity)
            if existing is not None:
                return existing
            self.put(identity, record)
            return None

    def update(self, record: ContainerRecord) -> None:
        with self._lock:
            if record.sandbox_id in self._records:
                self._records[record.sandbox_id] = record

    def remove(self, sandbox_id: str) -> bool:
        with self._lock:
            identity = self._identities.pop(sandbox_id, None)
            record = self._records.pop(sandbox_id, None)
            if identity is not None and self._by_identity.get(identity) == sandbox_id:
                del self._by_identity[identity]
            return record is not None

    def list_all(self) -> Dict[SandboxIdentity, ContainerRecord]:
        with self._lock:
            return {
                identity: self._records[sandbox_id]
                for identity, sandbox_id in self._by_identity.items()
                if sandbox_id in self._records
            }

    def clear(self) -> None:
        with self._lock:
            self._by_identity.clear()
            self._records.clear()
            self._identities.clear()
            self._closed.clear()

    def set_closed(self, identity: SandboxIdentity, closed: bool) -> None:
        with self._lock:
            if closed:
                self._closed.add(identity)
            else:
                self._closed.discard(identity)

    def is_closed(self, identity: SandboxIdentity) -> bool:
        with self._lock:
            return identity in self._closed


class RedisSandboxMap(SandboxMap):
    """
    Registry stored in Redis under ``<prefix>:``.

    Keys:
        <prefix>:key_to_id:<owner>:<session>:<kind>  -> sandbox id
        <prefix>:id_to_key:<sandbox id>              -> identity JSON
        <prefix>:id_to_model:<sandbox id>            -> record JSON
        <prefix>:closed                              -> set of soft-closed identity keys
    """

    def __init__(self, client: redis.Redis, prefix: str = "sandbox"):
        self.client = client
        self.prefix = prefix.rstrip(":")
        logger.info("Redis sandbox map initialized with prefix %s", self.prefix)

    def _identity_key(self, identity: SandboxIdentity) -> str:
        return f"{self.prefix}:key_to_id:{identity.key()}"

    def _id_key(self, sandbox_id: str) -> str:
        return f"{self.prefix}:id_to_key:{sandbox_id}"

    def _model_key(self, sandbox_id: str) -> str:
        return f"{self.prefix}:id_to_model:{sandbox_id}"

    def _closed_key(self) -> str:
        return f"{self.prefix}:closed"

    def _load_record(self, sandbox_id: str) -> Optional[ContainerRecord]:
        raw = self.client.get(self._model_key(sandbox_id))
        if not raw:
            return None
        return ContainerRecord.from_dict(json.loads(raw))

    def get(self, identity: SandboxIdentity) -> Optional[ContainerRecord]:
        identity_key = self._identity_key(identity)
        sandbox_id = self.client.get(identity_key)
        if not sandbox_id:
            return None
        record = self._load_record(sandbox_id)
        if record is None:
            error = RegistryInconsistencyError(
                f"Identity {identity.key()} points at {sandbox_id} which has no record"
            )
            logger.warning("%s; purging dangling entry", error.message)
            self._delete_pointer(identity_key, sandbox_id)
            return None
        return record

    def get_by_id(self, sandbox_id: str) -> Optional[ContainerRecord]:
        return self._load_record(sandbox_id)

    def get_identity(self, sandbox_id: str) -> Optional[SandboxIdentity]:
        raw = self.client.get(self._id_key(sandbox_id))
        if not raw:
            return None
        return SandboxIdentity.from_dict(json.loads(raw))

    def _write_record(self, pipe, identity: SandboxIdentity, record: ContainerRecord) -> None:
        pipe.set(self._id_key(record.sandbox_id), json.dumps(identity.to_dict()))
        pipe.set(self._model_key(record.sandbox_id), json.dumps(record.to_dict()))

    def put(self, identity: SandboxIdentity, record: ContainerRecord) -> None:
        with self.client.pipeline() as pipe:
            self._write_record(pipe, identity, record)
            pipe.set(self._identity_key(identity), record.sandbox_id)
            pipe.execute()

    def put_if_absent(self, identity: SandboxIdentity, record: ContainerRecord) -> Optional[ContainerRecord]:
        # Write the record first so a winning pointer never dangles.
        with self.client.pipeline() as pipe:
            self._write_record(pipe, identity, record)
            pipe.execute()

        if self.client.set(self._identity_key(identity), record.sandbox_id, nx=True):
            return None

        self.client.delete(self._id_key(record.sandbox_id), self._model_key(record.sandbox_id))
        existing = self.get(identity)
        if existing is None:
            # The winner vanished between SET NX and the read; retry once.
            return self.put_if_absent(identity, record)
        logger.info(
            "Identity %s already owned by %s; discarding %s",
            identity.key(),
            existing.sandbox_id,
            record.sandbox_id,
        )
        return existing

    def update(self, record: ContainerRecord) -> None:
        if self.client.exists(self._model_key(record.sandbox_id)):
            self.client.set(self._model_key(record.sandbox_id), json.dumps(record.to_dict()))

    def remove(self, sandbox_id: str) -> bool:
        identity = self.get_identity(sandbox_id)
        with self.client.pipeline() as pipe:
            pipe.delete(self._model_key(sandbox_id))
            pipe.delete(self._id_key(sandbox_id))
            removed = pipe.execute()[0]
        if identity is not None:
            self._delete_pointer(self._identity_key(identity), sandbox_id)
        return bool(removed)

    def _delete_pointer(self, identity_key: str, sandbox_id: str) -> None:
        # Leave the pointer alone if another sandbox took over the identity.
        if self.client.get(identity_key) == sandbox_id:
            self.client.delete(identity_key)

    def list_all(self) -> Dict[SandboxIdentity, ContainerRecord]:
        result: Dict[SandboxIdentity, ContainerRecord] = {}
        marker = f"{self.prefix}:id_to_model:"
        for key in self.client.scan_iter(match=f"{marker}*"):
            sandbox_id = key[len(marker):]
            record = self._load_record(sandbox_id)
            identity = self.get_identity(sandbox_id)
            if record is None or identity is None:
                continue
            result[identity] = record
        return result

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}:key_to_id:*"))
        keys += list(self.client.scan_iter(match=f"{self.prefix}:id_to_key:*"))
        keys += list(self.client.scan_iter(match=f"{self.prefix}:id_to_model:*"))
        keys.append(self._closed_key())
        if keys:
            self.client.delete(*keys)

    def set_closed(self, identity: SandboxIdentity, closed: bool) -> None:
        if closed:
            self.client.sadd(self._closed_key(), identity.key())
        else:
            self.client.srem(self._closed_key(), identity.key())

    def is_closed(self, identity: SandboxIdentity) -> bool:
        return bool(self.client.sismember(self._closed_key(), identity.key()))


__all__ = ["InMemorySandboxMap", "RedisSandboxMap", "SandboxMap"]
