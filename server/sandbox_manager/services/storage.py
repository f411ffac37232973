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
Working-directory synchronization against durable storage.

A sandbox's working directory is hydrated from a logical storage path before
the container starts and persisted back after it stops. Both directions report
success as a boolean: a failed download leaves an empty directory, a failed
upload never blocks removal, and the orchestrator surfaces the result.
"""

from __future__ import annotations

import logging
import os
import shutil
from abc import ABC, abstractmethod

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from sandbox_manager.config import StorageConfig

logger = logging.getLogger(__name__)


class StorageSync(ABC):
    @abstractmethod
    def download(self, storage_path: str, local_dir: str) -> bool:
        """Copy everything under ``storage_path`` into ``local_dir``."""

    @abstractmethod
    def upload(self, local_dir: str, storage_path: str) -> bool:
        """Copy the tree at ``local_dir`` to ``storage_path``."""


class LocalStorageSync(StorageSync):
    """Storage on the local filesystem, rooted at ``storage_folder``."""

    def __init__(self, storage_folder: str = ""):
        self.storage_folder = storage_folder

    def _resolve(self, storage_path: str) -> str:
        if self.storage_folder and not os.path.isabs(storage_path):
            return os.path.join(self.storage_folder, storage_path)
        return storage_path

    def download(self, storage_path: str, local_dir: str) -> bool:
        if not storage_path or not local_dir:
            logger.warning("Skipping download: storage path or local directory is empty")
            return False
        source = self._resolve(storage_path)
        if not os.path.isdir(source):
            logger.warning("Storage path %s does not exist; starting with an empty directory", source)
            os.makedirs(local_dir, exist_ok=True)
            return False
        try:
            shutil.copytree(source, local_dir, dirs_exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to download %s to %s: %s", source, local_dir, exc)
            return False
        logger.info("Downloaded %s to %s", source, local_dir)
        return True

    def upload(self, local_dir: str, storage_path: str) -> bool:
        if not storage_path or not local_dir:
            logger.warning("Skipping upload: storage path or local directory is empty")
            return False
        if not os.path.isdir(local_dir):
            logger.warning("Local directory %s does not exist; nothing to upload", local_dir)
            return False
        target = self._resolve(storage_path)
        try:
            shutil.copytree(local_dir, target, dirs_exist_ok=True)
        except OSError as exc:
            logger.error("Failed to upload %s to %s: %s", local_dir, target, exc)
            return False
        logger.info("Uploaded %s to %s", local_dir, target)
        return True


class S3StorageSync(StorageSync):
    """
    S3-compatible object storage (AWS S3, MinIO, OSS in S3 mode).

    The logical storage path is used as a key prefix inside ``bucket``.
    """

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self.bucket = config.bucket
        self._client = client

    def _get_client(self):
        """Get or create the boto3 S3 client (lazy initialization)."""
        if self._client is None:
            boto_config = BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            )
            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint,
                aws_access_key_id=self.config.access_key,
                aws_secret_access_key=self.config.secret_key,
                region_name=self.config.region,
                config=boto_config,
            )
            logger.debug("Initialized S3 client for endpoint %s", self.config.endpoint)
        return self._client

    @staticmethod
    def _prefix(storage_path: str) -> str:
        prefix = storage_path.lstrip("/")
        return prefix if prefix.endswith("/") else prefix + "/"

    def download(self, storage_path: str, local_dir: str) -> bool:
        if not storage_path or not local_dir:
            logger.warning("Skipping download: storage path or local directory is empty")
            return False
        prefix = self._prefix(storage_path)
        os.makedirs(local_dir, exist_ok=True)
        try:
            client = self._get_client()
            paginator = client.get_paginator("list_objects_v2")
            count = 0
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    relative = key[len(prefix):]
                    if not relative or key.endswith("/"):
                        continue
                    target = os.path.join(local_dir, *relative.split("/"))
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    client.download_file(self.bucket, key, target)
                    count += 1
        except (BotoCoreError, ClientError, OSError) as exc:
            logger.warning("Failed to download s3://%s/%s: %s", self.bucket, prefix, exc)
            return False
        logger.info("Downloaded %d object(s) from s3://%s/%s to %s", count, self.bucket, prefix, local_dir)
        return True

    def upload(self, local_dir: str, storage_path: str) -> bool:
        if not storage_path or not local_dir:
            logger.warning("Skipping upload: storage path or local directory is empty")
            return False
        if not os.path.isdir(local_dir):
            logger.warning("Local directory %s does not exist; nothing to upload", local_dir)
            return False
        prefix = self._prefix(storage_path)
        try:
            client = self._get_client()
            count = 0
            for root, _dirs, files in os.walk(local_dir):
                for name in files:
                    path = os.path.join(root, name)
                    relative = os.path.relpath(path, local_dir).replace(os.sep, "/")
                    client.upload_file(path, self.bucket, prefix + relative)
                    count += 1
        except (BotoCoreError, ClientError, OSError) as exc:
            logger.error("Failed to upload %s to s3://%s/%s: %s", local_dir, self.bucket, prefix, exc)
            return False
        logger.info("Uploaded %d file(s) from %s to s3://%s/%s", count, local_dir, self.bucket, prefix)
        return True


def create_storage_sync(config: StorageConfig) -> StorageSync:
    if config.type == "s3":
        return S3StorageSync(config)
    return LocalStorageSync(config.storage_folder)


__all__ = ["LocalStorageSync", "S3StorageSync", "StorageSync", "create_storage_sync"]
