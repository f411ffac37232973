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
Thin wrapper around the Kubernetes Python client.
"""

import logging
import os

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from sandbox_manager.config import KubernetesConfig

logger = logging.getLogger(__name__)


class K8sClient:
    """
    Loads cluster credentials once and hands out typed API objects.

    An explicit ``kubeconfig_path`` wins; otherwise in-cluster credentials are
    tried before the default kubeconfig location.
    """

    def __init__(self, k8s_config: KubernetesConfig):
        self.config = k8s_config
        kubeconfig = k8s_config.kubeconfig_path
        if kubeconfig:
            kubeconfig = os.path.expanduser(kubeconfig)
            if not os.path.isfile(kubeconfig):
                raise FileNotFoundError(f"Kubeconfig file not found: {kubeconfig}")
            config.load_kube_config(config_file=kubeconfig)
            logger.info("Loaded Kubernetes configuration from %s", kubeconfig)
        else:
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes configuration")
            except ConfigException:
                config.load_kube_config()
                logger.info("Loaded default Kubernetes configuration")
        self._core_api = client.CoreV1Api()
        self._apps_api = client.AppsV1Api()

    def get_core_v1_api(self) -> client.CoreV1Api:
        return self._core_api

    def get_apps_v1_api(self) -> client.AppsV1Api:
        return self._apps_api
