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

"""Parsing helpers for runtime configuration values."""

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_MEMORY_PATTERN = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$")
_MEMORY_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "m": 1000 ** 2,
    "mb": 1000 ** 2,
    "mi": 1024 ** 2,
    "g": 1000 ** 3,
    "gb": 1000 ** 3,
    "gi": 1024 ** 3,
    "t": 1000 ** 4,
    "tb": 1000 ** 4,
    "ti": 1024 ** 4,
}


def parse_memory_limit(value: Any) -> Optional[int]:
    """Convert ``512Mi``, ``1G``, ``5.06gb`` or a plain byte count to bytes."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    match = _MEMORY_PATTERN.match(str(value))
    if not match:
        logger.warning("Failed to parse memory value: %s", value)
        return None
    number, unit = match.groups()
    multiplier = _MEMORY_UNITS.get(unit.lower())
    if multiplier is None:
        logger.warning("Unknown memory unit in value: %s", value)
        return None
    return int(float(number) * multiplier)


def parse_nano_cpus(value: Any) -> Optional[int]:
    """
    Convert CPU notation (``500m``, ``"2"``, ``"1.5"``) to Docker nano CPUs.

    Numbers are taken as nano CPUs already.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    text = str(value).strip().lower()
    try:
        if text.endswith("m"):
            return int(float(text[:-1]) * 1_000_000)
        return int(float(text) * 1_000_000_000)
    except ValueError:
        logger.warning("Failed to parse CPU value: %s", value)
        return None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
