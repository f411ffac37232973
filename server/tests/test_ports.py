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

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from sandbox_manager.services.errors import PortExhaustedError
from sandbox_manager.services.ports import LocalPortAllocator, RedisPortAllocator


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_local_allocator_hands_out_lowest_free_port(mock_bindable):
    allocator = LocalPortAllocator(41000, 41002)

    assert allocator.acquire() == 41000
    assert allocator.acquire() == 41001
    allocator.release(41000)
    assert allocator.acquire() == 41000
    assert allocator.allocated() == {41000, 41001}


@patch("sandbox_manager.services.ports.is_port_bindable")
def test_local_allocator_skips_unbindable_ports(mock_bindable):
    mock_bindable.side_effect = lambda port: port != 41000
    allocator = LocalPortAllocator(41000, 41001)

    assert allocator.acquire() == 41001
    with pytest.raises(PortExhaustedError):
        allocator.acquire()


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_acquire_many_rolls_back_on_exhaustion(mock_bindable):
    allocator = LocalPortAllocator(41000, 41001)

    with pytest.raises(PortExhaustedError) as exc:
        allocator.acquire_many(3)

    assert exc.value.status_code == 503
    assert allocator.allocated() == set()


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_release_of_unheld_port_is_noop(mock_bindable):
    allocator = LocalPortAllocator(41000, 41001)
    allocator.release(41000)
    assert not allocator.is_allocated(41000)


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_local_allocator_is_thread_safe(mock_bindable):
    allocator = LocalPortAllocator(41000, 41049)

    with ThreadPoolExecutor(max_workers=8) as executor:
        ports = list(executor.map(lambda _: allocator.acquire(), range(50)))

    assert len(set(ports)) == 50


def test_invalid_range_rejected():
    with pytest.raises(ValueError):
        LocalPortAllocator(5000, 4000)


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_redis_allocators_never_share_a_port(mock_bindable, fake_redis):
    first = RedisPortAllocator(fake_redis, "ports", 41000, 41003)
    second = RedisPortAllocator(fake_redis, "ports", 41000, 41003)

    taken = [first.acquire(), second.acquire(), first.acquire(), second.acquire()]

    assert sorted(taken) == [41000, 41001, 41002, 41003]
    with pytest.raises(PortExhaustedError):
        second.acquire()

    first.release(41002)
    assert not second.is_allocated(41002)
    assert second.acquire() == 41002


@patch("sandbox_manager.services.ports.is_port_bindable", return_value=True)
def test_redis_allocator_clear(mock_bindable, fake_redis):
    allocator = RedisPortAllocator(fake_redis, "ports", 41000, 41003)
    allocator.acquire_many(2)
    assert allocator.allocated() == {41000, 41001}

    allocator.clear()

    assert allocator.allocated() == set()
